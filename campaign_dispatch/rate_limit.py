"""Carrier-aware pacing for outbound SMS/MMS."""

from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from .errors import ThrottledError
from .phone import calculate_segments

TMOBILE_PATTERN = re.compile(r"t-?mobile", re.IGNORECASE)
RESERVOIR_TIMEZONE = ZoneInfo("America/New_York")

SendCallable = Callable[[], Awaitable[Any]]
Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


def _interval_for(mps: float) -> float:
    if mps is None or mps <= 0 or mps == float("inf"):
        return 0.0
    return 1.0 / float(mps)


class _Pacer:
    """Hand out start slots spaced at least ``min_interval`` seconds apart."""

    def __init__(self, min_interval: float, clock: Clock, sleep: Sleeper):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._next_at = 0.0
        self._lock = asyncio.Lock()

    async def wait_turn(self) -> None:
        async with self._lock:
            now = self._clock()
            start_at = max(now, self._next_at)
            self._next_at = start_at + self.min_interval
        delay = start_at - now
        if delay > 0:
            await self._sleep(delay)


class _CarrierBucket:
    """Serialise sends for one carrier, optionally drawing from a segment reservoir."""

    def __init__(self, name: str, min_interval: float, clock: Clock, sleep: Sleeper, reservoir: Optional[int] = None):
        self.name = name
        self.pacer = _Pacer(min_interval, clock, sleep)
        self.capacity = reservoir
        self.reservoir = reservoir
        self.refresh_at: Optional[datetime] = None
        self.lock = asyncio.Lock()

    def _refill_if_due(self, now: datetime) -> None:
        if self.capacity is None:
            return
        if self.refresh_at is None or now >= self.refresh_at:
            self.reservoir = self.capacity
            tomorrow = (now + timedelta(days=1)).date()
            self.refresh_at = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=RESERVOIR_TIMEZONE)

    def take(self, weight: int, now: datetime) -> None:
        self._refill_if_due(now)
        if self.reservoir is None:
            return
        if self.reservoir < weight:
            raise ThrottledError(
                f"Daily segment budget exhausted for carrier bucket '{self.name}'",
                details=f"refreshes at {self.refresh_at.isoformat() if self.refresh_at else '-'}",
            )
        self.reservoir -= weight


class RateLimiter:
    """Pace SMS submissions globally and per carrier.

    Every send first waits for a global start slot (``global_mps``), then runs
    inside its carrier bucket, which serialises calls and spaces them by
    ``carrier_mps``. The T-Mobile bucket additionally draws the message's
    segment count from a daily reservoir that refills at midnight US/Eastern.
    """

    def __init__(
        self,
        global_mps: float = 12.0,
        carrier_mps: float = 4.0,
        tmobile_daily_segments: Optional[int] = 10_000,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(RESERVOIR_TIMEZONE),
    ):
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock
        self._carrier_interval = _interval_for(carrier_mps)
        self._tmobile_segments = tmobile_daily_segments
        self.global_pacer = _Pacer(_interval_for(global_mps), clock, sleep)
        self.buckets: Dict[str, _CarrierBucket] = {}

    @staticmethod
    def bucket_key(carrier: Optional[str]) -> str:
        """Map a carrier name to its pacing bucket."""
        if carrier and TMOBILE_PATTERN.search(carrier):
            return "t-mobile"
        return (carrier or "unknown").strip().lower() or "unknown"

    def _bucket(self, key: str) -> _CarrierBucket:
        bucket = self.buckets.get(key)
        if bucket is None:
            reservoir = self._tmobile_segments if key == "t-mobile" else None
            bucket = _CarrierBucket(key, self._carrier_interval, self._clock, self._sleep, reservoir)
            self.buckets[key] = bucket
        return bucket

    async def schedule(self, carrier: Optional[str], body: str, send: SendCallable) -> Any:
        """Run ``send`` once the global and carrier limits allow it, returning its result."""
        weight = calculate_segments(body or "").segments
        bucket = self._bucket(self.bucket_key(carrier))
        await self.global_pacer.wait_turn()
        async with bucket.lock:
            bucket.take(weight, self._wall_clock())
            await bucket.pacer.wait_turn()
            return await send()
