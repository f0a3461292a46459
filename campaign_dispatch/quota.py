"""Provider sending quota as reported by the email service."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .errors import ConfigurationError, TransientProviderError, error_for_status

CACHE_TTL_SECONDS = 60.0
DEFAULT_TIMEOUT = 10.0

QuotaCallable = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class Quota:
    """Instantaneous rate, rolling 24h budget and usage so far.

    A ``max_24h_budget`` that is ``None``, negative or infinite means unlimited.
    """

    max_instant_rate: float
    max_24h_budget: Optional[float]
    sent_last_24h: float = 0

    @property
    def unlimited_budget(self) -> bool:
        budget = self.max_24h_budget
        return budget is None or budget < 0 or math.isinf(budget)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Quota":
        """Build a quota from the provider's JSON, accepting camelCase or snake_case keys."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return None

        rate = pick("max_instant_rate", "maxInstantRate", "maxSendRate", "MaxSendRate")
        budget = pick("max_24h_budget", "max24hBudget", "max24HourSend", "Max24HourSend")
        sent = pick("sent_last_24h", "sentLast24h", "sentLast24Hours", "SentLast24Hours")
        return cls(
            max_instant_rate=float(rate or 0),
            max_24h_budget=None if budget is None else float(budget),
            sent_last_24h=float(sent or 0),
        )


class QuotaOracle:
    """Report current provider-side capacity, caching the answer briefly."""

    def __init__(
        self,
        quota_url: Optional[str] = None,
        api_key: Optional[str] = None,
        fetch_callable: Optional[QuotaCallable] = None,
        cache_ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialise the oracle with an HTTP endpoint or a callable override for testing."""
        self.quota_url = quota_url
        self.api_key = api_key
        self.fetch_callable = fetch_callable
        self.cache_ttl = cache_ttl
        self._clock = clock
        self.timeout = timeout
        self._cached: Optional[Quota] = None
        self._fetched_at = 0.0

    async def _fetch(self) -> Dict[str, Any]:
        if self.fetch_callable is not None:
            return await self.fetch_callable()
        if not self.quota_url:
            raise ConfigurationError("Quota endpoint is not configured")
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(self.quota_url, headers=headers) as resp:
                    if resp.status >= 400:
                        raise error_for_status(resp.status, await resp.text())
                    return await resp.json()
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(f"Quota request to {self.quota_url} timed out") from exc
        except aiohttp.ClientConnectionError as exc:
            raise TransientProviderError(f"Quota request to {self.quota_url} failed: {exc}") from exc

    async def get_quota(self) -> Quota:
        """Return the cached quota or fetch a fresh one."""
        now = self._clock()
        if self._cached is not None and now - self._fetched_at < self.cache_ttl:
            return self._cached
        quota = Quota.from_payload(await self._fetch())
        self._cached = quota
        self._fetched_at = now
        return quota

    def invalidate(self) -> None:
        self._cached = None
