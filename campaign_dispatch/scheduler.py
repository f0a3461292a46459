"""Email send scheduler: turn recipients into quota-respecting queue jobs."""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .config import DAY_MS, DispatchConfig
from .errors import ValidationError
from .logger import get_logger
from .persistence import Persistence
from .quota import Quota, QuotaOracle


def compute_spacing_ms(max_rate: float, headroom: float, min_ms: int, max_ms: int) -> int:
    """Milliseconds between consecutive sends: ``ceil(1000 / (rate * headroom))`` clamped."""
    effective = float(max_rate) * float(headroom)
    if effective <= 0:
        return int(max_ms)
    spacing = math.ceil(round(1000.0 / effective, 9))
    return int(max(min_ms, min(max_ms, spacing)))


def compute_window_size(budget: Optional[float], headroom: float) -> Optional[int]:
    """Jobs allowed per 24h window, or ``None`` when the budget is unlimited."""
    if budget is None or budget < 0 or math.isinf(budget):
        return None
    return max(1, math.floor(float(budget) * float(headroom)))


def plan_offsets(count: int, spacing_ms: int, window_size: Optional[int], first_window_capacity: Optional[int] = None) -> List[int]:
    """Offsets (ms from the base time) for ``count`` recipients.

    Without a window every recipient is spaced by ``spacing_ms``. With one,
    recipients past a window's capacity move a full day later, keeping their
    relative position inside the window.
    """
    if window_size is None:
        return [i * spacing_ms for i in range(count)]
    first = window_size if first_window_capacity is None else max(0, min(window_size, first_window_capacity))
    offsets: List[int] = []
    for i in range(count):
        if i < first:
            window, position = 0, i
        else:
            rest = i - first
            window, position = 1 + rest // window_size, rest % window_size
        offsets.append(window * DAY_MS + position * spacing_ms)
    return offsets


@dataclass
class ScheduleResult:
    campaign_id: str
    requested: int
    queued: int
    spacing_ms: int
    window_size: Optional[int]
    first_scheduled_for: Optional[int]
    last_scheduled_for: Optional[int]

    @property
    def duplicates(self) -> int:
        return self.requested - self.queued


class EmailScheduler:
    """Convert a campaign payload and its contacts into time-sliced queue rows."""

    def __init__(
        self,
        persistence: Persistence,
        quota_oracle: QuotaOracle,
        config: Optional[DispatchConfig] = None,
        logger=None,
    ):
        self.persistence = persistence
        self.quota_oracle = quota_oracle
        self.config = config or DispatchConfig()
        self.logger = logger or get_logger("EmailScheduler")

    @staticmethod
    def _recipient_key(contact: Dict[str, Any]) -> Optional[str]:
        value = contact.get("recipient_id") or contact.get("recipientId") or contact.get("buyer_id") or contact.get("id")
        return str(value) if value else None

    def plan(self, quota: Quota, count: int) -> tuple[int, Optional[int], List[int]]:
        cfg = self.config
        spacing = compute_spacing_ms(quota.max_instant_rate, cfg.rate_headroom, cfg.min_spacing_ms, cfg.max_spacing_ms)
        window = None if quota.unlimited_budget else compute_window_size(quota.max_24h_budget, cfg.budget_headroom)
        first_capacity = None
        if window is not None and cfg.account_for_recent_usage:
            first_capacity = window - math.floor(quota.sent_last_24h)
        return spacing, window, plan_offsets(count, spacing, window, first_capacity)

    async def schedule(
        self,
        campaign_id: str,
        payload: Dict[str, Any],
        contacts: Sequence[Dict[str, Any]],
        base_time_ms: Optional[int] = None,
    ) -> ScheduleResult:
        """Insert one queue job per contact; re-submitting the same set is a no-op.

        Contacts without a recipient id are never deduplicated; each becomes a
        job that the worker rejects.
        """
        if not campaign_id:
            raise ValidationError("campaign_id is required to schedule email jobs")
        base = int(base_time_ms if base_time_ms is not None else time.time() * 1000)
        quota = await self.quota_oracle.get_quota()
        spacing, window, offsets = self.plan(quota, len(contacts))

        entries: List[Dict[str, Any]] = []
        for contact, offset in zip(contacts, offsets):
            recipient_id = self._recipient_key(contact)
            email = (contact.get("email") or "").strip()
            job_id = uuid.uuid4().hex
            entries.append(
                {
                    "id": job_id,
                    "campaign_id": campaign_id,
                    # id-less contacts each get their own row so the worker can error them
                    "recipient_id": recipient_id or f"missing:{job_id}",
                    "email": email,
                    "payload": {
                        "subject": payload.get("subject", ""),
                        "html": payload.get("html", ""),
                        "tags": payload.get("tags") or {},
                        "contact": {
                            "recipient_id": recipient_id,
                            "email": email,
                            "first_name": contact.get("first_name") or contact.get("firstName"),
                            "last_name": contact.get("last_name") or contact.get("lastName"),
                            "context": contact.get("context") or {},
                        },
                    },
                    "scheduled_for": base + offset,
                    "max_attempts": self.config.max_attempts,
                }
            )

        await self.persistence.ensure_campaign(campaign_id, "email")
        queued = await self.persistence.insert_queue_jobs(entries)
        status = await self.persistence.refresh_campaign_status(campaign_id)
        self.logger.info(
            "Scheduled campaign %s: %d queued, %d duplicates ignored (spacing=%dms, window=%s, status=%s)",
            campaign_id,
            queued,
            len(entries) - queued,
            spacing,
            window if window is not None else "unlimited",
            status,
        )
        return ScheduleResult(
            campaign_id=campaign_id,
            requested=len(entries),
            queued=queued,
            spacing_ms=spacing,
            window_size=window,
            first_scheduled_for=entries[0]["scheduled_for"] if entries else None,
            last_scheduled_for=entries[-1]["scheduled_for"] if entries else None,
        )
