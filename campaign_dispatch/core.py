"""Core orchestration for the campaign dispatch engine."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, Optional

from .config import DEFAULT_QUEUE_LIMIT, DEFAULT_STUCK_LIMIT, DispatchConfig
from .errors import ValidationError
from .logger import get_logger
from .persistence import Persistence
from .prometheus import DispatchMetrics
from .providers import CarrierLookup, EmailProvider, HttpCarrierLookup, HttpEmailProvider, HttpSmsGateway, SmsGateway
from .quota import QuotaOracle
from .rate_limit import RateLimiter
from .scheduler import EmailScheduler
from .sms import SmsDispatchService
from .worker import EmailQueueWorker


class DispatchCore:
    """Wire the scheduler, worker and SMS service around a shared datastore."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/dispatch.db",
        config: DispatchConfig | None = None,
        logger=None,
        metrics: DispatchMetrics | None = None,
        email_provider: EmailProvider | None = None,
        sms_gateway: SmsGateway | None = None,
        carrier_lookup: CarrierLookup | None = None,
        quota_oracle: QuotaOracle | None = None,
        rate_limiter: RateLimiter | None = None,
        base_url: str | None = None,
        unsubscribe_secret: str | None = None,
        physical_address: str | None = None,
        email_api_url: str | None = None,
        email_api_key: str | None = None,
        email_from: str | None = None,
        quota_url: str | None = None,
        sms_api_url: str | None = None,
        sms_api_key: str | None = None,
        sms_profile_id: str | None = None,
        worker_interval: float | None = None,
        worker_limit: int = DEFAULT_QUEUE_LIMIT,
        log_delivery_activity: bool = False,
    ):
        """Build the collaborators; explicit instances win over URL/key settings."""
        self.logger = logger or get_logger()
        self.config = config or DispatchConfig()
        self.metrics = metrics or DispatchMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self.quota_oracle = quota_oracle or QuotaOracle(quota_url, email_api_key)
        self.email_provider = email_provider or HttpEmailProvider(email_api_url, email_api_key, email_from)
        self.sms_gateway = sms_gateway or HttpSmsGateway(sms_api_url, sms_api_key, sms_profile_id)
        self.carrier_lookup = carrier_lookup or HttpCarrierLookup(sms_api_url, sms_api_key)
        self.rate_limiter = rate_limiter or RateLimiter(
            self.config.sms_global_mps,
            self.config.sms_carrier_mps,
            self.config.tmobile_daily_segments,
        )

        self.scheduler = EmailScheduler(self.persistence, self.quota_oracle, self.config, logger=self.logger)
        self.worker = EmailQueueWorker(
            self.persistence,
            self.email_provider,
            self.config,
            metrics=self.metrics,
            base_url=base_url,
            unsubscribe_secret=unsubscribe_secret,
            physical_address=physical_address,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
        )
        self.sms = SmsDispatchService(
            self.persistence,
            self.sms_gateway,
            self.carrier_lookup,
            self.rate_limiter,
            metrics=self.metrics,
            logger=self.logger,
        )

        self._worker_interval = math.inf if worker_interval is None else max(0.05, float(worker_interval))
        self._worker_limit = max(1, int(worker_limit))
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_worker: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **overrides: Any) -> "DispatchCore":
        """Build a core from the dictionary returned by :func:`config.load_settings`."""
        keys = (
            "db_path",
            "base_url",
            "unsubscribe_secret",
            "physical_address",
            "email_api_url",
            "email_api_key",
            "email_from",
            "quota_url",
            "sms_api_url",
            "sms_api_key",
            "sms_profile_id",
            "worker_interval",
            "worker_limit",
            "log_delivery_activity",
        )
        kwargs: Dict[str, Any] = {key: settings[key] for key in keys if settings.get(key) is not None}
        kwargs["config"] = settings.get("dispatch")
        kwargs.update(overrides)
        return cls(**kwargs)

    async def init(self) -> None:
        """Create the schema and publish the current queue depth."""
        await self.persistence.init_db()
        self.metrics.set_pending(await self.persistence.count_active_jobs())

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands.

        Taxonomy errors raised by the collaborators propagate to the caller.
        """
        payload = payload or {}
        if cmd == "run now":
            self._wake_event.set()
            return {"ok": True}
        if cmd == "processQueue":
            limit = int(payload.get("limit") or self._worker_limit)
            result = await self.worker.process_queue(limit)
            return {"ok": True, **result.as_dict()}
        if cmd == "requeueStuck":
            outcome = await self.worker.requeue_stuck(
                payload.get("stuck_seconds"),
                int(payload.get("limit") or DEFAULT_STUCK_LIMIT),
            )
            return {"ok": True, "requeued": outcome["requeued"], "dead": outcome["dead"]}
        if cmd == "scheduleCampaign":
            campaign_id = payload.get("campaign_id")
            contacts = payload.get("contacts") or []
            content = {key: payload.get(key) for key in ("subject", "html", "tags")}
            result = await self.scheduler.schedule(campaign_id, content, contacts, payload.get("scheduled_for"))
            self.metrics.set_pending(await self.persistence.count_active_jobs())
            return {
                "ok": True,
                "queued": result.queued,
                "duplicates": result.duplicates,
                "spacing_ms": result.spacing_ms,
                "window_size": result.window_size,
                "first_scheduled_for": result.first_scheduled_for,
                "last_scheduled_for": result.last_scheduled_for,
            }
        if cmd == "campaignStatus":
            campaign_id = payload.get("campaign_id")
            campaign = await self.persistence.get_campaign(campaign_id) if campaign_id else None
            if campaign is None:
                return {"ok": False, "error": f"unknown campaign '{campaign_id}'"}
            counts = await self.persistence.campaign_counts(campaign_id)
            return {"ok": True, "status": campaign["status"], "counts": counts}
        if cmd == "sendSms":
            numbers = payload.get("numbers") or []
            if isinstance(numbers, str):
                numbers = [numbers]
            if not numbers:
                raise ValidationError("At least one phone number is required")
            results = await self.sms.send(
                payload.get("recipient_id"),
                numbers,
                payload.get("body") or "",
                campaign_id=payload.get("campaign_id"),
                media_urls=payload.get("media_urls"),
                dry_run=bool(payload.get("dry_run", False)),
            )
            return {"ok": True, "results": [result.as_dict() for result in results]}
        if cmd == "listJobs":
            jobs = await self.persistence.list_jobs(
                payload.get("campaign_id"), active_only=bool(payload.get("active_only", False))
            )
            return {"ok": True, "jobs": jobs}
        return {"ok": False, "error": "unknown command"}

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialise storage and, when an interval is configured, the periodic worker loop."""
        await self.init()
        self._stop.clear()
        if math.isinf(self._worker_interval):
            self.logger.debug("No worker interval configured; queue is processed on demand")
            return
        self._task_worker = asyncio.create_task(self._worker_loop(), name="email-queue-loop")

    async def stop(self) -> None:
        """Stop the background loop gracefully."""
        self._stop.set()
        self._wake_event.set()
        if self._task_worker:
            await asyncio.gather(self._task_worker, return_exceptions=True)
            self._task_worker = None

    async def _worker_loop(self) -> None:
        """Periodically release stuck jobs and process a batch of due ones."""
        self.logger.debug("Email queue loop started (interval=%ss)", self._worker_interval)
        while not self._stop.is_set():
            try:
                await self.worker.requeue_stuck(limit=DEFAULT_STUCK_LIMIT)
                result = await self.worker.process_queue(self._worker_limit)
                processed = result.processed > 0
            except Exception as exc:  # pragma: no cover - keep the loop alive after datastore hiccups
                self.logger.exception("Unhandled error in email queue loop: %s", exc)
                processed = False
            if not processed:
                await self._wait_for_wakeup(self._worker_interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
