"""Email queue worker: claim due jobs under a lease and drive them to a final state."""

from __future__ import annotations

import asyncio
import random
import socket
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import DispatchConfig
from .content import append_unsubscribe_footer, build_context, build_unsubscribe_url, linkify_html, render_template
from .errors import (
    ConfigurationError,
    DispatchError,
    PersistenceError,
    ValidationError,
    classify_error,
    compute_retry_delay,
    is_throttle,
)
from .logger import get_logger
from .persistence import Persistence
from .prometheus import DispatchMetrics
from .providers import EmailProvider

CHANNEL = "email"


@dataclass
class ProcessResult:
    """Outcome counters for one ``process_queue`` invocation."""

    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    dead: int = 0
    lost: int = 0
    campaigns: set = field(default_factory=set)

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "retried": self.retried,
            "failed": self.failed,
            "dead": self.dead,
            "lost": self.lost,
        }


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class EmailQueueWorker:
    """Process queued email jobs with lease ownership, retry and dead-lettering.

    Each :meth:`process_queue` call is a finite unit of work: it claims up to
    ``limit`` due jobs and returns once every claimed job has left the
    ``processing`` state (or the datastore failed). Retryable provider errors
    never escape this class.
    """

    def __init__(
        self,
        persistence: Persistence,
        provider: EmailProvider,
        config: Optional[DispatchConfig] = None,
        *,
        metrics: Optional[DispatchMetrics] = None,
        base_url: Optional[str] = None,
        unsubscribe_secret: Optional[str] = None,
        physical_address: Optional[str] = None,
        worker_id: Optional[str] = None,
        logger=None,
        log_delivery_activity: bool = False,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.persistence = persistence
        self.provider = provider
        self.config = config or DispatchConfig()
        self.metrics = metrics or DispatchMetrics()
        self.base_url = base_url
        self.unsubscribe_secret = unsubscribe_secret
        self.physical_address = physical_address
        self.worker_id = worker_id or default_worker_id()
        self.logger = logger or get_logger("EmailQueueWorker")
        self._log_delivery_activity = bool(log_delivery_activity)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------ content
    def build_message(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """Render the job's content for its recipient.

        Raises ConfigurationError when the base URL or unsubscribe secret is
        missing and ValidationError when the job has no recipient id or address.
        """
        payload = job.get("payload") or {}
        contact = payload.get("contact") or {}
        if not self.base_url:
            raise ConfigurationError("Base URL is not configured; cannot build unsubscribe link")
        if not self.unsubscribe_secret:
            raise ConfigurationError("Unsubscribe secret is not configured")
        recipient_id = contact.get("recipient_id")
        if not recipient_id:
            raise ValidationError("Job has no recipient identifier")
        email = contact.get("email") or job.get("email")
        if not email:
            raise ValidationError("Job has no recipient email address")

        context = build_context(contact)
        subject = render_template(payload.get("subject", ""), context)
        html = render_template(payload.get("html", ""), context)
        if self.config.rewrite_links:
            html = linkify_html(html)
        unsubscribe_url = build_unsubscribe_url(self.base_url, self.unsubscribe_secret, recipient_id, email)
        html = append_unsubscribe_footer(html, unsubscribe_url, self.physical_address)
        tags = dict(payload.get("tags") or {})
        tags.setdefault("campaign_id", job.get("campaign_id"))
        tags.setdefault("recipient_id", recipient_id)
        return {
            "to": email,
            "subject": subject,
            "html": html,
            "tags": tags,
            "unsubscribe_url": unsubscribe_url,
            "recipient_id": recipient_id,
        }

    # --------------------------------------------------------------- dispatching
    async def _send_with_backoff(self, job_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        """Send once, retrying inline with linear backoff while the provider throttles."""
        attempt = 0
        while True:
            try:
                return await self.provider.send(
                    message["to"],
                    message["subject"],
                    message["html"],
                    tags=message["tags"],
                    unsubscribe_url=message["unsubscribe_url"],
                    idempotency_key=job_id,
                )
            except Exception as exc:
                if not is_throttle(exc) or attempt >= self.config.rate_max_retry:
                    raise
                self.metrics.inc_throttled(CHANNEL)
                attempt += 1
                delay = self.config.rate_backoff_ms * attempt / 1000.0
                self.logger.info("Provider throttled job %s, inline retry %d in %.1fs", job_id, attempt, delay)
                await self._sleep(delay)

    @staticmethod
    def _describe(exc: BaseException) -> str:
        if isinstance(exc, DispatchError):
            return exc.describe()
        return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__

    async def _mirror_recipient(self, job: Dict[str, Any], status: str, **fields: Any) -> None:
        recipient_id = ((job.get("payload") or {}).get("contact") or {}).get("recipient_id")
        if not recipient_id:
            return
        await self.persistence.update_recipient_status(job["campaign_id"], recipient_id, status, **fields)

    async def _fail(self, job: Dict[str, Any], exc: BaseException, result: ProcessResult) -> None:
        """Classify a failure and requeue, dead-letter or error the job."""
        job_id = job["id"]
        attempts = int(job.get("attempts") or 0)
        max_attempts = int(job.get("max_attempts") or self.config.max_attempts)
        retryable, code = classify_error(exc)
        error_info = self._describe(exc)
        now_ms = self._now_ms()

        if retryable and attempts < max_attempts:
            delay = compute_retry_delay(
                attempts,
                self.config.retry_base_seconds,
                self.config.retry_max_jitter_seconds,
                self._rng,
            )
            retry_at = now_ms + int(delay * 1000)
            if await self.persistence.requeue_job(job_id, self.worker_id, retry_at, error_info, now_ms):
                result.retried += 1
                self.metrics.inc_retried(CHANNEL)
                self.logger.warning(
                    "Temporary error for job %s (attempt %d/%d): %s - retrying in %ds",
                    job_id,
                    attempts,
                    max_attempts,
                    error_info,
                    int(delay),
                )
                await self._finish(job, result)
            else:
                self._lease_lost(job_id, result)
            return

        if retryable:
            status = "dead"
            error_info = f"Max attempts ({max_attempts}) exceeded: {error_info}"
            self.logger.error("Job %s dead-lettered after %d attempts: %s", job_id, attempts, error_info)
        else:
            status = "error"
            self.logger.error("Job %s failed with permanent error (%s): %s", job_id, code, error_info)

        if not await self.persistence.mark_job_failed(job_id, self.worker_id, status, error_info, now_ms):
            self._lease_lost(job_id, result)
            return
        if status == "dead":
            result.dead += 1
            self.metrics.inc_dead(CHANNEL)
        else:
            result.failed += 1
            self.metrics.inc_error(CHANNEL)
        await self._mirror_recipient(job, status, error=error_info)
        await self._finish(job, result)

    def _lease_lost(self, job_id: str, result: ProcessResult) -> None:
        result.lost += 1
        self.logger.warning("Lease on job %s was lost before its outcome could be recorded", job_id)

    async def _finish(self, job: Dict[str, Any], result: ProcessResult) -> None:
        result.campaigns.add(job["campaign_id"])
        await self.persistence.refresh_campaign_status(job["campaign_id"])

    async def process_job(self, job: Dict[str, Any], result: ProcessResult) -> None:
        """Dispatch one claimed job; only PersistenceError propagates."""
        job_id = job["id"]
        result.processed += 1
        try:
            message = self.build_message(job)
        except (ConfigurationError, ValidationError) as exc:
            await self._fail(job, exc, result)
            return

        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for job %s to %s (campaign=%s, attempt=%s)",
                job_id,
                message["to"],
                job["campaign_id"],
                job.get("attempts"),
            )
        try:
            response = await self._send_with_backoff(job_id, message)
        except PersistenceError:
            raise
        except Exception as exc:
            await self._fail(job, exc, result)
            return

        provider_id = (response or {}).get("provider_message_id")
        if not await self.persistence.mark_job_sent(job_id, self.worker_id, provider_id):
            self._lease_lost(job_id, result)
            return
        result.sent += 1
        self.metrics.inc_sent(CHANNEL)
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for job %s (provider id %s)", job_id, provider_id or "-")
        await self._mirror_recipient(
            job,
            "sent",
            sent_at=self._now_ms(),
            provider_id=provider_id,
        )
        await self._finish(job, result)
        if self.config.send_delay_ms > 0:
            await self._sleep(self.config.send_delay_ms / 1000.0)

    async def process_queue(self, limit: int = 5) -> ProcessResult:
        """Claim up to ``limit`` due jobs and attempt to deliver each of them."""
        result = ProcessResult()
        jobs = await self.persistence.claim_due_jobs(
            limit,
            self.worker_id,
            self.config.lease_seconds,
            self._now_ms(),
        )
        if jobs:
            self.logger.debug("Worker %s claimed %d job(s)", self.worker_id, len(jobs))
            semaphore = asyncio.Semaphore(self.config.queue_concurrency)

            async def run(job: Dict[str, Any]) -> None:
                async with semaphore:
                    await self.process_job(job, result)

            try:
                async with asyncio.TaskGroup() as group:
                    for job in jobs:
                        group.create_task(run(job))
            except ExceptionGroup as failures:
                # only datastore failures escape process_job; siblings are already cancelled
                raise failures.exceptions[0]
        await self._refresh_queue_gauge()
        return result

    async def requeue_stuck(self, stuck_seconds: Optional[int] = None, limit: int = 50) -> Dict[str, Any]:
        """Release jobs whose lease expired long ago and roll up their campaigns."""
        stuck = self.config.stuck_seconds if stuck_seconds is None else stuck_seconds
        outcome = await self.persistence.requeue_stuck_jobs(stuck, limit, self._now_ms())
        for campaign_id in outcome["campaigns"]:
            await self.persistence.refresh_campaign_status(campaign_id)
        if outcome["requeued"] or outcome["dead"]:
            self.logger.warning(
                "Released stuck jobs: %d requeued, %d dead-lettered", outcome["requeued"], outcome["dead"]
            )
        await self._refresh_queue_gauge()
        return outcome

    async def _refresh_queue_gauge(self) -> None:
        self.metrics.set_pending(await self.persistence.count_active_jobs())
