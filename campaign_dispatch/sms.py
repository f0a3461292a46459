"""SMS/MMS dispatch with carrier pacing, sticky sender numbers and thread persistence."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConfigurationError, DispatchError, PersistenceError, ThrottledError, ValidationError, classify_error
from .logger import get_logger
from .persistence import Persistence
from .phone import format_e164, normalize_digits
from .prometheus import DispatchMetrics
from .providers import CarrierLookup, SmsGateway
from .rate_limit import RateLimiter

CHANNEL = "sms"


@dataclass
class SmsSendResult:
    """Outcome for one destination number."""

    to: str
    status: str
    sid: Optional[str] = None
    from_number: Optional[str] = None
    thread_id: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["from"] = data.pop("from_number")
        return data


class SmsDispatchService:
    """Send a message body to every number of one recipient.

    Failures are isolated per destination number: an invalid number or a
    provider rejection is reported in that number's result while the other
    numbers are still attempted. Missing gateway credentials abort the call
    before any provider traffic, and datastore failures always propagate.
    """

    def __init__(
        self,
        persistence: Persistence,
        gateway: SmsGateway,
        carrier_lookup: CarrierLookup,
        rate_limiter: RateLimiter,
        *,
        metrics: Optional[DispatchMetrics] = None,
        logger=None,
    ):
        self.persistence = persistence
        self.gateway = gateway
        self.carrier_lookup = carrier_lookup
        self.rate_limiter = rate_limiter
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("SmsDispatch")

    async def send(
        self,
        recipient_id: str,
        numbers: Sequence[str],
        body: str,
        campaign_id: Optional[str] = None,
        media_urls: Optional[Sequence[str]] = None,
        dry_run: bool = False,
    ) -> List[SmsSendResult]:
        """Send ``body`` to each of ``numbers`` in order, returning one result per number."""
        if not self.gateway.configured:
            raise ConfigurationError("SMS gateway credentials are not configured")
        if not recipient_id:
            raise ValidationError("recipient_id is required")

        results: List[SmsSendResult] = []
        if dry_run:
            for number in numbers:
                formatted = format_e164(number) or str(number)
                self.logger.info("[DRY RUN] sms to %s: %s", formatted, body)
                results.append(SmsSendResult(to=formatted, status="dry_run", sid="dry-run", from_number=""))
            return results

        sticky = await self.persistence.get_sticky_sender(recipient_id)
        from_number = (format_e164(sticky) or sticky) if sticky else None
        media = list(media_urls or [])

        for number in numbers:
            formatted = format_e164(number)
            if not formatted:
                exc = ValidationError(f"Invalid phone number: {number}")
                results.append(self._failure(str(number), exc))
                continue

            carrier = await self.carrier_lookup.lookup(formatted) or "unknown"

            async def submit(to: str = formatted, sender: Optional[str] = from_number) -> Dict[str, Any]:
                return await self.gateway.send(to, body, from_number=sender, media_urls=media)

            try:
                receipt = await self.rate_limiter.schedule(carrier, body, submit)
            except PersistenceError:
                raise
            except Exception as exc:
                results.append(self._failure(formatted, exc))
                continue

            resolved = receipt.get("resolved_from") or ""
            resolved = format_e164(resolved) or resolved
            if not from_number and resolved:
                from_number = await self.persistence.insert_sticky_sender(recipient_id, resolved)
                self.logger.debug("Sticky sender for %s set to %s", recipient_id, from_number)

            thread_id = await self.persistence.upsert_thread(recipient_id, normalize_digits(formatted), campaign_id)
            await self.persistence.insert_message(
                thread_id=thread_id,
                recipient_id=recipient_id,
                direction="outbound",
                from_number=resolved or from_number,
                to_number=formatted,
                body=body,
                provider_id=receipt.get("provider_message_id"),
                is_bulk=True,
                media_urls=media,
            )
            self.metrics.inc_sent(CHANNEL)
            self.logger.debug("Sent sms to %s (sid=%s, carrier=%s)", formatted, receipt.get("provider_message_id"), carrier)
            results.append(
                SmsSendResult(
                    to=formatted,
                    status="sent",
                    sid=receipt.get("provider_message_id"),
                    from_number=resolved or from_number,
                    thread_id=thread_id,
                )
            )

        if campaign_id:
            await self._record_campaign_outcome(campaign_id, recipient_id, results)
        return results

    def _failure(self, to: str, exc: BaseException) -> SmsSendResult:
        retryable, code = classify_error(exc)
        detail = exc.describe() if isinstance(exc, DispatchError) else str(exc)
        if code == ThrottledError.code:
            self.metrics.inc_throttled(CHANNEL)
        self.metrics.inc_error(CHANNEL)
        self.logger.warning("Failed to send sms to %s (%s): %s", to, code, detail)
        return SmsSendResult(to=to, status="error", error=detail, error_code=code, retryable=retryable)

    async def _record_campaign_outcome(self, campaign_id: str, recipient_id: str, results: List[SmsSendResult]) -> None:
        """Mirror the recipient outcome and recompute the campaign rollup."""
        sent = [r for r in results if r.status == "sent"]
        failed = [r for r in results if r.status == "error"]
        await self.persistence.ensure_campaign(campaign_id, CHANNEL)
        await self.persistence.update_recipient_status(
            campaign_id,
            recipient_id,
            "error" if failed or not sent else "sent",
            provider_id=sent[0].sid if sent else None,
            error="; ".join(f"{r.to}: {r.error}" for r in failed) or None,
        )
        await self.persistence.refresh_campaign_status(campaign_id)
