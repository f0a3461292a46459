import asyncio

import pytest
import pytest_asyncio

from campaign_dispatch.config import DispatchConfig
from campaign_dispatch.core import DispatchCore
from campaign_dispatch.errors import ValidationError
from campaign_dispatch.providers import CarrierLookup, EmailProvider, SmsGateway
from campaign_dispatch.quota import QuotaOracle
from campaign_dispatch.rate_limit import RateLimiter


class DummyProvider(EmailProvider):
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, html, tags=None, unsubscribe_url=None, idempotency_key=None):
        self.sent.append({"to": to, "subject": subject, "idempotency_key": idempotency_key})
        return {"provider_message_id": f"msg-{len(self.sent)}"}


class DummyGateway(SmsGateway):
    configured = True

    def __init__(self):
        self.calls = []

    async def send(self, to, body, from_number=None, media_urls=None):
        self.calls.append((to, from_number))
        return {"provider_message_id": f"sid-{len(self.calls)}", "resolved_from": from_number or "+15550000001"}


class DummyLookup(CarrierLookup):
    async def lookup(self, phone_number):
        return None


async def quota_payload():
    return {"maxSendRate": 10, "max24HourSend": 50000, "sentLast24Hours": 0}


@pytest_asyncio.fixture
async def core(tmp_path):
    svc = DispatchCore(
        db_path=str(tmp_path / "core.db"),
        config=DispatchConfig(send_delay_ms=0),
        email_provider=DummyProvider(),
        sms_gateway=DummyGateway(),
        carrier_lookup=DummyLookup(),
        quota_oracle=QuotaOracle(fetch_callable=quota_payload),
        rate_limiter=RateLimiter(global_mps=0, carrier_mps=0, tmobile_daily_segments=None),
        base_url="https://crm.example.com",
        unsubscribe_secret="s3cret",
    )
    await svc.init()
    return svc


CONTACTS = [
    {"recipient_id": "r1", "email": "ada@example.com", "first_name": "Ada"},
    {"recipient_id": "r2", "email": "bob@example.com", "first_name": "Bob"},
]


@pytest.mark.asyncio
async def test_schedule_process_and_status(core):
    scheduled = await core.handle_command(
        "scheduleCampaign",
        {
            "campaign_id": "spring",
            "subject": "Hi {{first_name}}",
            "html": "<p>Hello</p>",
            "contacts": CONTACTS,
            "scheduled_for": 1000,
        },
    )
    assert scheduled["ok"] is True
    assert scheduled["queued"] == 2
    assert scheduled["duplicates"] == 0
    assert scheduled["spacing_ms"] == 125
    assert scheduled["first_scheduled_for"] == 1000
    assert scheduled["last_scheduled_for"] == 1125

    again = await core.handle_command(
        "scheduleCampaign",
        {"campaign_id": "spring", "subject": "s", "html": "h", "contacts": CONTACTS, "scheduled_for": 1000},
    )
    assert again["queued"] == 0
    assert again["duplicates"] == 2

    status = await core.handle_command("campaignStatus", {"campaign_id": "spring"})
    assert status == {"ok": True, "status": "processing", "counts": {"pending": 2}}

    processed = await core.handle_command("processQueue", {"limit": 10})
    assert processed["ok"] is True
    assert processed["processed"] == 2
    assert processed["sent"] == 2
    assert sorted(m["subject"] for m in core.email_provider.sent) == ["Hi Ada", "Hi Bob"]

    status = await core.handle_command("campaignStatus", {"campaign_id": "spring"})
    assert status == {"ok": True, "status": "sent", "counts": {"sent": 2}}

    jobs = await core.handle_command("listJobs", {"campaign_id": "spring", "active_only": True})
    assert jobs == {"ok": True, "jobs": []}


@pytest.mark.asyncio
async def test_unknown_campaign_and_command(core):
    assert await core.handle_command("campaignStatus", {"campaign_id": "nope"}) == {
        "ok": False,
        "error": "unknown campaign 'nope'",
    }
    assert await core.handle_command("doesNotExist", {}) == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_schedule_without_campaign_id_raises(core):
    with pytest.raises(ValidationError):
        await core.handle_command("scheduleCampaign", {"contacts": CONTACTS, "subject": "s", "html": "h"})


@pytest.mark.asyncio
async def test_send_sms_accepts_single_number(core):
    result = await core.handle_command(
        "sendSms", {"recipient_id": "r1", "numbers": "5551234567", "body": "Hello", "campaign_id": "sms-1"}
    )
    assert result["ok"] is True
    assert result["results"][0]["to"] == "+15551234567"
    assert result["results"][0]["status"] == "sent"
    assert result["results"][0]["from"] == "+15550000001"

    status = await core.handle_command("campaignStatus", {"campaign_id": "sms-1"})
    assert status["status"] == "sent"

    with pytest.raises(ValidationError):
        await core.handle_command("sendSms", {"recipient_id": "r1", "numbers": [], "body": "Hello"})


@pytest.mark.asyncio
async def test_requeue_stuck_with_empty_queue(core):
    assert await core.handle_command("requeueStuck", {}) == {"ok": True, "requeued": 0, "dead": 0}


@pytest.mark.asyncio
async def test_start_without_interval_does_not_spawn_loop(core):
    await core.start()
    assert core._task_worker is None
    assert await core.handle_command("run now") == {"ok": True}
    await core.stop()


@pytest.mark.asyncio
async def test_worker_loop_processes_due_jobs(tmp_path):
    provider = DummyProvider()
    svc = DispatchCore(
        db_path=str(tmp_path / "loop.db"),
        config=DispatchConfig(send_delay_ms=0),
        email_provider=provider,
        sms_gateway=DummyGateway(),
        carrier_lookup=DummyLookup(),
        quota_oracle=QuotaOracle(fetch_callable=quota_payload),
        rate_limiter=RateLimiter(global_mps=0, carrier_mps=0, tmobile_daily_segments=None),
        base_url="https://crm.example.com",
        unsubscribe_secret="s3cret",
        worker_interval=0.05,
    )
    await svc.start()
    try:
        await svc.handle_command(
            "scheduleCampaign",
            {"campaign_id": "loop", "subject": "s", "html": "h", "contacts": CONTACTS[:1], "scheduled_for": 1000},
        )
        await svc.handle_command("run now")
        for _ in range(100):
            if provider.sent:
                break
            await asyncio.sleep(0.05)
        assert len(provider.sent) == 1
    finally:
        await svc.stop()
    assert svc._task_worker is None


def test_from_settings_applies_overrides(tmp_path):
    settings = {
        "db_path": str(tmp_path / "settings.db"),
        "base_url": "https://crm.example.com",
        "worker_interval": None,
        "worker_limit": 7,
        "dispatch": DispatchConfig(max_attempts=3),
    }
    provider = DummyProvider()
    svc = DispatchCore.from_settings(settings, email_provider=provider)
    assert svc.persistence.db_path == settings["db_path"]
    assert svc.config.max_attempts == 3
    assert svc.worker.base_url == "https://crm.example.com"
    assert svc.email_provider is provider
    assert svc._worker_limit == 7
