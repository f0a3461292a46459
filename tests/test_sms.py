from typing import Any, Dict, List

import pytest
import pytest_asyncio

from campaign_dispatch.errors import ConfigurationError, PersistenceError, TransientProviderError, ValidationError
from campaign_dispatch.persistence import Persistence
from campaign_dispatch.prometheus import DispatchMetrics
from campaign_dispatch.providers import CarrierLookup, SmsGateway
from campaign_dispatch.rate_limit import RateLimiter
from campaign_dispatch.sms import SmsDispatchService


class DummyGateway(SmsGateway):
    def __init__(self, offered: str = "+15550000001", configured: bool = True):
        self.offered = offered
        self._configured = configured
        self.calls: List[Dict[str, Any]] = []
        self.errors: Dict[str, Exception] = {}

    @property
    def configured(self) -> bool:
        return self._configured

    async def send(self, to, body, from_number=None, media_urls=None):
        self.calls.append({"to": to, "body": body, "from": from_number, "media_urls": list(media_urls or [])})
        if to in self.errors:
            raise self.errors[to]
        return {"provider_message_id": f"sid-{len(self.calls)}", "resolved_from": from_number or self.offered}


class DummyLookup(CarrierLookup):
    def __init__(self, carriers=None):
        self.carriers = carriers or {}
        self.looked_up: List[str] = []

    async def lookup(self, phone_number):
        self.looked_up.append(phone_number)
        return self.carriers.get(phone_number)


@pytest_asyncio.fixture
async def store(tmp_path):
    p = Persistence(str(tmp_path / "sms.db"))
    await p.init_db()
    return p


def make_service(store, gateway=None, lookup=None, limiter=None):
    return SmsDispatchService(
        store,
        gateway or DummyGateway(),
        lookup or DummyLookup(),
        limiter or RateLimiter(global_mps=0, carrier_mps=0, tmobile_daily_segments=None),
        metrics=DispatchMetrics(),
    )


@pytest.mark.asyncio
async def test_first_success_sets_sticky_sender_and_later_sends_reuse_it(store):
    first_gateway = DummyGateway(offered="+15550000001")
    first = await make_service(store, first_gateway).send("buyer-1", ["(555) 123-4567"], "Hi there")
    assert first[0].status == "sent"
    assert first[0].from_number == "+15550000001"
    assert first_gateway.calls[0]["from"] is None
    assert await store.get_sticky_sender("buyer-1") == "+15550000001"

    second_gateway = DummyGateway(offered="+17770000001")
    second = await make_service(store, second_gateway).send("buyer-1", ["5551234567"], "Again")
    assert second_gateway.calls[0]["from"] == "+15550000001"
    assert second[0].from_number == "+15550000001"
    assert await store.get_sticky_sender("buyer-1") == "+15550000001"


@pytest.mark.asyncio
async def test_sticky_sender_applies_to_later_numbers_in_same_batch(store):
    gateway = DummyGateway(offered="+15550000001")
    await make_service(store, gateway).send("buyer-1", ["5551110000", "5552220000"], "Hi")
    assert [call["from"] for call in gateway.calls] == [None, "+15550000001"]


@pytest.mark.asyncio
async def test_invalid_number_fails_only_that_number(store):
    gateway = DummyGateway()
    results = await make_service(store, gateway).send("buyer-1", ["123", "555-123-4567"], "Hi")

    assert [r.status for r in results] == ["error", "sent"]
    assert results[0].to == "123"
    assert results[0].error_code == ValidationError.code
    assert results[0].retryable is False
    assert results[1].to == "+15551234567"
    assert [call["to"] for call in gateway.calls] == ["+15551234567"]


@pytest.mark.asyncio
async def test_provider_errors_are_isolated_per_number(store):
    gateway = DummyGateway()
    gateway.errors["+15551110000"] = ValidationError("Provider error 422", status=422, details="not SMS capable")
    gateway.errors["+15552220000"] = TransientProviderError("Server Error", status=502)
    service = make_service(store, gateway)

    results = await service.send("buyer-1", ["5551110000", "5552220000", "5553330000"], "Hi")

    assert [r.status for r in results] == ["error", "error", "sent"]
    assert "not SMS capable" in results[0].error
    assert results[0].retryable is False
    assert results[1].retryable is True
    assert len(gateway.calls) == 3
    assert service.metrics.registry.get_sample_value("cd_errors_total", {"channel": "sms"}) == 2
    assert service.metrics.registry.get_sample_value("cd_sent_total", {"channel": "sms"}) == 1


@pytest.mark.asyncio
async def test_dry_run_makes_no_calls_and_no_writes(store):
    gateway = DummyGateway()
    lookup = DummyLookup()
    results = await make_service(store, gateway, lookup).send("buyer-1", ["5551234567"], "Hi", dry_run=True)

    assert results[0].as_dict()["sid"] == "dry-run"
    assert results[0].as_dict()["to"] == "+15551234567"
    assert results[0].status == "dry_run"
    assert gateway.calls == []
    assert lookup.looked_up == []
    assert await store.get_sticky_sender("buyer-1") is None
    assert await store.list_threads("buyer-1") == []


@pytest.mark.asyncio
async def test_missing_credentials_abort_before_any_call(store):
    gateway = DummyGateway(configured=False)
    with pytest.raises(ConfigurationError):
        await make_service(store, gateway).send("buyer-1", ["5551234567"], "Hi")
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_threads_and_messages_are_persisted(store):
    service = make_service(store)
    media = ["https://cdn.example.com/flyer.jpg"]
    first = await service.send("buyer-1", ["+1 555 123 4567"], "Open house", campaign_id="c1", media_urls=media)
    second = await service.send("buyer-1", ["5551234567"], "Reminder", campaign_id="c2")

    assert first[0].thread_id == second[0].thread_id
    threads = await store.list_threads("buyer-1")
    assert len(threads) == 1
    assert threads[0]["phone_number"] == "5551234567"
    assert threads[0]["campaign_id"] == "c2"
    messages = await store.list_thread_messages(first[0].thread_id)
    assert [m["body"] for m in messages] == ["Open house", "Reminder"]
    assert all(m["is_bulk"] and m["direction"] == "outbound" for m in messages)
    assert messages[0]["media_urls"] == media
    assert messages[0]["provider_id"] == "sid-1"
    assert messages[0]["to_number"] == "+15551234567"


@pytest.mark.asyncio
async def test_campaign_recipient_status_is_mirrored(store):
    gateway = DummyGateway()
    gateway.errors["+15552220000"] = ValidationError("Provider error 400", status=400)
    service = make_service(store, gateway)

    await service.send("buyer-1", ["5551110000"], "Hi", campaign_id="sms-camp")
    assert (await store.get_campaign("sms-camp"))["status"] == "sent"

    await service.send("buyer-2", ["5551110000", "5552220000"], "Hi", campaign_id="sms-camp")
    recipients = {row["recipient_id"]: row for row in await store.list_recipients("sms-camp")}
    assert recipients["buyer-1"]["status"] == "sent"
    assert recipients["buyer-2"]["status"] == "error"
    assert "+15552220000" in recipients["buyer-2"]["error"]
    campaign = await store.get_campaign("sms-camp")
    assert campaign["channel"] == "sms"
    assert campaign["status"] == "completed_with_errors"


@pytest.mark.asyncio
async def test_exhausted_carrier_reservoir_is_a_retryable_error(store):
    lookup = DummyLookup({"+15551110000": "T-Mobile USA, Inc.", "+15552220000": "T-Mobile USA, Inc."})
    limiter = RateLimiter(global_mps=0, carrier_mps=0, tmobile_daily_segments=1)
    gateway = DummyGateway()
    service = make_service(store, gateway, lookup, limiter)

    results = await service.send("buyer-1", ["5551110000", "5552220000"], "Hi")

    assert [r.status for r in results] == ["sent", "error"]
    assert results[1].retryable is True
    assert results[1].error_code == "rate_limited"
    assert len(gateway.calls) == 1
    assert service.metrics.registry.get_sample_value("cd_throttled_total", {"channel": "sms"}) == 1


@pytest.mark.asyncio
async def test_unknown_carrier_uses_unknown_bucket(store):
    limiter = RateLimiter(global_mps=0, carrier_mps=0)
    await make_service(store, limiter=limiter).send("buyer-1", ["5551234567"], "Hi")
    assert list(limiter.buckets) == ["unknown"]


@pytest.mark.asyncio
async def test_persistence_errors_propagate(tmp_path):
    class BrokenStore(Persistence):
        async def upsert_thread(self, recipient_id, phone_number, campaign_id=None):
            raise PersistenceError("database is locked")

    store = BrokenStore(str(tmp_path / "broken.db"))
    await store.init_db()
    with pytest.raises(PersistenceError):
        await make_service(store).send("buyer-1", ["5551234567"], "Hi")


def test_result_serialises_from_field():
    from campaign_dispatch.sms import SmsSendResult

    data = SmsSendResult(to="+15551234567", status="sent", sid="sid-1", from_number="+15550000001").as_dict()
    assert data["from"] == "+15550000001"
    assert "from_number" not in data
