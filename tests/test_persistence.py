import asyncio

import pytest
import pytest_asyncio

from campaign_dispatch.errors import PersistenceError
from campaign_dispatch.persistence import Persistence

NOW = 1_700_000_000_000


def _job(job_id, recipient_id, scheduled_for=NOW, campaign_id="camp", max_attempts=5):
    return {
        "id": job_id,
        "campaign_id": campaign_id,
        "recipient_id": recipient_id,
        "email": f"{recipient_id}@example.com",
        "payload": {"subject": "Hi", "html": "<p>Hi</p>", "contact": {"recipient_id": recipient_id}},
        "scheduled_for": scheduled_for,
        "max_attempts": max_attempts,
    }


@pytest_asyncio.fixture
async def store(tmp_path):
    p = Persistence(str(tmp_path / "dispatch.db"))
    await p.init_db()
    return p


@pytest.mark.asyncio
async def test_insert_is_idempotent_per_campaign_recipient(store):
    assert await store.insert_queue_jobs([_job("j1", "r1"), _job("j2", "r2")]) == 2
    assert await store.insert_queue_jobs([_job("j3", "r1"), _job("j4", "r3")]) == 1
    jobs = await store.list_jobs("camp")
    assert sorted(job["recipient_id"] for job in jobs) == ["r1", "r2", "r3"]
    assert {job["id"] for job in jobs} == {"j1", "j2", "j4"}
    assert jobs[0]["payload"]["subject"] == "Hi"


@pytest.mark.asyncio
async def test_same_recipient_allowed_in_different_campaigns(store):
    await store.insert_queue_jobs([_job("a", "r1", campaign_id="c1")])
    assert await store.insert_queue_jobs([_job("b", "r1", campaign_id="c2")]) == 1


@pytest.mark.asyncio
async def test_claim_only_due_jobs_and_increment_attempts(store):
    await store.insert_queue_jobs([_job("due", "r1", NOW - 10), _job("later", "r2", NOW + 60_000)])
    claimed = await store.claim_due_jobs(10, "w1", 300, NOW)
    assert [job["id"] for job in claimed] == ["due"]
    job = claimed[0]
    assert job["status"] == "processing"
    assert job["attempts"] == 1
    assert job["locked_by"] == "w1"
    assert job["lock_expires_at"] == NOW + 300_000


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(store):
    await store.insert_queue_jobs([_job(f"j{i}", f"r{i}", NOW - i) for i in range(6)])
    first, second = await asyncio.gather(
        store.claim_due_jobs(4, "w1", 300, NOW),
        store.claim_due_jobs(4, "w2", 300, NOW),
    )
    ids_first = {job["id"] for job in first}
    ids_second = {job["id"] for job in second}
    assert not ids_first & ids_second
    assert len(ids_first | ids_second) == 6


@pytest.mark.asyncio
async def test_live_lease_is_not_reclaimed_but_expired_one_is(store):
    await store.insert_queue_jobs([_job("j1", "r1")])
    await store.claim_due_jobs(1, "w1", 300, NOW)
    assert await store.claim_due_jobs(1, "w2", 300, NOW + 1_000) == []
    reclaimed = await store.claim_due_jobs(1, "w2", 300, NOW + 301_000)
    assert [job["id"] for job in reclaimed] == ["j1"]
    assert reclaimed[0]["attempts"] == 2
    assert reclaimed[0]["locked_by"] == "w2"
    # the original holder lost the lease and can no longer record an outcome
    assert await store.mark_job_sent("j1", "w1", "msg") is False
    assert await store.mark_job_sent("j1", "w2", "msg") is True


@pytest.mark.asyncio
async def test_sent_is_terminal(store):
    await store.insert_queue_jobs([_job("j1", "r1")])
    await store.claim_due_jobs(1, "w1", 300, NOW)
    assert await store.mark_job_sent("j1", "w1", "provider-1") is True
    assert await store.requeue_job("j1", "w1", NOW, "late error", NOW) is False
    assert await store.mark_job_failed("j1", "w1", "error", "late error", NOW) is False
    assert await store.claim_due_jobs(1, "w2", 300, NOW + 10_000_000) == []
    job = await store.get_job("j1")
    assert job["status"] == "sent"
    assert job["provider_message_id"] == "provider-1"
    assert job["locked_by"] is None


@pytest.mark.asyncio
async def test_requeue_sets_future_schedule_and_error(store):
    await store.insert_queue_jobs([_job("j1", "r1")])
    await store.claim_due_jobs(1, "w1", 300, NOW)
    assert await store.requeue_job("j1", "w1", NOW + 60_000, "timeout", NOW)
    job = await store.get_job("j1")
    assert job["status"] == "pending"
    assert job["scheduled_for"] == NOW + 60_000
    assert job["last_error"] == "timeout"
    assert job["last_error_at"] == NOW
    assert await store.claim_due_jobs(1, "w1", 300, NOW + 1_000) == []


@pytest.mark.asyncio
async def test_mark_failed_rejects_unknown_status(store):
    with pytest.raises(ValueError):
        await store.mark_job_failed("j1", "w1", "sent", "nope", NOW)


@pytest.mark.asyncio
async def test_requeue_stuck_jobs(store):
    await store.insert_queue_jobs([_job("j1", "r1"), _job("j2", "r2", max_attempts=1)])
    await store.claim_due_jobs(2, "w1", 60, NOW)
    # leases expired at NOW + 60s; not yet stuck for 300s
    outcome = await store.requeue_stuck_jobs(300, 50, NOW + 120_000)
    assert outcome == {"requeued": 0, "dead": 0, "campaigns": []}
    outcome = await store.requeue_stuck_jobs(300, 50, NOW + 400_000)
    assert outcome["requeued"] == 1
    assert outcome["dead"] == 1
    assert outcome["campaigns"] == ["camp"]
    assert (await store.get_job("j1"))["status"] == "pending"
    dead = await store.get_job("j2")
    assert dead["status"] == "dead"
    assert dead["last_error"] == "Lease expired after final attempt"


@pytest.mark.asyncio
async def test_campaign_status_projection(store):
    await store.ensure_campaign("camp")
    await store.insert_queue_jobs([_job("j1", "r1"), _job("j2", "r2")])
    assert await store.refresh_campaign_status("camp") == "processing"
    await store.claim_due_jobs(2, "w1", 300, NOW)
    await store.mark_job_sent("j1", "w1", None)
    assert await store.refresh_campaign_status("camp") == "processing"
    await store.mark_job_failed("j2", "w1", "dead", "gave up", NOW)
    assert await store.refresh_campaign_status("camp") == "completed_with_errors"
    assert (await store.get_campaign("camp"))["status"] == "completed_with_errors"
    assert await store.campaign_counts("camp") == {"sent": 1, "dead": 1}


@pytest.mark.asyncio
async def test_campaign_all_sent(store):
    await store.ensure_campaign("camp")
    await store.insert_queue_jobs([_job("j1", "r1")])
    await store.claim_due_jobs(1, "w1", 300, NOW)
    await store.mark_job_sent("j1", "w1", "m")
    assert await store.refresh_campaign_status("camp") == "sent"
    assert await store.refresh_campaign_status("unknown") is None


@pytest.mark.asyncio
async def test_recipient_status_upsert(store):
    await store.update_recipient_status("camp", "r1", "error", error="bounced")
    await store.update_recipient_status("camp", "r1", "sent", sent_at=NOW, provider_id="p1")
    rows = await store.list_recipients("camp")
    assert len(rows) == 1
    assert rows[0]["status"] == "sent"
    assert rows[0]["sent_at"] == NOW
    assert rows[0]["provider_id"] == "p1"
    assert rows[0]["error"] is None


@pytest.mark.asyncio
async def test_sms_campaign_counts_fall_back_to_recipients(store):
    await store.ensure_campaign("sms-camp", "sms")
    await store.update_recipient_status("sms-camp", "r1", "sent")
    await store.update_recipient_status("sms-camp", "r2", "error", error="invalid")
    assert await store.refresh_campaign_status("sms-camp") == "completed_with_errors"


@pytest.mark.asyncio
async def test_sticky_sender_first_write_wins(store):
    assert await store.get_sticky_sender("r1") is None
    assert await store.insert_sticky_sender("r1", "+15550000001") == "+15550000001"
    assert await store.insert_sticky_sender("r1", "+17770000001") == "+15550000001"
    assert await store.get_sticky_sender("r1") == "+15550000001"


@pytest.mark.asyncio
async def test_thread_upsert_and_messages(store):
    first = await store.upsert_thread("r1", "5551234567", "c1")
    again = await store.upsert_thread("r1", "5551234567", "c2")
    other = await store.upsert_thread("r1", "5559876543")
    assert first == again
    assert other != first
    threads = await store.list_threads("r1")
    assert len(threads) == 2
    assert threads[0]["campaign_id"] == "c2"

    await store.insert_message(
        thread_id=first,
        recipient_id="r1",
        direction="outbound",
        from_number="+15550000001",
        to_number="+15551234567",
        body="Hello",
        provider_id="sid-1",
        is_bulk=True,
        media_urls=["https://cdn.example.com/a.jpg"],
    )
    messages = await store.list_thread_messages(first)
    assert len(messages) == 1
    assert messages[0]["is_bulk"] is True
    assert messages[0]["media_urls"] == ["https://cdn.example.com/a.jpg"]
    assert messages[0]["direction"] == "outbound"


@pytest.mark.asyncio
async def test_datastore_failures_become_persistence_errors(tmp_path):
    store = Persistence(str(tmp_path / "missing-dir" / "dispatch.db"))
    with pytest.raises(PersistenceError):
        await store.init_db()
