"""
Tests for the CRM delivery queue
"""

import asyncio
import json

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from revenue_agent.db.models import DeliveryQueueEntry
from revenue_agent.schemas import EnrollmentPayload, OutcomePayload
from revenue_agent.services.delivery_queue import MAX_ATTEMPTS, DeliveryQueue, _tenant_locks, load_payload

from fakes import TENANT, WebhookSink, seed_account, seed_org

pytestmark = pytest.mark.usefixtures("setup_database")

WEBHOOK_URL = "https://crm.example.com/hook"


def _enrollment(account_id: str = "acct-1") -> EnrollmentPayload:
    return EnrollmentPayload(
        account_id=account_id,
        account_name="Acme Mechanical",
        segment="plumbing",
        enrollment_status="enrolled",
        assigned_tm="rep@example.com",
    )


async def _entry(db, entry_id) -> DeliveryQueueEntry:
    result = await db.execute(
        select(DeliveryQueueEntry)
        .where(DeliveryQueueEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_enqueue_stores_pending_entry(db_session):
    queue = DeliveryQueue()

    entry_id = await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())

    entry = await _entry(db_session, entry_id)
    assert entry.status == "pending"
    assert entry.attempts == 0
    assert entry.event_id
    assert load_payload(entry)["account_name"] == "Acme Mechanical"


@pytest.mark.asyncio
async def test_enqueue_validates_payload():
    queue = DeliveryQueue()

    with pytest.raises(ValueError):
        await queue.enqueue(TENANT, "graduation", "acct-1", _enrollment())
    with pytest.raises(ValidationError):
        await queue.enqueue(TENANT, "outcome", "acct-1", {"event": "outcome", "account_id": "acct-1"})
    with pytest.raises(ValidationError):
        await queue.enqueue(TENANT, "renewal", "acct-1", {"event": "renewal", "account_id": "acct-1"})


@pytest.mark.asyncio
async def test_enqueue_accepts_dict_payload(db_session):
    entry_id = await DeliveryQueue().enqueue(TENANT, "outcome", "acct-1", {
        "event": "outcome",
        "account_id": "acct-1",
        "playbook_id": "pb-1",
        "action_taken": "Called the owner",
        "outcome": "won",
        "revenue_impact": 12000,
    })

    entry = await _entry(db_session, entry_id)
    assert entry.event_type == "outcome"
    assert load_payload(entry)["revenue_impact"] == 12000


@pytest.mark.asyncio
async def test_success_marks_sent_and_is_not_retried(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL, secret="s3cret")
    sink = WebhookSink()

    async with sink.client() as client:
        queue = DeliveryQueue(http_client=client)
        entry_id = await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())

        first = await queue.process_pending(TENANT)
        second = await queue.process_pending(TENANT)

    assert first.sent == 1
    assert second.sent == 0
    assert len(sink.requests) == 1

    entry = await _entry(db_session, entry_id)
    assert entry.status == "sent"
    assert entry.attempts == 1
    assert entry.sent_at is not None


@pytest.mark.asyncio
async def test_request_carries_idempotency_and_secret_headers(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL, secret="s3cret")
    sink = WebhookSink()

    async with sink.client() as client:
        queue = DeliveryQueue(http_client=client)
        entry_id = await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())
        await queue.process_pending(TENANT)

    entry = await _entry(db_session, entry_id)
    request = sink.requests[0]
    assert str(request.url) == WEBHOOK_URL
    assert request.method == "POST"
    assert request.headers["X-Event-Id"] == entry.event_id
    assert request.headers["X-Webhook-Secret"] == "s3cret"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content)["event"] == "enrollment"


@pytest.mark.asyncio
async def test_secret_header_omitted_without_secret(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL)
    sink = WebhookSink()

    async with sink.client() as client:
        queue = DeliveryQueue(http_client=client)
        await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())
        await queue.process_pending(TENANT)

    assert "X-Webhook-Secret" not in sink.requests[0].headers


@pytest.mark.asyncio
async def test_fails_after_exactly_five_attempts(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL)
    sink = WebhookSink(default_status=500)

    async with sink.client() as client:
        queue = DeliveryQueue(http_client=client)
        entry_id = await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())

        for attempt in range(1, MAX_ATTEMPTS):
            result = await queue.process_pending(TENANT)
            assert result.retried == 1
            entry = await _entry(db_session, entry_id)
            assert entry.status == "pending"
            assert entry.attempts == attempt

        final = await queue.process_pending(TENANT)
        after = await queue.process_pending(TENANT)

    assert final.failed == 1
    assert after.failed == 0 and after.retried == 0
    entry = await _entry(db_session, entry_id)
    assert entry.status == "failed"
    assert entry.attempts == MAX_ATTEMPTS
    assert "500" in entry.last_error
    assert len(sink.requests) == MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_recovers_after_transient_failures(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL)
    sink = WebhookSink(statuses=[503, 502])

    async with sink.client() as client:
        queue = DeliveryQueue(http_client=client)
        entry_id = await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())
        for _ in range(3):
            await queue.process_pending(TENANT)

    entry = await _entry(db_session, entry_id)
    assert entry.status == "sent"
    assert entry.attempts == 3
    assert entry.last_error is None


@pytest.mark.asyncio
async def test_no_webhook_is_a_skipped_no_op(db_session):
    queue = DeliveryQueue()
    entry_id = await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())

    result = await queue.process_pending(TENANT)

    assert result.skipped is True
    entry = await _entry(db_session, entry_id)
    assert entry.status == "pending"
    assert entry.attempts == 0


@pytest.mark.asyncio
async def test_concurrent_passes_deliver_once(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL)
    sink = WebhookSink()

    async with sink.client() as client:
        queue = DeliveryQueue(http_client=client)
        await queue.enqueue(TENANT, "enrollment", "acct-1", _enrollment())
        await asyncio.gather(queue.process_pending(TENANT), DeliveryQueue(http_client=client).process_pending(TENANT))

    assert len(sink.requests) == 1


@pytest.mark.asyncio
async def test_tenant_locks_are_per_loop_and_dropped_once_closed():
    async def grab():
        return asyncio.get_running_loop(), DeliveryQueue()._lock_for(TENANT)

    other_loop, other_lock = await asyncio.to_thread(asyncio.run, grab())
    assert other_loop.is_closed()

    lock = DeliveryQueue()._lock_for(TENANT)

    assert lock is not other_lock
    assert lock is DeliveryQueue()._lock_for(TENANT)
    assert other_loop not in _tenant_locks


@pytest.mark.asyncio
async def test_notify_swallows_delivery_failure(db_session):
    await seed_org(db_session, webhook_url=WEBHOOK_URL)
    sink = WebhookSink(default_status=500)

    async with sink.client() as client:
        entry_id = await DeliveryQueue(http_client=client).notify(
            TENANT, "outcome", "acct-1",
            OutcomePayload(account_id="acct-1", playbook_id="pb-1", action_taken="Call", outcome="won"),
        )

    entry = await _entry(db_session, entry_id)
    assert entry.status == "pending"
    assert entry.attempts == 1


@pytest.mark.asyncio
async def test_notify_enrollment_builds_payload(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    await seed_org(db_session, webhook_url=WEBHOOK_URL)
    sink = WebhookSink()

    async with sink.client() as client:
        await DeliveryQueue(http_client=client).notify_enrollment(TENANT, account)

    body = json.loads(sink.requests[0].content)
    assert body["account_id"] == account.id
    assert body["account_name"] == "Acme Mechanical"
    assert body["enrollment_status"] == "enrolled"
    assert "timestamp" in body
