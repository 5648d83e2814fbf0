"""
Tests for enrollment transitions, playbook outcomes and learning synthesis
"""

import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from revenue_agent.db.models import (
    Account, DeliveryQueueEntry, PlaybookLearning, PlaybookOutcome,
)
from revenue_agent.services.account_context import AccountNotFoundError
from revenue_agent.services.agent_memory import AgentMemoryStore
from revenue_agent.services.delivery_queue import DeliveryQueue
from revenue_agent.services.enrollment_service import EnrollmentService
from revenue_agent.services.learnings_service import LearningsService
from revenue_agent.services.llm_service import LLMService
from revenue_agent.services.response_schemas import LearningsResponse
from revenue_agent.services.retry import RetryPolicy

from fakes import FakeLLM, FakeOpenAIClient, TENANT, memo, seed_account, seed_playbook

pytestmark = pytest.mark.usefixtures("setup_database")


async def _queued(db, event_type):
    result = await db.execute(select(DeliveryQueueEntry).where(DeliveryQueueEntry.event_type == event_type))
    return result.scalars().all()


# ============ Enrollment ============

@pytest.mark.asyncio
async def test_enroll_discovered_account(db_session):
    account = await seed_account(db_session, "Acme Mechanical", enrollment_status="discovered")

    enrolled = await EnrollmentService(db_session, delivery_queue=DeliveryQueue()).enroll(account.id, TENANT)

    assert enrolled.enrollment_status == "enrolled"
    assert enrolled.enrolled_at is not None
    events = await _queued(db_session, "enrollment")
    assert len(events) == 1
    assert json.loads(events[0].payload_json)["enrollment_status"] == "enrolled"


@pytest.mark.asyncio
async def test_enroll_rejects_enrolled_and_graduated(db_session):
    enrolled = await seed_account(db_session, "Alpha", enrollment_status="enrolled")
    graduated = await seed_account(db_session, "Bravo", enrollment_status="graduated")
    service = EnrollmentService(db_session)

    with pytest.raises(ValueError):
        await service.enroll(enrolled.id, TENANT)
    with pytest.raises(ValueError):
        await service.enroll(graduated.id, TENANT)
    assert (await db_session.get(Account, graduated.id)).enrollment_status == "graduated"


@pytest.mark.asyncio
async def test_enroll_unknown_account(db_session):
    with pytest.raises(AccountNotFoundError):
        await EnrollmentService(db_session).enroll("missing", TENANT)


@pytest.mark.asyncio
async def test_record_outcome_stores_and_notifies(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    playbook = await seed_playbook(db_session, account)

    outcome = await EnrollmentService(db_session).record_outcome(
        playbook.id, TENANT,
        action_taken="Called the owner about water heaters",
        outcome_type="won",
        outcome_score=0.9,
        revenue_impact=18_000.0,
    )

    assert outcome.account_id == account.id
    events = await _queued(db_session, "outcome")
    payload = json.loads(events[0].payload_json)
    assert payload["playbook_id"] == playbook.id
    assert payload["outcome"] == "won"
    assert payload["revenue_impact"] == 18_000.0


@pytest.mark.asyncio
async def test_record_outcome_unknown_playbook(db_session):
    with pytest.raises(LookupError):
        await EnrollmentService(db_session).record_outcome("missing", TENANT, "Call", "won")


# ============ Learnings ============

async def _seed_outcome(db, account, playbook, days_ago=5, outcome_type="won"):
    db.add(PlaybookOutcome(
        tenant_id=TENANT,
        account_id=account.id,
        playbook_id=playbook.id,
        action_taken="Led with stock availability",
        outcome_type=outcome_type,
        outcome_score=0.8,
        recorded_at=datetime.utcnow() - timedelta(days=days_ago),
    ))
    await db.commit()


@pytest.mark.asyncio
async def test_synthesize_skips_without_recent_outcomes(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    playbook = await seed_playbook(db_session, account)
    await _seed_outcome(db_session, account, playbook, days_ago=120)
    llm = FakeLLM()

    assert await LearningsService(db_session, llm_service=llm).synthesize(TENANT) == 0
    assert llm.calls == []


@pytest.mark.asyncio
async def test_synthesize_inserts_learnings_and_memory(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    playbook = await seed_playbook(db_session, account)
    await _seed_outcome(db_session, account, playbook)
    llm = FakeLLM([LearningsResponse.model_validate({
        "learnings": [
            {"learning": "Stock availability beats price for plumbing shops", "evidence_count": 4,
             "success_rate": 0.75, "recommended_for_segments": ["plumbing"]},
            {"learning": "Call before 9am", "evidence_count": 2},
        ],
        "agent_memo": memo(summary="Two learnings").model_dump(),
    })])

    inserted = await LearningsService(db_session, llm_service=llm).synthesize(TENANT)

    assert inserted == 2
    rows = (await db_session.execute(
        select(PlaybookLearning).order_by(PlaybookLearning.evidence_count.desc())
    )).scalars().all()
    assert rows[0].is_active is True
    assert json.loads(rows[0].recommended_segments_json) == ["plumbing"]
    assert "Led with stock availability" in llm.calls[0]["user"]
    assert (await AgentMemoryStore().read(TENANT, "synthesize-learnings")).last_run_summary == "Two learnings"


@pytest.mark.asyncio
async def test_synthesize_malformed_output_inserts_nothing(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    playbook = await seed_playbook(db_session, account)
    await _seed_outcome(db_session, account, playbook)
    llm = LLMService(
        client=FakeOpenAIClient(["I could not find any patterns."]),
        model="test-model",
        retry_policy=RetryPolicy(max_attempts=1, timeout=5.0),
    )

    assert await LearningsService(db_session, llm_service=llm).synthesize(TENANT) == 0
    assert (await db_session.execute(select(PlaybookLearning))).scalars().all() == []
