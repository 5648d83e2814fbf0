"""
Tests for the streamed Ask Anything service
"""

import pytest
from sqlalchemy import select

from revenue_agent.db.models import QueryLog
from revenue_agent.services.agent_memory import AgentMemoryStore
from revenue_agent.services.ask_anything import (
    AskAnythingService, CONTEXT_ERROR_MESSAGE, STREAM_ERROR_MESSAGE,
)
from revenue_agent.services.response_schemas import AgentMemo

from fakes import FakeLLM, TENANT, seed_account, seed_metrics

pytestmark = pytest.mark.usefixtures("setup_database")


async def _collect(service, *args, **kwargs):
    return [chunk async for chunk in service.stream(*args, **kwargs)]


async def _logs(db):
    return (await db.execute(select(QueryLog))).scalars().all()


@pytest.mark.asyncio
async def test_account_scope_streams_and_logs(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    await seed_metrics(db_session, account, 150_000.0)
    llm = FakeLLM(stream_chunks=["Acme ", "is ", "growing."], tokens_total=57)
    service = AskAnythingService(llm_service=llm)

    chunks = await _collect(service, "How is Acme doing?", "account", account.id, TENANT,
                            rep_email="rep@example.com")

    assert chunks == ["Acme ", "is ", "growing."]
    assert "ACCOUNT: Acme Mechanical" in llm.stream_calls[0]["system"]
    assert "$150,000" in llm.stream_calls[0]["system"]

    logs = await _logs(db_session)
    assert len(logs) == 1
    assert logs[0].question == "How is Acme doing?"
    assert logs[0].response_text == "Acme is growing."
    assert logs[0].scope == "account"
    assert logs[0].scope_id == account.id
    assert logs[0].tokens_used == 57
    assert logs[0].model_used == "fake-reasoner"
    assert logs[0].latency_ms >= 0
    assert logs[0].rep_email == "rep@example.com"


@pytest.mark.asyncio
async def test_portfolio_scope_includes_weekly_memory(db_session):
    await seed_account(db_session, "Acme Mechanical")
    await AgentMemoryStore().write(TENANT, "weekly-account-review", AgentMemo(current_focus="Acme reorders"))
    llm = FakeLLM(stream_chunks=["Focus on Acme."])

    chunks = await _collect(AskAnythingService(llm_service=llm), "Where should I focus?", "portfolio", None, TENANT)

    assert chunks == ["Focus on Acme."]
    system_prompt = llm.stream_calls[0]["system"]
    assert "PORTFOLIO CONTEXT:" in system_prompt
    assert "Current focus: Acme reorders" in system_prompt


@pytest.mark.asyncio
async def test_context_failure_yields_single_error_and_no_log(db_session):
    llm = FakeLLM(stream_chunks=["never sent"])

    chunks = await _collect(AskAnythingService(llm_service=llm), "Anything?", "account", "missing", TENANT)

    assert chunks == [CONTEXT_ERROR_MESSAGE]
    assert llm.stream_calls == []
    assert await _logs(db_session) == []


@pytest.mark.asyncio
async def test_mid_stream_failure_appends_error_then_logs(db_session):
    account = await seed_account(db_session, "Acme Mechanical")
    llm = FakeLLM(stream_chunks=["Partial ", "answer"], stream_error=ConnectionError("stream reset"))

    chunks = await _collect(AskAnythingService(llm_service=llm), "Tell me more", "account", account.id, TENANT)

    assert chunks == ["Partial ", "answer", STREAM_ERROR_MESSAGE]
    logs = await _logs(db_session)
    assert len(logs) == 1
    assert logs[0].response_text == "Partial answer"
    assert logs[0].tokens_used > 0


@pytest.mark.asyncio
async def test_missing_usage_falls_back_to_token_count(db_session):
    await seed_account(db_session, "Acme Mechanical")
    llm = FakeLLM(stream_chunks=["one two three"], tokens_total=None)

    await _collect(AskAnythingService(llm_service=llm), "Count me", "portfolio", None, TENANT)

    logs = await _logs(db_session)
    assert logs[0].tokens_used == llm.count_tokens(llm.stream_calls[0]["system"] + "Count me" + "one two three")
