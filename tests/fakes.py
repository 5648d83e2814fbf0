"""
Test doubles and seed helpers shared by the test modules.

Fakes are passed in through service constructors; nothing is patched.
"""

import json
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import List, Optional

import httpx

from revenue_agent.db.models import (
    Account, AccountMetrics, ProductCategory, AccountCategoryGap, Contact, Interaction,
    OrganizationSettings, Playbook,
)
from revenue_agent.services.llm_service import ReasoningOutputError, StreamChunk
from revenue_agent.services.response_schemas import (
    AgentMemo, BriefingResponse, PlaybookResponse, ReviewResponse,
)

TENANT = "tenant-1"


# ============ Reasoning ============

class FakeLLM:
    """Returns queued responses in order; queued exceptions are raised."""

    default_model = "fake-reasoner"

    def __init__(self, responses=(), stream_chunks=(), stream_error: Optional[Exception] = None,
                 tokens_total: Optional[int] = 42):
        self.responses = list(responses)
        self.stream_chunks = list(stream_chunks)
        self.stream_error = stream_error
        self.tokens_total = tokens_total
        self.calls: List[dict] = []
        self.stream_calls: List[dict] = []

    async def complete_json(self, system_prompt, user_prompt, response_model, temperature=None, fallback=None):
        self.calls.append({"system": system_prompt, "user": user_prompt, "model": response_model})
        if not self.responses:
            raise ReasoningOutputError("no response queued")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, system_prompt, user_prompt, temperature=None, max_tokens=None):
        self.stream_calls.append({"system": system_prompt, "user": user_prompt})
        for text in self.stream_chunks:
            yield StreamChunk(content=text, is_final=False)
        if self.stream_error:
            raise self.stream_error
        yield StreamChunk(content="", is_final=True, finish_reason="stop", tokens_total=self.tokens_total)

    def count_tokens(self, text: str) -> int:
        return len(text.split())


class FakeCompletions:
    """Stands in for AsyncOpenAI().chat.completions"""

    def __init__(self, contents=(), errors=()):
        self.contents = list(contents)
        self.errors = list(errors)
        self.requests: List[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        content = self.contents.pop(0)
        return SimpleNamespace(
            model=kwargs["model"],
            choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )


class FakeOpenAIClient:
    def __init__(self, contents=(), errors=()):
        self.chat = SimpleNamespace(completions=FakeCompletions(contents, errors))


def memo(summary: str = "Reviewed the book.", note: str = "", focus: str = "Plumbing accounts") -> AgentMemo:
    return AgentMemo(last_run_summary=summary, current_focus=focus, pattern_notes_addition=note)


def playbook_response(**overrides) -> PlaybookResponse:
    data = dict(
        playbook_type="category_winback",
        priority_action="Call Dana about the Water Heaters gap",
        urgency="this_week",
        rationale="Water Heaters spend dropped while overall revenue held at $150,000.",
        call_script="Hi Dana, this is Sam from Northside Supply. I noticed your water heater orders slowed.",
        email_subject="Water heater pricing for your spring jobs",
        email_draft="Dana, we have stock on the 50-gallon units you used last spring. Want me to hold ten?",
        talking_points=["Spring stock is in", "Contractor pricing tier"],
        objection_handlers=[{"objection": "Price is higher", "response": "Our delivery window is next-day."}],
        agent_memo=memo(summary="Built a winback plan.").model_dump(),
    )
    data.update(overrides)
    return PlaybookResponse.model_validate(data)


def review_response(**overrides) -> ReviewResponse:
    data = dict(
        graduation_ready=False,
        graduation_confidence=0.2,
        graduation_reason="",
        risk_level="low",
        risk_signals=[],
        playbook_effectiveness="effective",
        rep_action_this_week="Confirm the next order.",
        agent_memo=memo().model_dump(),
    )
    data.update(overrides)
    return ReviewResponse.model_validate(data)


def briefing_response(**overrides) -> BriefingResponse:
    data = dict(
        headline="Call Acme Mechanical about the chiller project",
        priority_items=[{
            "account_name": "Acme Mechanical",
            "account_id": "acct-1",
            "action": "Quote the chiller package",
            "urgency": "immediate",
            "why": "Project bid closes Friday",
        }],
        at_risk=[],
        portfolio_summary="Two accounts are growing; one has gone quiet.",
        agent_memo=memo(summary="Briefed the rep.").model_dump(),
    )
    data.update(overrides)
    return BriefingResponse.model_validate(data)


# ============ Embeddings / email / webhook ============

class FakeEmbedding:
    """Returns a fixed vector, or a per-name vector when the profile mentions that name."""

    def __init__(self, default=(1.0, 0.0, 0.0), by_name=None, fail_for=()):
        self.default = list(default)
        self.by_name = by_name or {}
        self.fail_for = set(fail_for)
        self.texts: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.texts.append(text)
        for name in self.fail_for:
            if name in text:
                raise ConnectionError(f"embedding failed for {name}")
        for name, vector in self.by_name.items():
            if name in text:
                return list(vector)
        return list(self.default)


class FakeEmail:
    def __init__(self, enabled: bool = True, fail: bool = False):
        self.enabled = enabled
        self.fail = fail
        self.sent: List[dict] = []

    async def send(self, to, subject, html, text=None):
        if self.fail:
            raise httpx.ConnectError("email provider unreachable")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"msg-{len(self.sent)}" if self.enabled else None


class WebhookSink:
    """httpx.MockTransport handler that records requests and answers with queued statuses."""

    def __init__(self, statuses=(), default_status: int = 200):
        self.statuses = list(statuses)
        self.default_status = default_status
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return httpx.Response(status, json={"ok": status < 300})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# ============ Seed helpers ============

async def seed_account(db, name: str = "Acme Mechanical", tenant_id: str = TENANT, **fields) -> Account:
    values = dict(
        segment="plumbing",
        region="Northeast",
        assigned_tm="rep@example.com",
        enrollment_status="enrolled",
    )
    values.update(fields)
    account = Account(tenant_id=tenant_id, name=name, **values)
    db.add(account)
    await db.commit()
    await db.refresh(account)
    return account


async def seed_metrics(db, account: Account, revenue: float, **fields) -> AccountMetrics:
    metrics = AccountMetrics(
        tenant_id=account.tenant_id,
        account_id=account.id,
        last_12m_revenue=revenue,
        **fields,
    )
    db.add(metrics)
    await db.commit()
    return metrics


async def seed_gap(db, account: Account, category: str, opportunity: float, gap_pct: float = 40.0):
    cat = ProductCategory(tenant_id=account.tenant_id, name=category)
    db.add(cat)
    await db.flush()
    db.add(AccountCategoryGap(
        tenant_id=account.tenant_id,
        account_id=account.id,
        category_id=cat.id,
        current_spend=1000.0,
        gap_pct=gap_pct,
        estimated_opportunity=opportunity,
    ))
    await db.commit()


async def seed_contact(db, account: Account, name: str, role: str = "Owner", primary: bool = True):
    db.add(Contact(tenant_id=account.tenant_id, account_id=account.id, name=name, role=role, is_primary=primary))
    await db.commit()


async def seed_interaction(db, account: Account, subject: str, days_ago: int = 1, **fields):
    db.add(Interaction(
        tenant_id=account.tenant_id,
        account_id=account.id,
        interaction_type=fields.pop("interaction_type", "call"),
        subject=subject,
        occurred_at=datetime.utcnow() - timedelta(days=days_ago),
        **fields,
    ))
    await db.commit()


async def seed_playbook(db, account: Account, status: str = "active", playbook_type: str = "new_category") -> Playbook:
    playbook = Playbook(
        tenant_id=account.tenant_id,
        account_id=account.id,
        playbook_type=playbook_type,
        status=status,
        priority_action="Introduce the hydronics line",
        urgency_level="this_month",
        content_json=json.dumps({"call_script": "Hello"}),
    )
    db.add(playbook)
    await db.commit()
    await db.refresh(playbook)
    return playbook


async def seed_org(db, tenant_id: str = TENANT, webhook_url: Optional[str] = None, secret: Optional[str] = None,
                   reps=(), briefing_enabled: bool = True) -> OrganizationSettings:
    org = OrganizationSettings(
        tenant_id=tenant_id,
        active_rep_emails_json=json.dumps(list(reps)),
        briefing_enabled=briefing_enabled,
        crm_sync_enabled=bool(webhook_url),
        crm_webhook_url=webhook_url,
        crm_webhook_secret=secret,
    )
    db.add(org)
    await db.commit()
    return org
