"""
Database models for the Revenue Intelligence Agent

Only the fields the agentic orchestration layer reads or writes are modelled:
- Account facts (metrics, contacts, category gaps, interactions, projects, competitors)
- Agent artefacts (playbooks, learnings, similarity pairs, briefings, query log)
- Agent memory (rolling per-tenant, per-run-type state)
- Delivery queue (outbox of events for the tenant's CRM webhook)
"""

from datetime import datetime
from typing import Optional
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Float, Integer, Boolean, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class AgentRunType(str, Enum):
    """Keys for the agent memory slots"""
    WEEKLY_REVIEW = "weekly-account-review"
    GENERATE_PLAYBOOK = "generate-playbook"
    DAILY_BRIEFING = "daily-briefing"
    SYNTHESIZE_LEARNINGS = "synthesize-learnings"


# ============ Account facts ============

class Account(Base):
    """Contractor account owned by a territory manager"""
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    name: Mapped[str] = mapped_column(String(255))
    segment: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # HVAC, plumbing, mechanical
    region: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    assigned_tm: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)  # rep email
    status: Mapped[str] = mapped_column(String(20), default="active")

    # Growth program
    enrollment_status: Mapped[str] = mapped_column(String(20), default="discovered", index=True)  # discovered, enrolled, graduated
    risk_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # low, medium, high, critical
    enrolled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    graduated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    wallet_share_direction: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # growing, flat, declining

    # Embedding stored as JSON array
    embedding_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_accounts_tenant_enrollment", "tenant_id", "enrollment_status"),
    )


class AccountMetrics(Base):
    """Computed financial snapshot; the newest computed_at row is current"""
    __tablename__ = "account_metrics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_12m_revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_3m_revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    yoy_growth_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # percent
    category_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    category_penetration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # percent
    opportunity_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    wallet_share_percentage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    days_since_last_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ProductCategory(Base):
    __tablename__ = "product_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))


class AccountCategoryGap(Base):
    """Spend gap for one product category at one account"""
    __tablename__ = "account_category_gaps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    category_id: Mapped[str] = mapped_column(String(36), ForeignKey("product_categories.id"))
    current_spend: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    expected_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    actual_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    gap_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    estimated_opportunity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # dollars
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Contact(Base):
    """Key people at an account (owner, purchasing manager, AP, ...)"""
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)


class Interaction(Base):
    """Email / call / meeting touchpoint"""
    __tablename__ = "interactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    interaction_type: Mapped[str] = mapped_column(String(20))  # email, call, meeting, note
    direction: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # inbound, outbound
    subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    rep_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    sentiment: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)  # positive, neutral, negative
    urgency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    buying_signal: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    competitor_mentioned: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    project_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)  # bidding, active, completed
    estimated_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class Competitor(Base):
    __tablename__ = "competitors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))


class AccountCompetitor(Base):
    __tablename__ = "account_competitors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    competitor_id: Mapped[str] = mapped_column(String(36), ForeignKey("competitors.id"))
    estimated_spend_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


# ============ Agent artefacts ============

class Playbook(Base):
    """
    Generated outreach package for one account.
    At most one row per account should be active; rotation flips the prior
    active row to rotated.
    """
    __tablename__ = "playbooks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    rep_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    playbook_type: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)  # active, rotated
    priority_action: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    urgency_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    content_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # script, draft, talking points
    learnings_applied_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_playbooks_account_status", "account_id", "status"),
    )


class PlaybookOutcome(Base):
    """What happened after a rep executed a playbook"""
    __tablename__ = "playbook_outcomes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    playbook_id: Mapped[str] = mapped_column(String(36), ForeignKey("playbooks.id"), index=True)
    action_taken: Mapped[str] = mapped_column(String(500))
    outcome_type: Mapped[str] = mapped_column(String(50))  # won, progressing, no_response, lost
    outcome_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    revenue_impact: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rep_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PlaybookLearning(Base):
    """Cross-account learning distilled from playbook outcomes (tenant_id NULL = global)"""
    __tablename__ = "playbook_learnings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    learning: Mapped[str] = mapped_column(Text)
    segment: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    evidence_count: Mapped[int] = mapped_column(Integer, default=1)
    success_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # 0-1
    recommended_segments_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SimilarAccountPair(Base):
    """Directional cosine-similarity comparison A→B"""
    __tablename__ = "similar_account_pairs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    account_id_a: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), index=True)
    account_id_b: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"))
    similarity_score: Mapped[float] = mapped_column(Float)
    shared_segment: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shared_region: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    account_b_graduated: Mapped[bool] = mapped_column(Boolean, default=False)
    account_b_graduation_revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "account_id_a", "account_id_b", name="uq_similar_pair"),
    )


class DailyBriefing(Base):
    """Record of every daily briefing composed for a rep"""
    __tablename__ = "daily_briefings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    rep_email: Mapped[str] = mapped_column(String(255), index=True)
    briefing_date: Mapped[datetime] = mapped_column(DateTime)
    headline_action: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    priority_items_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    at_risk_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    portfolio_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    html_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class QueryLog(Base):
    """Every Ask Anything question and the streamed answer"""
    __tablename__ = "query_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    rep_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    question: Mapped[str] = mapped_column(Text)
    scope: Mapped[str] = mapped_column(String(20))  # account, portfolio
    scope_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    response_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    model_used: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    asked_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


# ============ Agent identity & memory ============

class AgentSystemPrompt(Base):
    """Per-tenant override of the agent's core identity prompt"""
    __tablename__ = "agent_system_prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    prompt_key: Mapped[str] = mapped_column(String(100))  # e.g. "core_agent_identity"
    content: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AgentState(Base):
    """
    Rolling agent memory, one row per (tenant, run type).
    pattern_notes is a newest-first log of dated observations.
    """
    __tablename__ = "agent_state"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    run_type: Mapped[str] = mapped_column(String(50))
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_run_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_focus: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pattern_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    watch_items_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # [{subject, signal, expires_on}]
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "run_type", name="uq_agent_state_tenant_run"),
    )


# ============ Tenant settings & delivery ============

class OrganizationSettings(Base):
    """Per-tenant configuration for the agentic layer"""
    __tablename__ = "organization_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    active_rep_emails_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    briefing_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    crm_sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    crm_webhook_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    crm_webhook_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DeliveryQueueEntry(Base):
    """Outbox row for one business event pushed to the tenant's CRM webhook"""
    __tablename__ = "delivery_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), index=True)
    event_id: Mapped[str] = mapped_column(String(36), unique=True, default=_uuid)  # idempotency key
    event_type: Mapped[str] = mapped_column(String(30))  # enrollment, graduation, at_risk, outcome
    account_id: Mapped[str] = mapped_column(String(36), index=True)
    payload_json: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, sent, failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_delivery_queue_tenant_status", "tenant_id", "status"),
    )
