"""
Account Context Assembler

Builds the per-account snapshot that grounds every reasoning call:
identity, latest financials, contacts, spend gaps, recent interactions,
active plan, projects, competitors, similar graduated peers, applicable
learnings and the weekly-review memory preamble.

All sub-reads run concurrently, each in its own session. A failed or empty
sub-read leaves its section empty; only a missing account is fatal.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select, or_, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revenue_agent.db.database import async_session_maker
from revenue_agent.db.models import (
    Account, AccountMetrics, Contact, AccountCategoryGap, ProductCategory, Interaction,
    Playbook, Project, SimilarAccountPair, Competitor, AccountCompetitor, PlaybookLearning,
    AgentRunType,
)
from revenue_agent.services.agent_memory import AgentMemoryStore, build_state_preamble

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_GAP_ROWS = 24
MAX_INTERACTIONS = 10
MAX_SIMILAR_PEERS = 3
MAX_LEARNINGS = 5
RENDER_GAP_ROWS = 8
RENDER_INTERACTIONS = 5
LEARNING_CANDIDATES = 20


class AccountNotFoundError(LookupError):
    """The account doesn't exist for the tenant."""

    def __init__(self, account_id: str, tenant_id: str):
        self.account_id = account_id
        self.tenant_id = tenant_id
        super().__init__(f"Account {account_id} not found for tenant {tenant_id}")


# ============ Bundle types ============

@dataclass
class AccountIdentity:
    id: str
    name: str
    segment: Optional[str] = None
    region: Optional[str] = None
    assigned_tm: Optional[str] = None
    status: Optional[str] = None
    enrollment_status: Optional[str] = None
    risk_level: Optional[str] = None
    wallet_share_direction: Optional[str] = None


@dataclass
class MetricsSnapshot:
    last_12m_revenue: Optional[float] = None
    last_3m_revenue: Optional[float] = None
    yoy_growth_rate: Optional[float] = None
    category_penetration: Optional[float] = None
    opportunity_score: Optional[float] = None
    wallet_share_percentage: Optional[float] = None
    days_since_last_order: Optional[int] = None


@dataclass
class ContactInfo:
    name: str
    role: Optional[str] = None
    email: Optional[str] = None
    is_primary: bool = False


@dataclass
class CategoryGap:
    category_name: str
    current_spend: Optional[float] = None
    gap_pct: Optional[float] = None
    estimated_opportunity: Optional[float] = None


@dataclass
class InteractionSummary:
    interaction_type: str
    occurred_at: Optional[datetime] = None
    subject: Optional[str] = None
    sentiment: Optional[str] = None
    urgency: Optional[str] = None
    buying_signal: Optional[str] = None
    competitor_mentioned: Optional[str] = None


@dataclass
class ActivePlan:
    id: str
    playbook_type: str
    priority_action: Optional[str] = None
    urgency_level: Optional[str] = None
    generated_at: Optional[datetime] = None


@dataclass
class ProjectInfo:
    name: str
    project_type: Optional[str] = None
    status: Optional[str] = None
    estimated_value: Optional[float] = None


@dataclass
class CompetitorInfo:
    name: str
    estimated_spend_pct: Optional[float] = None


@dataclass
class SimilarPeer:
    account_id: str
    account_name: Optional[str]
    similarity_score: float
    shared_segment: Optional[str] = None
    graduation_revenue: Optional[float] = None


@dataclass
class ApplicableLearning:
    learning: str
    evidence_count: int = 1
    success_rate: Optional[float] = None


@dataclass
class AccountContext:
    """Ephemeral snapshot of one account; never persisted."""
    account: AccountIdentity
    metrics: Optional[MetricsSnapshot] = None
    contacts: List[ContactInfo] = field(default_factory=list)
    category_gaps: List[CategoryGap] = field(default_factory=list)
    recent_interactions: List[InteractionSummary] = field(default_factory=list)
    active_plan: Optional[ActivePlan] = None
    projects: List[ProjectInfo] = field(default_factory=list)
    similar_graduated: List[SimilarPeer] = field(default_factory=list)
    competitors: List[CompetitorInfo] = field(default_factory=list)
    learnings: List[ApplicableLearning] = field(default_factory=list)
    memory_preamble: str = ""


def _money(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    return f"${value:,.0f}"


def _val(value: Any, suffix: str = "") -> str:
    if value is None:
        return "N/A"
    if isinstance(value, float):
        return f"{value:g}{suffix}"
    return f"{value}{suffix}"


class AccountContextAssembler:
    """Assembles and renders AccountContext bundles."""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        memory_store: Optional[AgentMemoryStore] = None,
    ):
        self.session_factory = session_factory
        self.memory_store = memory_store or AgentMemoryStore(session_factory)

    # ---------- sub-reads (one session each) ----------

    async def _read(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.session_factory() as session:
            return await fn(session)

    async def _safe(self, section: str, coro: Awaitable[T], default: T) -> T:
        try:
            return await coro
        except Exception as e:
            logger.warning(f"[CONTEXT] {section} read failed, leaving section empty: {e}")
            return default

    async def _load_account(self, account_id: str, tenant_id: str) -> Optional[Account]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(Account).where(Account.id == account_id, Account.tenant_id == tenant_id)
            )
            return result.scalar_one_or_none()
        return await self._read(q)

    async def _load_metrics(self, account_id: str, tenant_id: str) -> Optional[MetricsSnapshot]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(AccountMetrics)
                .where(AccountMetrics.account_id == account_id, AccountMetrics.tenant_id == tenant_id)
                .order_by(AccountMetrics.computed_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return MetricsSnapshot(
                last_12m_revenue=row.last_12m_revenue,
                last_3m_revenue=row.last_3m_revenue,
                yoy_growth_rate=row.yoy_growth_rate,
                category_penetration=row.category_penetration,
                opportunity_score=row.opportunity_score,
                wallet_share_percentage=row.wallet_share_percentage,
                days_since_last_order=row.days_since_last_order,
            )
        return await self._read(q)

    async def _load_contacts(self, account_id: str, tenant_id: str) -> List[ContactInfo]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(Contact)
                .where(Contact.account_id == account_id, Contact.tenant_id == tenant_id)
                .order_by(Contact.is_primary.desc(), Contact.name)
            )
            return [
                ContactInfo(name=c.name, role=c.role, email=c.email, is_primary=bool(c.is_primary))
                for c in result.scalars().all()
            ]
        return await self._read(q)

    async def _load_gaps(self, account_id: str, tenant_id: str) -> List[CategoryGap]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(AccountCategoryGap, ProductCategory.name)
                .outerjoin(ProductCategory, ProductCategory.id == AccountCategoryGap.category_id)
                .where(
                    AccountCategoryGap.account_id == account_id,
                    AccountCategoryGap.tenant_id == tenant_id,
                )
                .order_by(AccountCategoryGap.computed_at.desc())
                .limit(MAX_GAP_ROWS)
            )
            return [
                CategoryGap(
                    category_name=name or gap.category_id,
                    current_spend=gap.current_spend,
                    gap_pct=gap.gap_pct,
                    estimated_opportunity=gap.estimated_opportunity,
                )
                for gap, name in result.all()
            ]
        return await self._read(q)

    async def _load_interactions(self, account_id: str, tenant_id: str) -> List[InteractionSummary]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(Interaction)
                .where(Interaction.account_id == account_id, Interaction.tenant_id == tenant_id)
                .order_by(Interaction.occurred_at.desc())
                .limit(MAX_INTERACTIONS)
            )
            return [
                InteractionSummary(
                    interaction_type=i.interaction_type,
                    occurred_at=i.occurred_at,
                    subject=i.subject,
                    sentiment=i.sentiment,
                    urgency=i.urgency,
                    buying_signal=i.buying_signal,
                    competitor_mentioned=i.competitor_mentioned,
                )
                for i in result.scalars().all()
            ]
        return await self._read(q)

    async def _load_active_plan(self, account_id: str, tenant_id: str) -> Optional[ActivePlan]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(Playbook)
                .where(
                    Playbook.account_id == account_id,
                    Playbook.tenant_id == tenant_id,
                    Playbook.status == "active",
                )
                .order_by(Playbook.generated_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return ActivePlan(
                id=row.id,
                playbook_type=row.playbook_type,
                priority_action=row.priority_action,
                urgency_level=row.urgency_level,
                generated_at=row.generated_at,
            )
        return await self._read(q)

    async def _load_projects(self, account_id: str, tenant_id: str) -> List[ProjectInfo]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(Project).where(Project.account_id == account_id, Project.tenant_id == tenant_id)
            )
            return [
                ProjectInfo(
                    name=p.name, project_type=p.project_type,
                    status=p.status, estimated_value=p.estimated_value,
                )
                for p in result.scalars().all()
            ]
        return await self._read(q)

    async def _load_similar(self, account_id: str, tenant_id: str) -> List[SimilarPeer]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(SimilarAccountPair, Account.name)
                .outerjoin(Account, Account.id == SimilarAccountPair.account_id_b)
                .where(
                    SimilarAccountPair.account_id_a == account_id,
                    SimilarAccountPair.tenant_id == tenant_id,
                    SimilarAccountPair.account_b_graduated == True,  # noqa: E712
                )
                .order_by(SimilarAccountPair.similarity_score.desc())
                .limit(MAX_SIMILAR_PEERS)
            )
            return [
                SimilarPeer(
                    account_id=pair.account_id_b,
                    account_name=name,
                    similarity_score=pair.similarity_score,
                    shared_segment=pair.shared_segment,
                    graduation_revenue=pair.account_b_graduation_revenue,
                )
                for pair, name in result.all()
            ]
        return await self._read(q)

    async def _load_competitors(self, account_id: str, tenant_id: str) -> List[CompetitorInfo]:
        async def q(session: AsyncSession):
            result = await session.execute(
                select(Competitor.name, AccountCompetitor.estimated_spend_pct)
                .join(Competitor, Competitor.id == AccountCompetitor.competitor_id)
                .where(
                    AccountCompetitor.account_id == account_id,
                    AccountCompetitor.tenant_id == tenant_id,
                )
            )
            return [CompetitorInfo(name=name, estimated_spend_pct=pct) for name, pct in result.all()]
        return await self._read(q)

    async def _load_learnings(self, account_id: str, tenant_id: str) -> List[ApplicableLearning]:
        async def q(session: AsyncSession):
            segment = (await session.execute(
                select(Account.segment).where(Account.id == account_id, Account.tenant_id == tenant_id)
            )).scalar_one_or_none()
            result = await session.execute(
                select(PlaybookLearning)
                .where(
                    PlaybookLearning.is_active == True,  # noqa: E712
                    or_(PlaybookLearning.tenant_id.is_(None), PlaybookLearning.tenant_id == tenant_id),
                )
                .order_by(PlaybookLearning.evidence_count.desc())
                .limit(LEARNING_CANDIDATES)
            )
            return self._learnings_for_segment(list(result.scalars().all()), segment)
        return await self._read(q)
    async def _load_memory_preamble(self, tenant_id: str) -> str:
        record = await self.memory_store.read(tenant_id, AgentRunType.WEEKLY_REVIEW.value)
        return build_state_preamble(record)

    @staticmethod
    def _segments_of(row: PlaybookLearning) -> List[str]:
        segments = []
        if row.recommended_segments_json:
            try:
                decoded = json.loads(row.recommended_segments_json)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, list):
                segments = [s for s in decoded if isinstance(s, str) and s]
            else:
                logger.warning(f"[CONTEXT] Ignoring malformed recommended segments on learning {row.id}")
        if row.segment:
            segments.append(row.segment)
        return segments

    @classmethod
    def _learnings_for_segment(cls, rows: List[PlaybookLearning], segment: Optional[str]) -> List[ApplicableLearning]:
        """Keep unscoped learnings and those recommended for the account's segment."""
        selected = []
        for row in rows:
            wanted = {s.lower() for s in cls._segments_of(row)}
            if wanted and (not segment or segment.lower() not in wanted):
                continue

            selected.append(ApplicableLearning(
                learning=row.learning,
                evidence_count=row.evidence_count or 1,
                success_rate=row.success_rate,
            ))
            if len(selected) >= MAX_LEARNINGS:
                break
        return selected

    # ---------- public API ----------

    async def assemble(self, account_id: str, tenant_id: str) -> AccountContext:
        """
        Gather every section for one account concurrently.

        Raises:
            AccountNotFoundError: the account doesn't exist for the tenant
        """
        (
            account, metrics, contacts, gaps, interactions, active_plan,
            projects, similar, competitors, learnings, preamble,
        ) = await asyncio.gather(
            self._load_account(account_id, tenant_id),
            self._safe("metrics", self._load_metrics(account_id, tenant_id), None),
            self._safe("contacts", self._load_contacts(account_id, tenant_id), []),
            self._safe("category gaps", self._load_gaps(account_id, tenant_id), []),
            self._safe("interactions", self._load_interactions(account_id, tenant_id), []),
            self._safe("active plan", self._load_active_plan(account_id, tenant_id), None),
            self._safe("projects", self._load_projects(account_id, tenant_id), []),
            self._safe("similar accounts", self._load_similar(account_id, tenant_id), []),
            self._safe("competitors", self._load_competitors(account_id, tenant_id), []),
            self._safe("learnings", self._load_learnings(account_id, tenant_id), []),
            self._safe("memory", self._load_memory_preamble(tenant_id), ""),
        )

        if account is None:
            raise AccountNotFoundError(account_id, tenant_id)

        return AccountContext(
            account=AccountIdentity(
                id=account.id,
                name=account.name,
                segment=account.segment,
                region=account.region,
                assigned_tm=account.assigned_tm,
                status=account.status,
                enrollment_status=account.enrollment_status,
                risk_level=account.risk_level,
                wallet_share_direction=account.wallet_share_direction,
            ),
            metrics=metrics,
            contacts=contacts,
            category_gaps=gaps,
            recent_interactions=interactions,
            active_plan=active_plan,
            projects=projects,
            similar_graduated=similar,
            competitors=competitors,
            learnings=learnings,
            memory_preamble=preamble,
        )

    @staticmethod
    def to_prompt_text(ctx: AccountContext) -> str:
        """Render a bundle as prompt text. Section order is fixed."""
        a = ctx.account
        lines = [
            f"ACCOUNT: {a.name} (id {a.id})",
            f"Segment: {a.segment or 'Unknown'} | Region: {a.region or 'Unknown'} | Rep: {a.assigned_tm or 'Unassigned'}",
            f"Enrollment: {a.enrollment_status or 'discovered'} | Risk: {a.risk_level or 'unrated'}"
            f" | Wallet Share Trend: {a.wallet_share_direction or 'unknown'}",
        ]

        if ctx.metrics:
            m = ctx.metrics
            lines.append("\nFINANCIALS:")
            lines.append(f"  Last 12m Revenue: {_money(m.last_12m_revenue)}")
            lines.append(f"  Last 3m Revenue: {_money(m.last_3m_revenue)}")
            lines.append(f"  YoY Growth: {_val(m.yoy_growth_rate, '%')}")
            lines.append(f"  Wallet Share Estimated: {_val(m.wallet_share_percentage, '%')}")
            lines.append(f"  Days Since Last Order: {_val(m.days_since_last_order)}")
            lines.append(
                f"  Category Penetration: {_val(m.category_penetration, '%')}"
                f" | Opportunity Score: {_val(m.opportunity_score)}"
            )

        if ctx.contacts:
            lines.append("\nCONTACTS:")
            for c in ctx.contacts:
                primary = " [PRIMARY]" if c.is_primary else ""
                email = f" <{c.email}>" if c.email else ""
                lines.append(f"  - {c.name} ({c.role or 'unknown role'}){primary}{email}")

        if ctx.category_gaps:
            gaps = sorted(
                ctx.category_gaps,
                key=lambda g: g.estimated_opportunity or 0.0,
                reverse=True,
            )[:RENDER_GAP_ROWS]
            lines.append("\nCATEGORY SPEND GAPS (largest opportunity first):")
            for g in gaps:
                lines.append(
                    f"  - {g.category_name}: {_money(g.current_spend)} spend"
                    f" | gap: {_val(g.gap_pct, '%')} ({_money(g.estimated_opportunity)} est.)"
                )

        if ctx.recent_interactions:
            recent = sorted(
                ctx.recent_interactions,
                key=lambda i: i.occurred_at or datetime.min,
                reverse=True,
            )[:RENDER_INTERACTIONS]
            lines.append("\nRECENT INTERACTIONS:")
            for i in recent:
                when = i.occurred_at.strftime("%Y-%m-%d") if i.occurred_at else "?"
                subject = f": {i.subject}" if i.subject else ""
                lines.append(
                    f"  [{when}] {i.interaction_type.upper()}{subject}"
                    f" | sentiment: {i.sentiment or '?'} | urgency: {i.urgency or '?'}"
                )
                if i.buying_signal:
                    lines.append(f"    Buying signal: {i.buying_signal}")
                if i.competitor_mentioned:
                    lines.append(f"    Competitor mentioned: {i.competitor_mentioned}")

        if ctx.active_plan:
            p = ctx.active_plan
            lines.append(f"\nACTIVE PLAYBOOK: {p.playbook_type}")
            if p.priority_action:
                lines.append(f"  Priority: {p.priority_action}")
            if p.urgency_level:
                lines.append(f"  Urgency: {p.urgency_level}")

        if ctx.projects:
            lines.append("\nPROJECTS:")
            for p in ctx.projects:
                lines.append(
                    f"  - {p.name} ({p.project_type or '?'}) | {p.status or '?'}"
                    f" | Est. value: {_money(p.estimated_value)}"
                )

        if ctx.competitors:
            lines.append("\nKNOWN COMPETITORS:")
            for c in ctx.competitors:
                share = f": ~{c.estimated_spend_pct:g}% est. spend" if c.estimated_spend_pct else ""
                lines.append(f"  - {c.name}{share}")

        if ctx.similar_graduated:
            lines.append("\nSIMILAR GRADUATED ACCOUNTS (proof points):")
            for s in ctx.similar_graduated:
                lines.append(
                    f"  - {s.account_name or s.account_id} ({s.shared_segment or 'different segment'},"
                    f" similarity {s.similarity_score:.2f}) graduated at {_money(s.graduation_revenue)} revenue"
                )

        if ctx.learnings:
            lines.append("\nAPPLICABLE LEARNINGS (from prior playbook outcomes):")
            for n, l in enumerate(ctx.learnings, 1):
                rate = f"{l.success_rate:.0%}" if l.success_rate is not None else "?"
                lines.append(f"  {n}. {l.learning} [evidence: {l.evidence_count}, success rate: {rate}]")

        if ctx.memory_preamble:
            lines.append(f"\n{ctx.memory_preamble}")

        return "\n".join(lines)

    async def build_portfolio_context(self, tenant_id: str, rep_email: Optional[str] = None) -> str:
        """
        Portfolio-level summary for a tenant (optionally one rep's book):
        counts by enrollment status, revenue totals and at-risk accounts.
        """
        async def q(session: AsyncSession):
            stmt = select(Account).where(Account.tenant_id == tenant_id)
            if rep_email:
                stmt = stmt.where(Account.assigned_tm == rep_email)
            accounts = list((await session.execute(stmt.order_by(Account.name))).scalars().all())

            latest = (
                select(
                    AccountMetrics.account_id,
                    func.max(AccountMetrics.computed_at).label("latest"),
                )
                .where(AccountMetrics.tenant_id == tenant_id)
                .group_by(AccountMetrics.account_id)
                .subquery()
            )
            metrics_rows = (await session.execute(
                select(AccountMetrics).join(
                    latest,
                    (AccountMetrics.account_id == latest.c.account_id)
                    & (AccountMetrics.computed_at == latest.c.latest),
                )
            )).scalars().all()
            return accounts, {m.account_id: m for m in metrics_rows}

        accounts, metrics = await self._read(q)

        counts: Dict[str, int] = {}
        total_revenue = 0.0
        at_risk = []
        for account in accounts:
            status = account.enrollment_status or "discovered"
            counts[status] = counts.get(status, 0) + 1
            m = metrics.get(account.id)
            if m and m.last_12m_revenue:
                total_revenue += m.last_12m_revenue
            if account.risk_level in ("high", "critical"):
                at_risk.append(account)

        scope = f"rep {rep_email}" if rep_email else "all reps"
        lines = [
            f"PORTFOLIO ({scope}): {len(accounts)} accounts",
            "Enrollment: " + (", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "none"),
            f"Total last 12m revenue: {_money(total_revenue)}",
        ]

        ranked = sorted(
            accounts,
            key=lambda acc: (metrics.get(acc.id).opportunity_score or 0.0) if metrics.get(acc.id) else 0.0,
            reverse=True,
        )[:10]
        if ranked:
            lines.append("\nTOP OPPORTUNITIES:")
            for acc in ranked:
                m = metrics.get(acc.id)
                lines.append(
                    f"  - {acc.name} (id {acc.id}, {acc.segment or '?'}, {acc.enrollment_status})"
                    f" | 12m revenue: {_money(m.last_12m_revenue if m else None)}"
                    f" | opportunity score: {_val(m.opportunity_score if m else None)}"
                )

        if at_risk:
            lines.append("\nAT-RISK ACCOUNTS:")
            for acc in at_risk:
                lines.append(f"  - {acc.name} (id {acc.id}): {acc.risk_level}")

        return "\n".join(lines)
