"""
Daily briefing composer.

For each active rep of a tenant:
1. Loads up to 10 enrolled accounts assigned to the rep
2. Renders their contexts concurrently
3. Asks for a prioritized briefing (one reasoning call)
4. Emails the rendered HTML and stores a DailyBriefing row
5. Writes the daily-briefing memo (last rep wins)

One rep failing never blocks the others.
"""

import asyncio
import json
import logging
from datetime import date, datetime
from html import escape
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.config import settings
from revenue_agent.db.models import Account, AgentRunType, DailyBriefing, OrganizationSettings
from revenue_agent.schemas import DailyBriefingResult
from revenue_agent.services.account_context import AccountContextAssembler
from revenue_agent.services.agent_identity import get_core_system_prompt, build_system_prompt
from revenue_agent.services.agent_memory import AgentMemoryStore, build_state_preamble
from revenue_agent.services.email_service import EmailService, get_email_service
from revenue_agent.services.llm_service import LLMService, get_llm_service
from revenue_agent.services.response_schemas import BriefingResponse, schema_prompt

logger = logging.getLogger(__name__)

MAX_ACCOUNTS_PER_REP = 10

URGENCY_COLORS = {"immediate": "#dc2626", "this_week": "#f59e0b", "this_month": "#3b82f6"}


def build_briefing_html(rep_email: str, briefing_date: date, briefing: BriefingResponse) -> str:
    """Render a briefing as an HTML email body."""
    priority_rows = "".join(
        f"""
        <div style="border-left: 4px solid {URGENCY_COLORS.get(item.urgency, '#6b7280')}; padding: 8px 12px; margin-bottom: 12px;">
          <p style="margin: 0; font-weight: 600; color: #111;">{n}. {escape(item.account_name)}</p>
          <p style="margin: 4px 0; color: #374151;">{escape(item.action)}</p>
          <p style="margin: 0; font-size: 12px; color: #6b7280;">{escape(item.urgency.replace('_', ' '))} &middot; {escape(item.why)}</p>
        </div>"""
        for n, item in enumerate(briefing.priority_items, 1)
    ) or '<p style="color: #6b7280;">No priority items today.</p>'

    at_risk_rows = "".join(
        f'<li style="margin-bottom: 6px;"><strong>{escape(item.account_name)}</strong>: {escape(item.signal)}</li>'
        for item in briefing.at_risk
    )
    at_risk_section = (
        f"""
        <h3 style="color: #dc2626; font-size: 14px; text-transform: uppercase;">At Risk</h3>
        <ul style="padding-left: 20px; color: #374151;">{at_risk_rows}</ul>"""
        if at_risk_rows else ""
    )

    return f"""<!DOCTYPE html>
<html>
<body style="margin: 0; padding: 24px; background: #f3f4f6; font-family: sans-serif;">
  <div style="max-width: 640px; margin: 0 auto; background: white; border-radius: 8px; overflow: hidden;">
    <div style="background: #1e3a5f; padding: 24px 32px;">
      <p style="margin: 0; color: #93c5fd; font-size: 12px;">DAILY BRIEFING &middot; {briefing_date.isoformat()}</p>
      <h2 style="margin: 8px 0 0; color: white;">{escape(briefing.headline)}</h2>
    </div>
    <div style="padding: 24px 32px;">
      <h3 style="color: #111; font-size: 14px; text-transform: uppercase;">Priorities</h3>
      {priority_rows}
      {at_risk_section}
      <h3 style="color: #111; font-size: 14px; text-transform: uppercase;">Portfolio</h3>
      <p style="color: #374151;">{escape(briefing.portfolio_summary)}</p>
    </div>
    <div style="padding: 16px 32px; background: #f9fafb; border-top: 1px solid #e5e7eb;">
      <p style="margin: 0; font-size: 12px; color: #9ca3af;">Revenue Intelligence Agent &middot; Sent to {escape(rep_email)}</p>
    </div>
  </div>
</body>
</html>
"""


class DailyBriefingService:
    """Composes and sends per-rep daily briefings"""

    def __init__(
        self,
        db: AsyncSession,
        llm_service: Optional[LLMService] = None,
        context_assembler: Optional[AccountContextAssembler] = None,
        memory_store: Optional[AgentMemoryStore] = None,
        email_service: Optional[EmailService] = None,
    ):
        self.db = db
        self.llm = llm_service or get_llm_service()
        self.context_assembler = context_assembler or AccountContextAssembler()
        self.memory_store = memory_store or AgentMemoryStore()
        self.email_service = email_service or get_email_service()

    async def _active_reps(self, tenant_id: str) -> List[str]:
        result = await self.db.execute(
            select(OrganizationSettings).where(OrganizationSettings.tenant_id == tenant_id)
        )
        org = result.scalar_one_or_none()
        if not org or not org.briefing_enabled or not org.active_rep_emails_json:
            return []
        try:
            return [e for e in json.loads(org.active_rep_emails_json) if e]
        except json.JSONDecodeError:
            logger.error(f"[BRIEFING] Malformed active rep list for tenant {tenant_id}")
            return []

    async def _render_account(self, account_id: str, account_name: str, tenant_id: str) -> str:
        try:
            ctx = await self.context_assembler.assemble(account_id, tenant_id)
            return f"[{account_name}]\n{self.context_assembler.to_prompt_text(ctx)}"
        except Exception as e:
            logger.warning(f"[BRIEFING] Context failed for {account_name}: {e}")
            return f"[{account_name}] - context unavailable"

    @staticmethod
    def _user_prompt(rep_email: str, today: date, summaries: List[str]) -> str:
        return "\n".join([
            f"Generate a daily briefing for territory manager: {rep_email}",
            f"Today: {today.isoformat()}",
            "",
            "ENROLLED ACCOUNTS:",
            "\n\n---\n\n".join(summaries),
            "",
            "Instructions:",
            "- Identify the single most important action for today (headline)",
            "- Surface up to 5 priority accounts with specific, data-grounded actions",
            "- Flag up to 3 at-risk accounts (declining trend, silence, negative signals)",
            "- Write a 2-3 sentence portfolio summary",
            "- Use the account ids exactly as given in the context",
            "",
            "Respond with a JSON object matching this schema:",
            schema_prompt(BriefingResponse),
        ])

    async def brief_rep(self, tenant_id: str, rep_email: str, system_prompt: str, today: date) -> bool:
        """
        Compose, send and store one rep's briefing.

        Returns False when the rep has no enrolled accounts.
        """
        result = await self.db.execute(
            select(Account.id, Account.name)
            .where(
                Account.tenant_id == tenant_id,
                Account.assigned_tm == rep_email,
                Account.enrollment_status == "enrolled",
            )
            .order_by(Account.name)
            .limit(MAX_ACCOUNTS_PER_REP)
        )
        accounts = result.all()
        if not accounts:
            logger.info(f"[BRIEFING] No enrolled accounts for {rep_email}, skipping")
            return False

        summaries = await asyncio.gather(*[
            self._render_account(account_id, name, tenant_id) for account_id, name in accounts
        ])

        briefing = await self.llm.complete_json(
            system_prompt,
            self._user_prompt(rep_email, today, list(summaries)),
            BriefingResponse,
            temperature=settings.briefing_temperature,
        )

        html_content = build_briefing_html(rep_email, today, briefing)
        await self.email_service.send(
            rep_email,
            f"Daily Briefing: {briefing.headline[:60]}",
            html_content,
        )

        now = datetime.utcnow()
        self.db.add(DailyBriefing(
            tenant_id=tenant_id,
            rep_email=rep_email,
            briefing_date=datetime.combine(today, datetime.min.time()),
            headline_action=briefing.headline,
            priority_items_json=json.dumps([item.model_dump() for item in briefing.priority_items]),
            at_risk_json=json.dumps([item.model_dump() for item in briefing.at_risk]),
            portfolio_summary=briefing.portfolio_summary,
            html_content=html_content,
            sent_at=now if self.email_service.enabled else None,
        ))
        await self.db.commit()

        await self.memory_store.write(tenant_id, AgentRunType.DAILY_BRIEFING.value, briefing.agent_memo)

        logger.info(
            f"[BRIEFING] Sent to {rep_email}: {len(briefing.priority_items)} priorities, "
            f"{len(briefing.at_risk)} at-risk"
        )
        return True

    async def run(self, tenant_id: str) -> DailyBriefingResult:
        reps = await self._active_reps(tenant_id)
        outcome = DailyBriefingResult(rep_count=len(reps))
        if not reps:
            logger.warning(f"[BRIEFING] No active reps configured for tenant {tenant_id}")
            return outcome

        today = date.today()
        core_prompt = await get_core_system_prompt(tenant_id, self.context_assembler.session_factory)
        memory = await self.memory_store.read(tenant_id, AgentRunType.DAILY_BRIEFING.value)
        system_prompt = build_system_prompt(core_prompt, memory_preamble=build_state_preamble(memory))

        for rep_email in reps:
            try:
                if await self.brief_rep(tenant_id, rep_email, system_prompt, today):
                    outcome.sent += 1
                else:
                    outcome.skipped += 1
            except Exception as e:
                await self.db.rollback()
                outcome.failed += 1
                logger.error(f"[BRIEFING] Failed for {rep_email}: {e}")

        logger.info(
            f"[BRIEFING] Tenant {tenant_id}: {outcome.sent}/{outcome.rep_count} sent, {outcome.failed} failed"
        )
        return outcome
