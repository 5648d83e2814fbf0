"""
Weekly account review.

One reasoning call per enrolled account, in list order:
- graduates the account when the model is ready and confident enough
- rotates the active playbook when the model says it stopped working
- records the risk level and flags high/critical accounts downstream

A failing account is logged and counted; the loop moves on. The memo of the
last successfully reviewed account is what gets written to memory.
"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.config import settings
from revenue_agent.db.models import Account, AgentRunType
from revenue_agent.schemas import WeeklyReviewResult
from revenue_agent.services.account_context import AccountContextAssembler
from revenue_agent.services.agent_identity import get_core_system_prompt, build_system_prompt
from revenue_agent.services.agent_memory import AgentMemoryStore
from revenue_agent.services.delivery_queue import DeliveryQueue
from revenue_agent.services.email_service import EmailService, get_email_service
from revenue_agent.services.llm_service import LLMService, get_llm_service
from revenue_agent.services.playbook_service import rotate_active_playbooks
from revenue_agent.services.response_schemas import AgentMemo, ReviewResponse, schema_prompt

logger = logging.getLogger(__name__)

GRADUATION_THRESHOLD = 0.75
AT_RISK_LEVELS = ("high", "critical")


def should_graduate(review: ReviewResponse) -> bool:
    return review.graduation_ready and review.graduation_confidence >= GRADUATION_THRESHOLD


def graduation_email_html(account_name: str, reason: str) -> str:
    return f"""
<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background: #059669; padding: 20px; border-radius: 8px 8px 0 0;">
    <h2 style="color: white; margin: 0;">Account Graduated</h2>
  </div>
  <div style="background: #f9fafb; padding: 20px; border-radius: 0 0 8px 8px; border: 1px solid #e5e7eb;">
    <h3 style="color: #111;">{account_name}</h3>
    <p style="color: #374151;">{reason}</p>
    <p style="color: #374151;">This account has met the graduation threshold and has been moved to
    <strong>Graduated</strong> status. Consider using it as a proof point for similar accounts.</p>
    <hr style="border: none; border-top: 1px solid #e5e7eb; margin: 16px 0;" />
    <p style="color: #888; font-size: 12px;">Revenue Intelligence Agent</p>
  </div>
</div>
"""


class WeeklyReviewService:
    """Reviews every enrolled account for a tenant"""

    def __init__(
        self,
        db: AsyncSession,
        llm_service: Optional[LLMService] = None,
        context_assembler: Optional[AccountContextAssembler] = None,
        memory_store: Optional[AgentMemoryStore] = None,
        delivery_queue: Optional[DeliveryQueue] = None,
        email_service: Optional[EmailService] = None,
    ):
        self.db = db
        self.llm = llm_service or get_llm_service()
        self.context_assembler = context_assembler or AccountContextAssembler()
        self.memory_store = memory_store or AgentMemoryStore()
        self.delivery_queue = delivery_queue or DeliveryQueue()
        self.email_service = email_service or get_email_service()

    @staticmethod
    def _user_prompt(account_name: str, today: date) -> str:
        return "\n".join([
            f"Weekly review for account: {account_name} | Date: {today.isoformat()}",
            "",
            "Assess:",
            "1. Graduation readiness: has this account achieved consistent, broad category penetration "
            "and strong revenue growth? Should it be moved to 'graduated' status?",
            "2. Risk level: low/medium/high/critical based on recency, trend and interaction signals",
            "3. Playbook effectiveness: is the current playbook working or does it need rotation?",
            "4. Single most important rep action for this week",
            "",
            "Respond with a JSON object matching this schema:",
            schema_prompt(ReviewResponse),
        ])

    async def _review_account(
        self,
        account: Account,
        tenant_id: str,
        core_prompt: str,
        result: WeeklyReviewResult,
    ) -> AgentMemo:
        ctx = await self.context_assembler.assemble(account.id, tenant_id)
        system_prompt = build_system_prompt(
            core_prompt,
            contexts=["ACCOUNT CONTEXT:\n" + self.context_assembler.to_prompt_text(ctx)],
        )
        review = await self.llm.complete_json(
            system_prompt,
            self._user_prompt(account.name, date.today()),
            ReviewResponse,
            temperature=settings.review_temperature,
        )

        graduated = should_graduate(review)
        if graduated:
            account.enrollment_status = "graduated"
            account.graduated_at = datetime.utcnow()

        rotated = 0
        if review.playbook_effectiveness == "needs_rotation":
            rotated = await rotate_active_playbooks(self.db, account.id, tenant_id)

        account.risk_level = review.risk_level
        await self.db.commit()

        # Counted only after the account's writes are committed
        if graduated:
            result.graduated += 1
            logger.info(
                f"[WEEKLY-REVIEW] Graduated {account.name} (confidence {review.graduation_confidence})"
            )
            await self._send_graduation_email(account, review.graduation_reason)
            await self.delivery_queue.notify_graduation(tenant_id, account, review.graduation_reason)
        if rotated:
            result.rotated += 1
            logger.info(f"[WEEKLY-REVIEW] Rotated playbook for {account.name}")
        if review.risk_level in AT_RISK_LEVELS:
            result.at_risk += 1
            await self.delivery_queue.notify_at_risk(
                tenant_id, account, review.risk_level, review.risk_signals
            )

        return review.agent_memo

    async def _send_graduation_email(self, account: Account, reason: str) -> None:
        if not account.assigned_tm:
            return
        try:
            await self.email_service.send(
                account.assigned_tm,
                f"{account.name} has graduated",
                graduation_email_html(account.name, reason),
            )
        except Exception as e:
            logger.error(f"[WEEKLY-REVIEW] Graduation email failed for {account.name}: {e}")

    async def run(self, tenant_id: str) -> WeeklyReviewResult:
        result = await self.db.execute(
            select(Account.id, Account.name)
            .where(Account.tenant_id == tenant_id, Account.enrollment_status == "enrolled")
            .order_by(Account.name)
        )
        accounts = result.all()

        outcome = WeeklyReviewResult()
        if not accounts:
            logger.info(f"[WEEKLY-REVIEW] Tenant {tenant_id}: no enrolled accounts")
            return outcome

        core_prompt = await get_core_system_prompt(tenant_id, self.context_assembler.session_factory)
        last_memo: Optional[AgentMemo] = None

        for account_id, account_name in accounts:
            try:
                account = await self.db.get(Account, account_id)
                last_memo = await self._review_account(account, tenant_id, core_prompt, outcome)
                outcome.reviewed += 1
            except Exception as e:
                await self.db.rollback()
                outcome.failed += 1
                logger.error(f"[WEEKLY-REVIEW] Failed for account {account_id} ({account_name}): {e}")

        if last_memo is not None:
            await self.memory_store.write(tenant_id, AgentRunType.WEEKLY_REVIEW.value, last_memo)

        logger.info(
            f"[WEEKLY-REVIEW] Tenant {tenant_id} complete: {outcome.reviewed} reviewed, "
            f"{outcome.graduated} graduated, {outcome.rotated} rotated, "
            f"{outcome.at_risk} at-risk, {outcome.failed} failed"
        )
        return outcome
