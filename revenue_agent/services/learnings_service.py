"""
Learning synthesis - distills recent playbook outcomes into reusable learnings.

Runs monthly. Malformed model output yields no new learnings instead of an
error; this is a content-generation call, not a decision.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.config import settings
from revenue_agent.db.models import AgentRunType, PlaybookLearning, PlaybookOutcome
from revenue_agent.services.agent_identity import get_core_system_prompt, build_system_prompt
from revenue_agent.services.agent_memory import AgentMemoryStore, build_state_preamble
from revenue_agent.services.llm_service import LLMService, get_llm_service
from revenue_agent.services.response_schemas import LearningsResponse, schema_prompt

logger = logging.getLogger(__name__)

LOOKBACK_DAYS = 90
MAX_OUTCOMES = 200


class LearningsService:
    def __init__(
        self,
        db: AsyncSession,
        llm_service: Optional[LLMService] = None,
        memory_store: Optional[AgentMemoryStore] = None,
    ):
        self.db = db
        self.llm = llm_service or get_llm_service()
        self.memory_store = memory_store or AgentMemoryStore()

    async def synthesize(self, tenant_id: str) -> int:
        """Insert up to 10 new active learnings; returns how many were stored."""
        since = datetime.utcnow() - timedelta(days=LOOKBACK_DAYS)
        result = await self.db.execute(
            select(PlaybookOutcome)
            .where(PlaybookOutcome.tenant_id == tenant_id, PlaybookOutcome.recorded_at >= since)
            .order_by(PlaybookOutcome.recorded_at.desc())
            .limit(MAX_OUTCOMES)
        )
        outcomes = result.scalars().all()
        if not outcomes:
            logger.info(f"[LEARNINGS] Tenant {tenant_id}: no outcomes in the past {LOOKBACK_DAYS} days, skipping")
            return 0

        summary = "\n".join(
            f"type={o.outcome_type} score={o.outcome_score if o.outcome_score is not None else '?'} "
            f"revenue={o.revenue_impact if o.revenue_impact is not None else '?'} "
            f"action={o.action_taken} notes={o.rep_notes or ''}"
            for o in outcomes
        )

        core_prompt = await get_core_system_prompt(tenant_id)
        memory = await self.memory_store.read(tenant_id, AgentRunType.SYNTHESIZE_LEARNINGS.value)
        system_prompt = build_system_prompt(core_prompt, memory_preamble=build_state_preamble(memory))
        user_prompt = "\n\n".join([
            f"Analyze these {LOOKBACK_DAYS}-day playbook outcomes and distill the top cross-account learnings:",
            summary,
            "Focus on patterns that predict success. Respond with a JSON object matching this schema:",
            schema_prompt(LearningsResponse),
        ])

        parsed = await self.llm.complete_json(
            system_prompt,
            user_prompt,
            LearningsResponse,
            temperature=settings.learnings_temperature,
            fallback=LearningsResponse(),
        )

        for item in parsed.learnings:
            self.db.add(PlaybookLearning(
                tenant_id=tenant_id,
                learning=item.learning,
                evidence_count=item.evidence_count,
                success_rate=item.success_rate,
                recommended_segments_json=json.dumps(item.recommended_for_segments),
                is_active=True,
            ))
        await self.db.commit()

        await self.memory_store.write(tenant_id, AgentRunType.SYNTHESIZE_LEARNINGS.value, parsed.agent_memo)
        logger.info(f"[LEARNINGS] Tenant {tenant_id}: inserted {len(parsed.learnings)} learnings")
        return len(parsed.learnings)
