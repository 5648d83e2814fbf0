"""
Plan generator - builds an account playbook with one reasoning call.

By default the new playbook is inserted next to any existing active one;
callers that want a single active plan per account pass rotate_existing,
which rotates the prior plan and inserts the new one in one transaction.
"""

import json
import logging
from datetime import datetime
from typing import Optional, get_args

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.config import settings
from revenue_agent.db.models import Playbook, AgentRunType
from revenue_agent.services.account_context import AccountContextAssembler
from revenue_agent.services.agent_identity import get_core_system_prompt, build_system_prompt
from revenue_agent.services.agent_memory import AgentMemoryStore
from revenue_agent.services.llm_service import LLMService, get_llm_service
from revenue_agent.services.response_schemas import PlaybookResponse, PlaybookType, schema_prompt

logger = logging.getLogger(__name__)

PLAYBOOK_TYPES = get_args(PlaybookType)


async def rotate_active_playbooks(db: AsyncSession, account_id: str, tenant_id: str) -> int:
    """Mark every active playbook for the account rotated. Does not commit."""
    result = await db.execute(
        update(Playbook)
        .where(
            Playbook.account_id == account_id,
            Playbook.tenant_id == tenant_id,
            Playbook.status == "active",
        )
        .values(status="rotated", rotated_at=datetime.utcnow())
    )
    return result.rowcount or 0


class PlaybookService:
    """Generates and stores playbooks"""

    def __init__(
        self,
        db: AsyncSession,
        llm_service: Optional[LLMService] = None,
        context_assembler: Optional[AccountContextAssembler] = None,
        memory_store: Optional[AgentMemoryStore] = None,
    ):
        self.db = db
        self.llm = llm_service or get_llm_service()
        self.context_assembler = context_assembler or AccountContextAssembler()
        self.memory_store = memory_store or AgentMemoryStore()

    def _user_prompt(self, playbook_type: Optional[str]) -> str:
        if playbook_type:
            type_instruction = f'Generate a "{playbook_type}" playbook.'
        else:
            type_instruction = (
                "Choose the most appropriate playbook type based on the account data: "
                + ", ".join(PLAYBOOK_TYPES) + "."
            )
        return "\n\n".join([
            type_instruction,
            "Generate a complete, data-grounded playbook for this account.",
            "Be specific: reference this account's actual revenue numbers, categories and contacts by name.",
            "The call_script and email_draft must be fully written out, not placeholders.",
            "Respond with a JSON object matching this schema:",
            schema_prompt(PlaybookResponse),
        ])

    async def generate(
        self,
        account_id: str,
        tenant_id: str,
        playbook_type: Optional[str] = None,
        rotate_existing: bool = False,
    ) -> Playbook:
        """
        Generate a playbook for one account and store it as active.

        Raises:
            AccountNotFoundError: unknown account
            ValueError: unsupported playbook_type
            ReasoningOutputError: model output failed validation
        """
        if playbook_type and playbook_type not in PLAYBOOK_TYPES:
            raise ValueError(f"Unsupported playbook type: {playbook_type}")

        ctx = await self.context_assembler.assemble(account_id, tenant_id)
        core_prompt = await get_core_system_prompt(tenant_id, self.context_assembler.session_factory)
        system_prompt = build_system_prompt(
            core_prompt,
            contexts=["ACCOUNT CONTEXT:\n" + self.context_assembler.to_prompt_text(ctx)],
        )

        parsed = await self.llm.complete_json(
            system_prompt,
            self._user_prompt(playbook_type),
            PlaybookResponse,
            temperature=settings.playbook_temperature,
        )

        content = {
            "rationale": parsed.rationale,
            "call_script": parsed.call_script,
            "email_subject": parsed.email_subject,
            "email_draft": parsed.email_draft,
            "talking_points": parsed.talking_points,
            "objection_handlers": [o.model_dump() for o in parsed.objection_handlers],
            "personalization_notes": parsed.personalization_notes,
        }
        playbook = Playbook(
            tenant_id=tenant_id,
            account_id=account_id,
            rep_email=ctx.account.assigned_tm,
            playbook_type=parsed.playbook_type,
            status="active",
            priority_action=parsed.priority_action,
            urgency_level=parsed.urgency,
            content_json=json.dumps(content),
            learnings_applied_json=json.dumps([l.learning[:60] for l in ctx.learnings]),
        )

        if rotate_existing:
            rotated = await rotate_active_playbooks(self.db, account_id, tenant_id)
            if rotated:
                logger.info(f"[PLAYBOOK] Rotated {rotated} active playbook(s) for account {account_id}")
        self.db.add(playbook)
        await self.db.commit()
        await self.db.refresh(playbook)

        await self.memory_store.write(tenant_id, AgentRunType.GENERATE_PLAYBOOK.value, parsed.agent_memo)

        logger.info(f"[PLAYBOOK] Account {account_id}: {parsed.playbook_type} playbook created ({playbook.id})")
        return playbook
