"""
Agent identity - core system prompt and prompt assembly.

Every decision service starts its system instruction with the tenant's core
identity prompt (or the inline default), followed by the prior-memory
preamble and the rendered context.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revenue_agent.db.database import async_session_maker
from revenue_agent.db.models import AgentSystemPrompt
from revenue_agent.services.response_schemas import AGENT_MEMO_INSTRUCTION

logger = logging.getLogger(__name__)

CORE_PROMPT_KEY = "core_agent_identity"

DEFAULT_CORE_PROMPT = "\n".join([
    "You are the Revenue Intelligence Agent, an AI system purpose-built for",
    "MEP (mechanical, electrical, plumbing) wholesale distribution.",
    "",
    "YOUR PURPOSE:",
    "Help territory managers grow revenue from existing contractor accounts by",
    "identifying wallet share gaps, generating targeted playbooks, and surfacing",
    "the right action at the right moment.",
    "",
    "YOUR PRINCIPLES:",
    "- Always ground recommendations in specific data from the contractor's record.",
    "- Give territory managers one clear next action, not a list of ten.",
    "- Never fabricate data or express certainty you do not have.",
    "- Be aware of seasonality before flagging anomalies.",
])


async def get_core_system_prompt(
    tenant_id: str,
    session_factory: async_sessionmaker = async_session_maker,
) -> str:
    """Active core identity prompt for a tenant, or the inline default."""
    try:
        async with session_factory() as session:
            result = await session.execute(
                select(AgentSystemPrompt)
                .where(
                    AgentSystemPrompt.tenant_id == tenant_id,
                    AgentSystemPrompt.prompt_key == CORE_PROMPT_KEY,
                    AgentSystemPrompt.is_active == True,  # noqa: E712
                )
                .order_by(AgentSystemPrompt.version.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row and row.content:
                return row.content
    except Exception as e:
        logger.warning(f"[IDENTITY] Core prompt lookup failed for tenant {tenant_id}: {e}")

    return DEFAULT_CORE_PROMPT


def build_system_prompt(
    core_prompt: str,
    memory_preamble: Optional[str] = None,
    contexts: Iterable[str] = (),
    task_instructions: Optional[str] = None,
    include_memo: bool = True,
) -> str:
    """
    Compose the system instruction:
    identity -> task instructions -> prior memory -> rendered context(s) -> memo instruction.
    """
    parts = [core_prompt.strip()]
    if task_instructions:
        parts.append(task_instructions.strip())
    if memory_preamble:
        parts.append(memory_preamble.strip())
    for context in contexts:
        if context:
            parts.append(context.strip())
    if include_memo:
        parts.append(AGENT_MEMO_INSTRUCTION.strip())
    return "\n\n".join(parts)
