"""
Ask Anything - streamed answers to free-text questions.

Scope is either one account (full account context) or the whole portfolio
(portfolio summary + weekly-review memory). Text is yielded as it arrives;
the question and full answer are logged once the stream ends.
"""

import logging
import time
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from revenue_agent.config import settings
from revenue_agent.db.database import async_session_maker
from revenue_agent.db.models import AgentRunType, QueryLog
from revenue_agent.services.account_context import AccountContextAssembler
from revenue_agent.services.agent_identity import get_core_system_prompt, build_system_prompt
from revenue_agent.services.agent_memory import AgentMemoryStore, build_state_preamble
from revenue_agent.services.llm_service import LLMService, get_llm_service

logger = logging.getLogger(__name__)

CONTEXT_ERROR_MESSAGE = "Error assembling context. Please try again."
STREAM_ERROR_MESSAGE = "\n\n[Error: Failed to get AI response. Please try again.]"

SCOPES = ("account", "portfolio")


class AskAnythingService:
    """Streams reasoning-service answers and logs every completed exchange"""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        llm_service: Optional[LLMService] = None,
        context_assembler: Optional[AccountContextAssembler] = None,
        memory_store: Optional[AgentMemoryStore] = None,
    ):
        self.session_factory = session_factory
        self.llm = llm_service or get_llm_service()
        self.context_assembler = context_assembler or AccountContextAssembler(session_factory)
        self.memory_store = memory_store or AgentMemoryStore(session_factory)

    async def _system_prompt(self, scope: str, scope_id: Optional[str], tenant_id: str) -> str:
        core_prompt = await get_core_system_prompt(tenant_id, self.session_factory)
        instructions = (
            "Answer the territory manager's question using only the data below. "
            "Be concise and specific; name accounts, numbers and the next action."
        )

        if scope == "account":
            if not scope_id:
                raise ValueError("Account scope requires an account id")
            ctx = await self.context_assembler.assemble(scope_id, tenant_id)
            return build_system_prompt(
                core_prompt,
                contexts=["ACCOUNT CONTEXT:\n" + self.context_assembler.to_prompt_text(ctx)],
                task_instructions=instructions,
                include_memo=False,
            )

        portfolio = await self.context_assembler.build_portfolio_context(tenant_id)
        memory = await self.memory_store.read(tenant_id, AgentRunType.WEEKLY_REVIEW.value)
        return build_system_prompt(
            core_prompt,
            memory_preamble=build_state_preamble(memory),
            contexts=["PORTFOLIO CONTEXT:\n" + portfolio],
            task_instructions=instructions,
            include_memo=False,
        )

    async def stream(
        self,
        question: str,
        scope: str,
        scope_id: Optional[str],
        tenant_id: str,
        rep_email: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        """
        Yield answer text chunks.

        Context failure: one error chunk, nothing logged.
        Stream failure: partial output, an inline error chunk, then the log row.
        """
        started = time.monotonic()
        try:
            system_prompt = await self._system_prompt(scope, scope_id, tenant_id)
        except Exception as e:
            logger.error(f"[ASK] Context assembly failed ({scope} {scope_id}): {e}")
            yield CONTEXT_ERROR_MESSAGE
            return

        parts = []
        tokens_used = None
        try:
            async for chunk in self.llm.stream(
                system_prompt, question, temperature=settings.ask_temperature
            ):
                if chunk.content:
                    parts.append(chunk.content)
                    yield chunk.content
                if chunk.is_final and chunk.tokens_total:
                    tokens_used = chunk.tokens_total
        except Exception as e:
            logger.error(f"[ASK] Stream failed after {len(parts)} chunks: {e}")
            yield STREAM_ERROR_MESSAGE

        answer = "".join(parts)
        if tokens_used is None:
            tokens_used = self.llm.count_tokens(system_prompt + question + answer)

        await self._log(
            tenant_id=tenant_id,
            rep_email=rep_email,
            question=question,
            scope=scope,
            scope_id=scope_id,
            answer=answer,
            tokens_used=tokens_used,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    async def _log(self, tenant_id: str, rep_email: Optional[str], question: str, scope: str,
                   scope_id: Optional[str], answer: str, tokens_used: int, latency_ms: int) -> None:
        try:
            async with self.session_factory() as session:
                session.add(QueryLog(
                    tenant_id=tenant_id,
                    rep_email=rep_email,
                    question=question,
                    scope=scope,
                    scope_id=scope_id,
                    response_text=answer,
                    model_used=self.llm.default_model,
                    tokens_used=tokens_used,
                    latency_ms=latency_ms,
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"[ASK] Failed to log query: {e}")
