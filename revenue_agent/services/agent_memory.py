"""
Agent Memory Store

One rolling record per (tenant, run type). Read before a run to give the
model its prior observations, written after the run with the model's memo.
Pattern notes are a newest-first log of dated observations and are never
trimmed here.

Concurrent writers to the same slot are last-write-wins.
"""

import json
import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from revenue_agent.db.database import async_session_maker
from revenue_agent.db.models import AgentState, AgentRunType
from revenue_agent.services.response_schemas import AgentMemo

logger = logging.getLogger(__name__)

RUN_TYPES = tuple(rt.value for rt in AgentRunType)


def prepend_pattern_note(existing: Optional[str], note: str, today: date) -> str:
    """`[YYYY-MM-DD] note` followed by all earlier notes."""
    tagged = f"[{today.isoformat()}] {note.strip()}"
    if existing:
        return f"{tagged}\n{existing}"
    return tagged


class AgentMemoryStore:
    """Reads and writes AgentState rows, each call in its own session."""

    def __init__(self, session_factory: async_sessionmaker = async_session_maker):
        self.session_factory = session_factory

    async def read(self, tenant_id: str, run_type: str) -> Optional[AgentState]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AgentState).where(
                    AgentState.tenant_id == tenant_id,
                    AgentState.run_type == run_type,
                )
            )
            return result.scalar_one_or_none()

    async def write(
        self,
        tenant_id: str,
        run_type: str,
        memo: Optional[AgentMemo],
        today: Optional[date] = None,
    ) -> bool:
        """
        Insert or update the memory slot.

        Never raises: the caller's decision has already committed, so a
        failed memory write is logged and reported as False.
        """
        if memo is None:
            return False

        today = today or date.today()
        now = datetime.utcnow()
        watch_items = json.dumps([item.model_dump() for item in memo.watch_items])
        note = memo.pattern_notes_addition.strip()

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(AgentState).where(
                        AgentState.tenant_id == tenant_id,
                        AgentState.run_type == run_type,
                    )
                )
                state = result.scalar_one_or_none()

                if state is None:
                    state = AgentState(
                        tenant_id=tenant_id,
                        run_type=run_type,
                        pattern_notes=prepend_pattern_note(None, note, today) if note else None,
                    )
                    session.add(state)
                elif note:
                    state.pattern_notes = prepend_pattern_note(state.pattern_notes, note, today)

                state.last_run_at = now
                state.last_run_summary = memo.last_run_summary
                state.current_focus = memo.current_focus
                state.watch_items_json = watch_items
                state.updated_at = now

                await session.commit()
            logger.info(f"[MEMORY] Wrote {run_type} memo for tenant {tenant_id}")
            return True
        except Exception as e:
            logger.error(f"[MEMORY] Failed to write {run_type} memo for tenant {tenant_id}: {e}")
            return False


def _active_watch_items(record: AgentState, today: date) -> List[dict]:
    if not record.watch_items_json:
        return []
    try:
        items = json.loads(record.watch_items_json)
    except json.JSONDecodeError:
        return []

    active = []
    for item in items:
        expires = item.get("expires_on")
        if expires:
            try:
                if date.fromisoformat(expires[:10]) < today:
                    continue
            except ValueError:
                pass
        active.append(item)
    return active


def build_state_preamble(record: Optional[AgentState], today: Optional[date] = None) -> str:
    """Render a memory record as a prompt section; empty string when there is none."""
    if record is None:
        return ""

    today = today or date.today()
    lines = ["=== AGENT MEMORY (prior runs) ==="]
    if record.last_run_at:
        lines.append(f"Last run: {record.last_run_at.strftime('%Y-%m-%d %H:%M')} UTC")
    if record.last_run_summary:
        lines.append(f"Last run summary: {record.last_run_summary}")
    if record.current_focus:
        lines.append(f"Current focus: {record.current_focus}")
    if record.pattern_notes:
        lines.append("Pattern notes (newest first):")
        lines.append(record.pattern_notes)

    watch_items = _active_watch_items(record, today)
    if watch_items:
        lines.append("Watching:")
        for item in watch_items:
            until = f" (until {item['expires_on']})" if item.get("expires_on") else ""
            lines.append(f"- {item.get('subject', '?')}: {item.get('signal', '')}{until}")

    return "\n".join(lines)
