"""Agent API endpoints - on-demand triggers for the decision services"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.api.deps import (
    get_tenant_id, get_llm, get_embeddings, get_email, get_delivery_queue,
)
from revenue_agent.db import get_db, Playbook, DeliveryQueueEntry
from revenue_agent.schemas import (
    PlaybookGenerateRequest, PlaybookResponseOut, OutcomeCreate, DeliveryCreate, SimilarRequest,
    AgentStateOut, WeeklyReviewResult, DailyBriefingResult, DeliveryResult, RefreshResult,
    QueuedResponse,
)
from revenue_agent.services.agent_memory import AgentMemoryStore, RUN_TYPES
from revenue_agent.services.ask_anything import AskAnythingService, SCOPES
from revenue_agent.services.daily_briefing import DailyBriefingService
from revenue_agent.services.delivery_queue import DeliveryQueue
from revenue_agent.services.email_service import EmailService
from revenue_agent.services.embedding_service import EmbeddingService
from revenue_agent.services.enrollment_service import EnrollmentService
from revenue_agent.services.learnings_service import LearningsService
from revenue_agent.services.llm_service import LLMService, ReasoningOutputError
from revenue_agent.services.playbook_service import PlaybookService
from revenue_agent.services.similarity_service import SimilarityService
from revenue_agent.services.weekly_review import WeeklyReviewService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent", tags=["Agent"])


def playbook_to_response(playbook: Playbook) -> PlaybookResponseOut:
    return PlaybookResponseOut(
        id=playbook.id,
        account_id=playbook.account_id,
        playbook_type=playbook.playbook_type,
        status=playbook.status,
        priority_action=playbook.priority_action,
        urgency_level=playbook.urgency_level,
        content=json.loads(playbook.content_json) if playbook.content_json else {},
        generated_at=playbook.generated_at,
    )


def _raise_http(e: Exception):
    if isinstance(e, LookupError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ReasoningOutputError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    raise e


@router.post("/playbooks", response_model=PlaybookResponseOut, status_code=status.HTTP_201_CREATED)
async def generate_playbook(
    request: PlaybookGenerateRequest,
    tenant_id: str = Depends(get_tenant_id),
    llm: LLMService = Depends(get_llm),
    db: AsyncSession = Depends(get_db),
):
    """Generate a playbook for one account."""
    service = PlaybookService(db, llm_service=llm)
    try:
        playbook = await service.generate(
            request.account_id,
            tenant_id,
            playbook_type=request.playbook_type,
            rotate_existing=request.rotate_existing,
        )
    except (LookupError, ValueError) as e:
        _raise_http(e)
    return playbook_to_response(playbook)


@router.post("/playbooks/{playbook_id}/outcomes", status_code=status.HTTP_201_CREATED)
async def record_outcome(
    playbook_id: str,
    request: OutcomeCreate,
    tenant_id: str = Depends(get_tenant_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
    db: AsyncSession = Depends(get_db),
):
    service = EnrollmentService(db, delivery_queue=queue)
    try:
        outcome = await service.record_outcome(
            playbook_id,
            tenant_id,
            action_taken=request.action_taken,
            outcome_type=request.outcome_type,
            outcome_score=request.outcome_score,
            revenue_impact=request.revenue_impact,
            rep_notes=request.rep_notes,
        )
    except LookupError as e:
        _raise_http(e)
    return {"id": outcome.id, "playbook_id": outcome.playbook_id, "outcome_type": outcome.outcome_type}


@router.post("/weekly-review", response_model=WeeklyReviewResult)
async def run_weekly_review(
    tenant_id: str = Depends(get_tenant_id),
    llm: LLMService = Depends(get_llm),
    email: EmailService = Depends(get_email),
    queue: DeliveryQueue = Depends(get_delivery_queue),
    db: AsyncSession = Depends(get_db),
):
    """Review every enrolled account now."""
    service = WeeklyReviewService(db, llm_service=llm, delivery_queue=queue, email_service=email)
    return await service.run(tenant_id)


@router.post("/daily-briefing", response_model=DailyBriefingResult)
async def run_daily_briefing(
    tenant_id: str = Depends(get_tenant_id),
    llm: LLMService = Depends(get_llm),
    email: EmailService = Depends(get_email),
    db: AsyncSession = Depends(get_db),
):
    service = DailyBriefingService(db, llm_service=llm, email_service=email)
    return await service.run(tenant_id)


@router.get("/ask")
async def ask_anything(
    question: str = Query(..., min_length=1, max_length=2000),
    scope: str = Query("portfolio"),
    scope_id: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    llm: LLMService = Depends(get_llm),
):
    """
    Stream an answer via Server-Sent Events.

    Frames are `data: {"text": "..."}` followed by a final `data: [DONE]`.
    """
    if scope not in SCOPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"scope must be one of {SCOPES}")
    if scope == "account" and not scope_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="scope_id is required for account scope")

    service = AskAnythingService(llm_service=llm)

    async def generate_stream():
        async for text in service.stream(question, scope, scope_id, tenant_id):
            yield f"data: {json.dumps({'text': text})}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post("/embeddings/refresh", response_model=RefreshResult)
async def refresh_embeddings(
    tenant_id: str = Depends(get_tenant_id),
    embeddings: EmbeddingService = Depends(get_embeddings),
    db: AsyncSession = Depends(get_db),
):
    service = SimilarityService(db, embedding_service=embeddings)
    return await service.refresh_all(tenant_id)


@router.post("/accounts/{account_id}/similar")
async def find_similar_accounts(
    account_id: str,
    request: Optional[SimilarRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    embeddings: EmbeddingService = Depends(get_embeddings),
    db: AsyncSession = Depends(get_db),
):
    """Re-embed one account and recompute its similar-account pairs."""
    top_k = request.top_k if request else 5
    service = SimilarityService(db, embedding_service=embeddings)
    try:
        await service.embed(account_id, tenant_id)
        await service.find_similar(account_id, tenant_id, top_k=top_k)
    except (LookupError, ValueError) as e:
        _raise_http(e)
    return {"account_id": account_id, "status": "refreshed"}


@router.post("/accounts/{account_id}/enroll")
async def enroll_account(
    account_id: str,
    tenant_id: str = Depends(get_tenant_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
    db: AsyncSession = Depends(get_db),
):
    service = EnrollmentService(db, delivery_queue=queue)
    try:
        account = await service.enroll(account_id, tenant_id)
    except (LookupError, ValueError) as e:
        _raise_http(e)
    return {"account_id": account.id, "enrollment_status": account.enrollment_status}


@router.get("/memory/{run_type}", response_model=AgentStateOut)
async def get_agent_memory(
    run_type: str,
    tenant_id: str = Depends(get_tenant_id),
):
    if run_type not in RUN_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown run type: {run_type}")

    record = await AgentMemoryStore().read(tenant_id, run_type)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No memory recorded yet")

    return AgentStateOut(
        tenant_id=record.tenant_id,
        run_type=record.run_type,
        last_run_at=record.last_run_at,
        last_run_summary=record.last_run_summary,
        current_focus=record.current_focus,
        pattern_notes=record.pattern_notes,
        watch_items=json.loads(record.watch_items_json) if record.watch_items_json else [],
    )


@router.post("/deliveries", response_model=QueuedResponse, status_code=status.HTTP_201_CREATED)
async def queue_delivery(
    request: DeliveryCreate,
    tenant_id: str = Depends(get_tenant_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
    db: AsyncSession = Depends(get_db),
):
    """Queue an event manually; it goes out on the next delivery pass."""
    try:
        entry_id = await queue.enqueue(tenant_id, request.payload.event, request.account_id, request.payload)
    except ValueError as e:
        _raise_http(e)

    entry = await db.get(DeliveryQueueEntry, entry_id)
    return QueuedResponse(id=entry.id, event_id=entry.event_id, status=entry.status)


@router.post("/deliveries/process", response_model=DeliveryResult)
async def process_deliveries(
    tenant_id: str = Depends(get_tenant_id),
    queue: DeliveryQueue = Depends(get_delivery_queue),
):
    return await queue.process_pending(tenant_id)


@router.post("/learnings/synthesize")
async def synthesize_learnings(
    tenant_id: str = Depends(get_tenant_id),
    llm: LLMService = Depends(get_llm),
    db: AsyncSession = Depends(get_db),
):
    service = LearningsService(db, llm_service=llm)
    inserted = await service.synthesize(tenant_id)
    return {"inserted": inserted}
