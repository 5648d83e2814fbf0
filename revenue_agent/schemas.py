"""Pydantic schemas for API request/response validation and delivery payloads"""

from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# ============ Delivery payloads ============
# Tagged by the `event` field; validated before anything is queued.

class EnrollmentPayload(BaseModel):
    event: Literal["enrollment"] = "enrollment"
    account_id: str
    account_name: str
    segment: Optional[str] = None
    enrollment_status: str
    assigned_tm: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class GraduationPayload(BaseModel):
    event: Literal["graduation"] = "graduation"
    account_id: str
    account_name: str
    assigned_tm: Optional[str] = None
    graduation_reason: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class AtRiskPayload(BaseModel):
    event: Literal["at_risk"] = "at_risk"
    account_id: str
    account_name: str
    risk_level: str
    risk_signals: List[str] = Field(default_factory=list)
    assigned_tm: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class OutcomePayload(BaseModel):
    event: Literal["outcome"] = "outcome"
    account_id: str
    playbook_id: str
    action_taken: str
    outcome: str
    revenue_impact: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


DeliveryPayload = Annotated[
    Union[EnrollmentPayload, GraduationPayload, AtRiskPayload, OutcomePayload],
    Field(discriminator="event"),
]

delivery_payload_adapter: TypeAdapter = TypeAdapter(DeliveryPayload)


# ============ API requests ============

class PlaybookGenerateRequest(BaseModel):
    account_id: str
    playbook_type: Optional[str] = None
    rotate_existing: bool = False


class OutcomeCreate(BaseModel):
    action_taken: str = Field(..., min_length=1, max_length=500)
    outcome_type: str = Field(..., min_length=1, max_length=50)
    outcome_score: Optional[float] = None
    revenue_impact: Optional[float] = None
    rep_notes: Optional[str] = None


class DeliveryCreate(BaseModel):
    """Manual enqueue of a delivery event"""
    account_id: str
    payload: DeliveryPayload


class SimilarRequest(BaseModel):
    top_k: int = Field(default=5, ge=1, le=50)


# ============ API responses ============

class PlaybookResponseOut(BaseModel):
    id: str
    account_id: str
    playbook_type: str
    status: str
    priority_action: Optional[str] = None
    urgency_level: Optional[str] = None
    content: Dict = Field(default_factory=dict)
    generated_at: datetime


class AgentStateOut(BaseModel):
    tenant_id: str
    run_type: str
    last_run_at: Optional[datetime] = None
    last_run_summary: Optional[str] = None
    current_focus: Optional[str] = None
    pattern_notes: Optional[str] = None
    watch_items: List[Dict] = Field(default_factory=list)


class WeeklyReviewResult(BaseModel):
    reviewed: int = 0
    graduated: int = 0
    rotated: int = 0
    at_risk: int = 0
    failed: int = 0


class DailyBriefingResult(BaseModel):
    rep_count: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class DeliveryResult(BaseModel):
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: bool = False


class RefreshResult(BaseModel):
    processed: int = 0
    failed: int = 0


class QueuedResponse(BaseModel):
    id: str
    event_id: str
    status: str
