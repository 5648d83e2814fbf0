"""
Structured response contracts for the reasoning calls.

Each decision service asks for JSON output and validates it against one of
these models. Field names, enums and list caps are fixed; a response that
doesn't fit is rejected rather than patched up.
"""

import json
from typing import List, Literal, Optional, Type

from pydantic import BaseModel, Field, field_validator


PlaybookType = Literal[
    "category_winback", "new_category", "at_risk_retention", "graduation_push", "project_based",
]
UrgencyLevel = Literal["immediate", "this_week", "this_month"]
RiskLevelValue = Literal["low", "medium", "high", "critical"]
PlaybookEffectiveness = Literal["effective", "needs_rotation", "no_playbook"]

# Markers of template text the model sometimes leaves in scripts
PLACEHOLDER_MARKERS = ("[insert", "[your name", "{{", "lorem ipsum", "<placeholder", "tbd")


# ── Agent memo (shared by every decision service) ──────────────────

class WatchItem(BaseModel):
    """An account or signal the agent wants to keep an eye on."""
    subject: str
    signal: str
    expires_on: Optional[str] = None  # YYYY-MM-DD


class AgentMemo(BaseModel):
    """Memory update block appended to every decision response."""
    last_run_summary: str = ""
    current_focus: str = ""
    pattern_notes_addition: str = ""
    watch_items: List[WatchItem] = Field(default_factory=list)


AGENT_MEMO_INSTRUCTION = """
At the end of your JSON response, include a field "agent_memo" with this structure:
{
  "last_run_summary": "2-4 sentences describing what you found and did in this run.",
  "current_focus": "Single sentence on what pattern or account you are watching most closely.",
  "pattern_notes_addition": "New cross-account observations worth remembering, or empty string.",
  "watch_items": [
    { "subject": "account name", "signal": "what to watch", "expires_on": "YYYY-MM-DD" }
  ]
}
"""


# ── Plan generator ─────────────────────────────────────────────────

class ObjectionHandler(BaseModel):
    objection: str
    response: str


class PlaybookResponse(BaseModel):
    """Outreach package for one account."""
    playbook_type: PlaybookType
    priority_action: str = Field(max_length=200)
    urgency: UrgencyLevel
    rationale: str
    call_script: str = Field(min_length=1)
    email_subject: str = Field(min_length=1)
    email_draft: str = Field(min_length=1)
    talking_points: List[str] = Field(default_factory=list, max_length=5)
    objection_handlers: List[ObjectionHandler] = Field(default_factory=list, max_length=3)
    personalization_notes: Optional[str] = None
    agent_memo: AgentMemo

    @field_validator("call_script", "email_subject", "email_draft")
    @classmethod
    def reject_placeholders(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must be fully written, not empty")
        lowered = stripped.lower()
        for marker in PLACEHOLDER_MARKERS:
            if marker in lowered:
                raise ValueError(f"contains placeholder text ({marker!r})")
        return stripped


# ── Weekly reviewer ────────────────────────────────────────────────

class ReviewResponse(BaseModel):
    """Per-account weekly assessment."""
    graduation_ready: bool
    graduation_confidence: float = Field(ge=0.0, le=1.0)
    graduation_reason: str = ""
    risk_level: RiskLevelValue
    risk_signals: List[str] = Field(default_factory=list, max_length=3)
    playbook_effectiveness: PlaybookEffectiveness
    recommended_next_playbook_type: Optional[PlaybookType] = None
    rep_action_this_week: str = Field(default="", max_length=300)
    agent_memo: AgentMemo


# ── Daily digest ───────────────────────────────────────────────────

class BriefingPriorityItem(BaseModel):
    account_name: str
    account_id: str
    action: str
    urgency: UrgencyLevel
    why: str


class BriefingAtRiskItem(BaseModel):
    account_name: str
    account_id: str
    signal: str


class BriefingResponse(BaseModel):
    """One rep's morning briefing."""
    headline: str = Field(max_length=200)
    priority_items: List[BriefingPriorityItem] = Field(default_factory=list, max_length=5)
    at_risk: List[BriefingAtRiskItem] = Field(default_factory=list, max_length=3)
    portfolio_summary: str = Field(default="", max_length=500)
    agent_memo: AgentMemo

    @field_validator("priority_items", "at_risk", mode="before")
    @classmethod
    def coerce_account_ids(cls, items):
        # Models occasionally return numeric ids
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict) and isinstance(item.get("account_id"), (int, float)):
                    item["account_id"] = str(item["account_id"])
        return items


# ── Learning synthesis ─────────────────────────────────────────────

class LearningItem(BaseModel):
    learning: str = Field(max_length=500)
    evidence_count: int = Field(ge=1)
    success_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    recommended_for_segments: List[str] = Field(default_factory=list, max_length=5)


class LearningsResponse(BaseModel):
    """Cross-account learnings distilled from recent outcomes."""
    learnings: List[LearningItem] = Field(default_factory=list, max_length=10)
    agent_memo: Optional[AgentMemo] = None


def schema_prompt(model: Type[BaseModel]) -> str:
    """JSON schema of a response model, for inclusion in the user prompt."""
    return json.dumps(model.model_json_schema(), indent=2)
