from revenue_agent.db.models import (
    Base, AgentRunType,
    # Account facts
    Account, AccountMetrics, ProductCategory, AccountCategoryGap, Contact, Interaction,
    Project, Competitor, AccountCompetitor,
    # Agent artefacts
    Playbook, PlaybookOutcome, PlaybookLearning, SimilarAccountPair, DailyBriefing, QueryLog,
    # Identity & memory
    AgentSystemPrompt, AgentState,
    # Tenant settings & delivery
    OrganizationSettings, DeliveryQueueEntry,
)
from revenue_agent.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    "AgentRunType",
    "Account",
    "AccountMetrics",
    "ProductCategory",
    "AccountCategoryGap",
    "Contact",
    "Interaction",
    "Project",
    "Competitor",
    "AccountCompetitor",
    "Playbook",
    "PlaybookOutcome",
    "PlaybookLearning",
    "SimilarAccountPair",
    "DailyBriefing",
    "QueryLog",
    "AgentSystemPrompt",
    "AgentState",
    "OrganizationSettings",
    "DeliveryQueueEntry",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
