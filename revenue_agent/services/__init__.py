from revenue_agent.services.retry import RetryPolicy, execute, is_transient_error
from revenue_agent.services.llm_service import LLMService, get_llm_service, ReasoningOutputError
from revenue_agent.services.embedding_service import EmbeddingService, get_embedding_service
from revenue_agent.services.email_service import EmailService, get_email_service
from revenue_agent.services.agent_memory import AgentMemoryStore, build_state_preamble
from revenue_agent.services.account_context import (
    AccountContext, AccountContextAssembler, AccountNotFoundError,
)
from revenue_agent.services.similarity_service import SimilarityService
from revenue_agent.services.delivery_queue import DeliveryQueue
from revenue_agent.services.playbook_service import PlaybookService
from revenue_agent.services.weekly_review import WeeklyReviewService, GRADUATION_THRESHOLD
from revenue_agent.services.daily_briefing import DailyBriefingService
from revenue_agent.services.ask_anything import AskAnythingService
from revenue_agent.services.enrollment_service import EnrollmentService
from revenue_agent.services.learnings_service import LearningsService

__all__ = [
    "RetryPolicy",
    "execute",
    "is_transient_error",
    "LLMService",
    "get_llm_service",
    "ReasoningOutputError",
    "EmbeddingService",
    "get_embedding_service",
    "EmailService",
    "get_email_service",
    "AgentMemoryStore",
    "build_state_preamble",
    "AccountContext",
    "AccountContextAssembler",
    "AccountNotFoundError",
    "SimilarityService",
    "DeliveryQueue",
    "PlaybookService",
    "WeeklyReviewService",
    "GRADUATION_THRESHOLD",
    "DailyBriefingService",
    "AskAnythingService",
    "EnrollmentService",
    "LearningsService",
]
