from revenue_agent.api.agent import router as agent_router
from revenue_agent.api.deps import get_tenant_id

__all__ = [
    "agent_router",
    "get_tenant_id",
]
