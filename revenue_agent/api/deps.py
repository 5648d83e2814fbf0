"""Shared API dependencies: tenant context and injectable clients"""

from typing import Optional

from fastapi import Header, HTTPException, status

from revenue_agent.services.delivery_queue import DeliveryQueue
from revenue_agent.services.email_service import EmailService, get_email_service
from revenue_agent.services.embedding_service import EmbeddingService, get_embedding_service
from revenue_agent.services.llm_service import LLMService, get_llm_service


async def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    """Authenticated tenant context, carried by the X-Tenant-Id header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing tenant context",
        )
    return x_tenant_id


def get_llm() -> LLMService:
    return get_llm_service()


def get_embeddings() -> EmbeddingService:
    return get_embedding_service()


def get_email() -> EmailService:
    return get_email_service()


def get_delivery_queue() -> DeliveryQueue:
    return DeliveryQueue()
