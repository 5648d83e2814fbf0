"""Embedding service for account profile vectors"""

import json
import logging
from typing import List, Optional

import numpy as np
from openai import AsyncOpenAI

from revenue_agent.config import settings
from revenue_agent.services.retry import RetryPolicy, execute

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Generates text embeddings with the OpenAI embeddings API"""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.embedding_model
        self.dimensions = settings.embedding_dimension
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    async def embed(self, text: str) -> List[float]:
        """Generate embedding for a single text"""
        async def _call():
            return await self.client.embeddings.create(model=self.model, input=text, dimensions=self.dimensions)

        response = await execute(_call, self.retry_policy, label="embedding")
        return list(response.data[0].embedding)

    @staticmethod
    def embedding_from_json(json_str: Optional[str]) -> Optional[List[float]]:
        """Parse embedding from JSON string"""
        if not json_str:
            return None
        return json.loads(json_str)

    @staticmethod
    def cosine_similarity(embedding1: List[float], embedding2: List[float]) -> float:
        """
        Cosine similarity dot(a,b) / (|a|*|b|).

        Returns 0 when either vector has zero norm or the lengths differ.
        The result is clamped to [-1, 1] to absorb floating-point drift.
        """
        a = np.asarray(embedding1, dtype=float)
        b = np.asarray(embedding2, dtype=float)
        if a.shape != b.shape or a.size == 0:
            return 0.0

        norm_a = np.linalg.norm(a)
        norm_b = np.linalg.norm(b)
        if norm_a == 0 or norm_b == 0:
            return 0.0

        similarity = float(np.dot(a, b) / (norm_a * norm_b))
        return max(-1.0, min(1.0, similarity))


_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get the singleton embedding service"""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
