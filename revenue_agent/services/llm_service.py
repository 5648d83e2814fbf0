"""
LLM Service - OpenAI API wrapper for the reasoning calls

Provides:
- Structured JSON completions validated against a pydantic model
- Streaming support with token usage
- Retries through the shared retry executor
"""

import json
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, List, Dict, Optional, Type, TypeVar

import tiktoken
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from revenue_agent.config import settings
from revenue_agent.services.retry import RetryPolicy, execute

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ReasoningOutputError(ValueError):
    """Reasoning service returned output that doesn't match the expected schema."""


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_prompt: int
    tokens_completion: int
    tokens_total: int
    finish_reason: str


@dataclass
class StreamChunk:
    """Chunk from streaming response"""
    content: str
    is_final: bool
    finish_reason: Optional[str] = None
    tokens_total: Optional[int] = None


class LLMService:
    """
    OpenAI LLM Service for the decision services.

    Handles:
    - JSON-mode completions parsed into response schemas
    - Streaming completions for interactive queries
    - Token counting
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.default_model = model or settings.reasoning_model
        self.default_max_tokens = settings.max_tokens
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._encoding = None

    @property
    def encoding(self):
        # Loaded on first use; only needed when the stream reports no usage
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.default_model)
            except KeyError:
                # Fall back to cl100k_base for newer models
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def count_tokens(self, text: str) -> int:
        """Count tokens in a text string."""
        return len(self.encoding.encode(text))

    @staticmethod
    def build_messages(system_prompt: str, user_prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """Generate a chat completion, retrying transient errors."""
        max_tokens = max_tokens or self.default_max_tokens

        async def _call():
            return await self.client.chat.completions.create(
                model=self.default_model,
                messages=messages,
                temperature=temperature if temperature is not None else 0.3,
                max_tokens=max_tokens,
                **kwargs
            )

        response = await execute(_call, self.retry_policy, label="chat completion")
        choice = response.choices[0]
        usage = response.usage

        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            tokens_prompt=usage.prompt_tokens if usage else 0,
            tokens_completion=usage.completion_tokens if usage else 0,
            tokens_total=usage.total_tokens if usage else 0,
            finish_reason=choice.finish_reason or "",
        )

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        response_model: Type[ModelT],
        temperature: Optional[float] = None,
        fallback: Optional[ModelT] = None,
    ) -> ModelT:
        """
        Issue one JSON-mode completion and validate it.

        Args:
            system_prompt: Identity + memory + rendered context
            user_prompt: Task instruction
            response_model: Pydantic schema the output must satisfy
            temperature: Sampling temperature
            fallback: Static value returned on malformed output instead of raising

        Raises:
            ReasoningOutputError: Output is not JSON or fails validation and
                no fallback was given.
        """
        response = await self.complete(
            self.build_messages(system_prompt, user_prompt),
            temperature=temperature,
            response_format={"type": "json_object"},
        )

        try:
            data = json.loads(response.content)
            return response_model.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            if fallback is not None:
                logger.warning(f"Malformed {response_model.__name__} output, using fallback: {e}")
                return fallback
            logger.error(f"Malformed {response_model.__name__} output: {e}")
            raise ReasoningOutputError(
                f"Reasoning output failed {response_model.__name__} validation: {e}"
            ) from e

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """
        Generate a streaming chat completion.

        Opening the stream is retried; once tokens flow, errors propagate to
        the caller.

        Yields:
            StreamChunk objects; the final one carries usage when reported
        """
        max_tokens = max_tokens or self.default_max_tokens

        async def _open():
            return await self.client.chat.completions.create(
                model=self.default_model,
                messages=self.build_messages(system_prompt, user_prompt),
                temperature=temperature if temperature is not None else 0.4,
                max_tokens=max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )

        stream = await execute(_open, self.retry_policy, label="chat stream")
        finish_reason = None
        tokens_total = None

        async for chunk in stream:
            if getattr(chunk, "usage", None):
                tokens_total = chunk.usage.total_tokens
            if chunk.choices:
                choice = chunk.choices[0]
                if choice.delta and choice.delta.content:
                    yield StreamChunk(content=choice.delta.content, is_final=False)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        yield StreamChunk(
            content="",
            is_final=True,
            finish_reason=finish_reason,
            tokens_total=tokens_total,
        )


# Singleton instance
_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
