"""OpenAI LLM provider implementation."""

import logging
from typing import Any

import openai
from pydantic import BaseModel

from pagelens.llm.base import (
    ChatTurn,
    EmbeddingResult,
    ImagePart,
    LLMProvider,
    LLMProviderError,
    RateLimitError,
    ResponseResult,
)

logger = logging.getLogger(__name__)


class OpenAIConfig(BaseModel):
    """Configuration for OpenAI provider."""

    api_key: str
    model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    max_tokens: int = 1000
    timeout: int = 60
    # Retries are driven by the analysis queue
    max_retries: int = 0


class OpenAIProvider(LLMProvider):
    """OpenAI LLM provider implementation."""

    def __init__(self, config: OpenAIConfig | None = None, **kwargs: Any) -> None:
        """Initialize OpenAI provider.

        Args:
            config: OpenAI configuration
            **kwargs: Additional configuration options
        """
        self.config = config or OpenAIConfig(**kwargs)
        self.model_name = self.config.model
        self.client = openai.AsyncOpenAI(
            api_key=self.config.api_key,
            timeout=self.config.timeout,
            max_retries=self.config.max_retries,
        )

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding using OpenAI's embedding model."""
        try:
            response = await self.client.embeddings.create(
                model=self.config.embedding_model,
                input=text,
            )
        except openai.RateLimitError as e:
            logger.warning(f"OpenAI embedding request rate limited: {e}")
            raise RateLimitError(f"Rate limited by OpenAI: {e}") from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI embedding request failed: {e}")
            raise LLMProviderError(f"Failed to generate embedding: {e}") from e

        return EmbeddingResult(
            embedding=response.data[0].embedding,
            model=self.config.embedding_model,
            token_count=response.usage.total_tokens,
        )

    async def chat(self, messages: list[ChatTurn]) -> ResponseResult:
        """Generate a response using OpenAI's chat model."""
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[self._to_openai_message(m) for m in messages],
                max_tokens=self.config.max_tokens,
            )
        except openai.RateLimitError as e:
            logger.warning(f"OpenAI chat request rate limited: {e}")
            raise RateLimitError(f"Rate limited by OpenAI: {e}") from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI chat request failed: {e}")
            raise LLMProviderError(f"Failed to generate response: {e}") from e

        choice = response.choices[0]
        return ResponseResult(
            content=choice.message.content or "",
            model=self.config.model,
            token_count=response.usage.total_tokens if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    @staticmethod
    def _to_openai_message(turn: ChatTurn) -> dict[str, Any]:
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}

        parts = []
        for part in turn.content:
            if isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.data_url}})
            else:
                parts.append({"type": "text", "text": part.text})
        return {"role": turn.role, "content": parts}

    async def health_check(self) -> bool:
        """Check if OpenAI service is accessible."""
        try:
            await self.client.models.list()
            return True
        except Exception as e:
            logger.warning(f"OpenAI health check failed: {e}")
            return False
