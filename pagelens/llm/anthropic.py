"""Anthropic Claude LLM provider implementation."""

import logging
from typing import Any

import anthropic
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


class AnthropicConfig(BaseModel):
    """Configuration for Anthropic provider."""

    api_key: str
    model: str = "claude-3-5-haiku-20241022"
    # Anthropic doesn't provide embeddings; see create_embedding_provider
    max_tokens: int = 1000
    timeout: int = 60
    max_retries: int = 0


class AnthropicProvider(LLMProvider):
    """Anthropic Claude LLM provider implementation."""

    def __init__(self, config: AnthropicConfig | None = None, **kwargs: Any) -> None:
        """Initialize Anthropic provider.

        Args:
            config: Anthropic configuration
            **kwargs: Additional configuration options
        """
        self.config = config or AnthropicConfig(**kwargs)
        self.model_name = self.config.model
        self.client = anthropic.AsyncAnthropic(
            api_key=self.config.api_key,
            timeout=self.config.timeout,
            max_retries=self.config.max_retries,
        )

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding - Anthropic doesn't provide embeddings.

        Raises:
            NotImplementedError: Anthropic doesn't provide embeddings
        """
        raise NotImplementedError(
            "Anthropic doesn't provide embeddings. Use the local embedding backend "
            "or another provider for embeddings."
        )

    async def chat(self, messages: list[ChatTurn]) -> ResponseResult:
        """Generate a response using Anthropic's Claude model."""
        system = "\n\n".join(
            m.content for m in messages if m.role == "system" and isinstance(m.content, str)
        )
        payload = [self._to_anthropic_message(m) for m in messages if m.role != "system"]

        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "messages": payload,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            logger.warning(f"Anthropic request rate limited: {e}")
            raise RateLimitError(f"Rate limited by Anthropic: {e}") from e
        except anthropic.AnthropicError as e:
            logger.error(f"Anthropic response request failed: {e}")
            raise LLMProviderError(f"Failed to generate response: {e}") from e

        # Anthropic returns content as a list of blocks
        content = ""
        for block in response.content:
            if block.type == "text":
                content += block.text

        return ResponseResult(
            content=content,
            model=self.config.model,
            token_count=response.usage.output_tokens + response.usage.input_tokens,
            finish_reason=response.stop_reason,
        )

    @staticmethod
    def _to_anthropic_message(turn: ChatTurn) -> dict[str, Any]:
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}

        blocks = []
        for part in turn.content:
            if isinstance(part, ImagePart):
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": part.media_type,
                            "data": part.data,
                        },
                    }
                )
            else:
                blocks.append({"type": "text", "text": part.text})
        return {"role": turn.role, "content": blocks}

    async def health_check(self) -> bool:
        """Check if Anthropic service is accessible."""
        try:
            await self.client.messages.create(
                model=self.config.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "Hi"}],
            )
            return True
        except Exception as e:
            logger.warning(f"Anthropic health check failed: {e}")
            return False
