"""Ollama LLM provider implementation."""

import logging
from typing import Any

import httpx
from pydantic import BaseModel

from pagelens.llm.base import (
    ChatTurn,
    EmbeddingResult,
    ImagePart,
    LLMProvider,
    LLMProviderError,
    RateLimitError,
    ResponseResult,
    TextPart,
)

logger = logging.getLogger(__name__)


class OllamaConfig(BaseModel):
    """Configuration for Ollama provider."""

    host: str = "http://localhost:11434"
    model: str = "llava"
    embedding_model: str = "nomic-embed-text"
    timeout: int = 30
    generate_timeout: float = 180.0


class OllamaProvider(LLMProvider):
    """Ollama LLM provider implementation."""

    def __init__(self, config: OllamaConfig | None = None, **kwargs: Any) -> None:
        """Initialize Ollama provider.

        Args:
            config: Ollama configuration
            **kwargs: Additional configuration options
        """
        self.config = config or OllamaConfig(**kwargs)
        self.model_name = self.config.model
        self.client = httpx.AsyncClient(
            base_url=self.config.host,
            timeout=self.config.timeout,
        )

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding using Ollama's embedding model."""
        data = await self._post(
            "/api/embed",
            {"model": self.config.embedding_model, "input": text},
        )

        # Ollama returns embeddings as an array with first element being the embedding
        embedding = data["embeddings"][0] if data.get("embeddings") else []

        return EmbeddingResult(
            embedding=embedding,
            model=self.config.embedding_model,
            token_count=None,  # Ollama doesn't return token count for embeddings
        )

    async def chat(self, messages: list[ChatTurn]) -> ResponseResult:
        """Generate a response using Ollama's chat endpoint."""
        data = await self._post(
            "/api/chat",
            {
                "model": self.config.model,
                "messages": [self._to_ollama_message(m) for m in messages],
                "stream": False,
            },
            timeout=self.config.generate_timeout,
        )

        return ResponseResult(
            content=data.get("message", {}).get("content", ""),
            model=self.config.model,
            token_count=data.get("eval_count"),
            finish_reason=data.get("done_reason"),
        )

    @staticmethod
    def _to_ollama_message(turn: ChatTurn) -> dict[str, Any]:
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}

        text = " ".join(p.text for p in turn.content if isinstance(p, TextPart))
        images = [p.data for p in turn.content if isinstance(p, ImagePart)]
        message: dict[str, Any] = {"role": turn.role, "content": text}
        if images:
            message["images"] = images
        return message

    async def _post(
        self, path: str, payload: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        try:
            response = await self.client.post(
                path, json=payload, timeout=timeout or self.config.timeout
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitError(f"Rate limited by Ollama: {e}") from e
            logger.error(f"Ollama HTTP error on {path}: {e}")
            logger.error(f"Model: {self.config.model}, Host: {self.config.host}")
            raise LLMProviderError(f"Ollama API error: {e}") from e
        except httpx.TimeoutException as e:
            logger.error(f"Ollama request to {path} timed out: {e}")
            raise LLMProviderError(f"Ollama request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.error(f"Ollama request to {path} failed: {e}")
            raise LLMProviderError(f"Failed to reach Ollama: {e}") from e

    async def health_check(self) -> bool:
        """Check if Ollama service is healthy."""
        try:
            response = await self.client.get("/api/tags")
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.client.aclose()
