"""Base LLM provider interface, message shapes and factory pattern."""

from abc import ABC, abstractmethod
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


class LLMProviderError(RuntimeError):
    """A provider call failed."""


class RateLimitError(LLMProviderError):
    """The provider rejected the call because of rate limiting."""


def is_rate_limit_error(error: BaseException) -> bool:
    """Check whether an exception signals provider rate limiting."""
    if isinstance(error, RateLimitError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


class TextPart(BaseModel):
    """Plain text part of a multimodal message."""

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Base64-encoded image part of a multimodal message."""

    type: Literal["image"] = "image"
    data: str
    media_type: str = "image/png"

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]
MessageContent = str | list[ContentPart]


def extract_text(content: MessageContent | None) -> str:
    """Return only the text portion of message content.

    Image parts are dropped, text parts are joined with a single space.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return " ".join(part.text for part in content if isinstance(part, TextPart))


class ChatTurn(BaseModel):
    """One message of a conversation sent to a provider."""

    role: Literal["user", "assistant", "system"]
    content: MessageContent


class EmbeddingResult(BaseModel):
    """Result from embedding generation."""

    embedding: list[float]
    model: str
    token_count: int | None = None
    success: bool = True
    error: str | None = None


class ResponseResult(BaseModel):
    """Result from response generation."""

    content: str
    model: str
    token_count: int | None = None
    finish_reason: str | None = None
    success: bool = True
    error: str | None = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model_name: str = "unknown"

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding for the given text.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult with embedding vector and metadata
        """
        pass

    @abstractmethod
    async def chat(self, messages: list[ChatTurn]) -> ResponseResult:
        """Generate a response to a (possibly multimodal) conversation.

        Args:
            messages: Conversation turns, oldest first

        Returns:
            ResponseResult with generated response and metadata

        Raises:
            RateLimitError: If the provider is rate limiting requests
            LLMProviderError: For any other provider failure
        """
        pass

    async def generate_response(self, prompt: str, context: str | None = None) -> ResponseResult:
        """Generate response given a prompt and optional context.

        Args:
            prompt: User prompt or question
            context: Optional context information

        Returns:
            ResponseResult with generated response and metadata
        """
        text = prompt
        if context:
            text = f"Context: {context}\n\nQuestion: {prompt}"
        return await self.chat([ChatTurn(role="user", content=text)])

    async def summarize(self, text: str, max_length: int = 100) -> ResponseResult:
        """Summarize the given text.

        Args:
            text: Text to summarize
            max_length: Maximum length of summary in words

        Returns:
            ResponseResult with summary and metadata
        """
        prompt = f"""Please provide a concise summary of the following text in no more than {max_length} words, capturing the main topics discussed and key points:

{text}

Summary:"""

        return await self.generate_response(prompt)

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the provider is healthy and accessible.

        Returns:
            True if healthy, False otherwise
        """
        pass


class LLMProviderFactory:
    """Factory for creating LLM providers."""

    _providers: dict[str, type[LLMProvider]] = {}

    @classmethod
    def register(cls, name: str, provider_class: type[LLMProvider]) -> None:
        """Register a provider class.

        Args:
            name: Provider name (e.g., "ollama", "openai")
            provider_class: Provider class to register
        """
        cls._providers[name] = provider_class

    @classmethod
    def create(cls, name: str, **kwargs: Any) -> LLMProvider:
        """Create a provider instance.

        Args:
            name: Provider name
            **kwargs: Provider-specific configuration

        Returns:
            LLMProvider instance

        Raises:
            ValueError: If provider name is not registered
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(f"Unknown provider '{name}'. Available: {available}")

        return cls._providers[name](**kwargs)

    @classmethod
    def list_providers(cls) -> list[str]:
        """List all registered provider names."""
        return list(cls._providers.keys())
