"""LLM providers module."""

from pagelens.llm.anthropic import AnthropicConfig, AnthropicProvider
from pagelens.llm.base import (
    ChatTurn,
    ImagePart,
    LLMProvider,
    LLMProviderError,
    LLMProviderFactory,
    RateLimitError,
    TextPart,
    extract_text,
    is_rate_limit_error,
)
from pagelens.llm.factory import create_embedding_provider, create_llm_provider
from pagelens.llm.ollama import OllamaConfig, OllamaProvider
from pagelens.llm.openai import OpenAIConfig, OpenAIProvider

# Register all providers
LLMProviderFactory.register("ollama", OllamaProvider)
LLMProviderFactory.register("openai", OpenAIProvider)
LLMProviderFactory.register("anthropic", AnthropicProvider)

__all__ = [
    "AnthropicConfig",
    "AnthropicProvider",
    "ChatTurn",
    "ImagePart",
    "LLMProvider",
    "LLMProviderError",
    "LLMProviderFactory",
    "OllamaConfig",
    "OllamaProvider",
    "OpenAIConfig",
    "OpenAIProvider",
    "RateLimitError",
    "TextPart",
    "create_embedding_provider",
    "create_llm_provider",
    "extract_text",
    "is_rate_limit_error",
]
