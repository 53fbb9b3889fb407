"""Configuration management using pydantic-settings."""

from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


class EmbeddingBackend(str, Enum):
    """Where text embeddings are computed."""

    LOCAL = "local"
    PROVIDER = "provider"


class Environment(str, Enum):
    """Application environments."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


DEFAULT_URL_BLACKLIST = [
    "https://www.google.com",
    "https://www.google.com/",
    "about:blank",
    "chrome://",
    "file://",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # LLM Provider Configuration
    llm_provider: LLMProvider = Field(
        default=LLMProvider.OPENAI,
        description="LLM provider used for page analysis and chat summaries",
    )

    # OpenAI Configuration
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI vision-capable model used for page analysis",
    )

    # Anthropic Configuration
    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API key",
    )
    anthropic_model: str = Field(
        default="claude-3-5-haiku-20241022",
        description="Anthropic model used for page analysis",
    )

    # Ollama Configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    ollama_model: str = Field(
        default="llava",
        description="Ollama multimodal model to use",
    )
    ollama_embedding_model: str = Field(
        default="nomic-embed-text",
        description="Ollama embedding model to use",
    )

    # Embedding Configuration
    embedding_backend: EmbeddingBackend = Field(
        default=EmbeddingBackend.LOCAL,
        description="Compute embeddings locally or through the LLM provider",
    )
    embedding_model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Local sentence-transformers model name",
    )

    # ChromaDB Configuration
    chroma_host: str | None = Field(
        default=None,
        description="ChromaDB host; when unset an on-disk store per user is used",
    )
    chroma_port: int = Field(
        default=8000,
        description="ChromaDB port",
    )

    # Storage Configuration
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for queue, analyses, blobs and vector stores",
    )

    # Analysis Pipeline Configuration
    analysis_max_retries: int = Field(
        default=3,
        description="Attempts per queue item and per provider exchange",
    )
    queue_poll_interval: float = Field(
        default=5.0,
        description="Seconds between worker queue checks",
    )
    capture_timeout: float = Field(
        default=10.0,
        description="Seconds to wait for each page capture call",
    )
    analysis_text_limit: int = Field(
        default=4000,
        description="Characters of extracted page text included in the prompt",
    )
    url_blacklist: list[str] = Field(
        default_factory=lambda: list(DEFAULT_URL_BLACKLIST),
        description="URLs never analyzed; entries ending in '://' match as prefixes",
    )
    max_categories: int = Field(
        default=1000,
        description="Upper bound on the shared category vocabulary",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment",
    )

    @property
    def chroma_url(self) -> str | None:
        """Get the full ChromaDB URL, if a remote store is configured."""
        if not self.chroma_host:
            return None
        return f"http://{self.chroma_host}:{self.chroma_port}"

    @property
    def users_dir(self) -> Path:
        return self.data_dir / "users"

    @property
    def queue_path(self) -> Path:
        return self.users_dir / "analysis-queue.json"

    @property
    def pending_extractions_dir(self) -> Path:
        return self.users_dir / "pending-extractions"

    @property
    def categories_path(self) -> Path:
        return self.users_dir / "global" / "categories.json"

    def user_data_path(self, user_id: str) -> Path:
        """Get the data directory for a specific user."""
        return self.users_dir / "user-data" / user_id

    def validate_provider_config(self) -> None:
        """Validate that required API keys are set for the selected provider."""
        if self.llm_provider == LLMProvider.OPENAI and not self.openai_api_key:
            raise ValueError("OpenAI API key is required when using OpenAI provider")
        elif self.llm_provider == LLMProvider.ANTHROPIC and not self.anthropic_api_key:
            raise ValueError("Anthropic API key is required when using Anthropic provider")


# Global settings instance - lazy loaded
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
