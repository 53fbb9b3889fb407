"""Text embedding backends."""

import asyncio
import logging
from abc import ABC, abstractmethod

from sentence_transformers import SentenceTransformer

from pagelens.config import EmbeddingBackend, Settings, get_settings
from pagelens.llm.base import LLMProvider

logger = logging.getLogger(__name__)


class TextEmbedder(ABC):
    """Turns text into a fixed-dimension vector."""

    async def load(self) -> None:
        """Prepare the model. Safe to call more than once."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        pass


class SentenceTransformerEmbedder(TextEmbedder):
    """Local embeddings with sentence-transformers (no API calls).

    Embeddings are mean-pooled and normalized by the model; encoding runs in a
    worker thread so the event loop is not blocked.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        device: str | None = None,
        cache_folder: str | None = None,
    ):
        self.model_name = model_name
        self.device = device
        self.cache_folder = cache_folder
        self.dimension: int | None = None
        self._model: SentenceTransformer | None = None

    async def load(self) -> None:
        if self._model is not None:
            return
        logger.info(f"Loading embeddings model {self.model_name}...")
        self._model = await asyncio.to_thread(
            SentenceTransformer,
            self.model_name,
            device=self.device,
            cache_folder=self.cache_folder,
        )
        self.dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embeddings model loaded ({self.dimension} dimensions)")

    async def embed(self, text: str) -> list[float]:
        if self._model is None:
            raise RuntimeError("Embeddings model not initialized")
        vector = await asyncio.to_thread(self._model.encode, text, normalize_embeddings=True)
        return vector.tolist()


class ProviderEmbedder(TextEmbedder):
    """Embeddings from a remote LLM provider."""

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def embed(self, text: str) -> list[float]:
        result = await self.provider.generate_embedding(text)
        if not result.success or not result.embedding:
            raise RuntimeError(f"Failed to generate embedding: {result.error}")
        return result.embedding


def create_embedder(settings: Settings | None = None) -> TextEmbedder:
    """Create the embedder selected by configuration."""
    settings = settings or get_settings()

    if settings.embedding_backend == EmbeddingBackend.PROVIDER:
        from pagelens.llm.factory import create_embedding_provider

        return ProviderEmbedder(create_embedding_provider())

    return SentenceTransformerEmbedder(
        model_name=settings.embedding_model,
        cache_folder=str(settings.data_dir / "models"),
    )
