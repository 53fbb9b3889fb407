"""Shared fixtures and in-memory fakes."""

import hashlib
import json
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from pagelens.analysis.capture import ScreenshotCapture, StaticCaptureSource
from pagelens.analysis.categories import CategoryManager
from pagelens.analysis.models import ExtractedText, Heading, ScreenshotMetadata
from pagelens.analysis.queue import AnalysisQueue
from pagelens.config import Settings
from pagelens.embedding.embedder import TextEmbedder
from pagelens.embedding.search import VectorSearchManager
from pagelens.embedding.vectorizer import VectorDatabase
from pagelens.llm.base import ChatTurn, EmbeddingResult, LLMProvider, ResponseResult
from pagelens.storage import ContentStorage, PendingExtractionStore

VALID_ANALYSIS = {
    "pageDescription": "A news site publishing daily world news headlines.",
    "screenshotDescription": "Header with the site logo above a grid of headlines.",
    "languages": ["en"],
    "primaryLanguage": "en",
    "category": "news",
    "subcategory": "world",
    "brand": "Example",
}
VALID_ANALYSIS_JSON = json.dumps(VALID_ANALYSIS)


def _matches(metadata: dict[str, Any], where: dict[str, Any] | None) -> bool:
    if not where:
        return True
    for key, condition in where.items():
        if key == "$and":
            if not all(_matches(metadata, clause) for clause in condition):
                return False
        elif key == "$or":
            if not any(_matches(metadata, clause) for clause in condition):
                return False
        elif isinstance(condition, dict):
            for op, value in condition.items():
                if op == "$in" and metadata.get(key) not in value:
                    return False
                if op == "$eq" and metadata.get(key) != value:
                    return False
                if op == "$ne" and metadata.get(key) == value:
                    return False
        elif metadata.get(key) != condition:
            return False
    return True


class InMemoryVectorDatabase(VectorDatabase):
    """Brute-force vector store with squared L2 distances."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict[str, Any]]] = {}
        self.add_calls: list[tuple[str, list[str]]] = []
        self.healthy = True

    async def open_collection(self, name: str) -> bool:
        return name in self.collections

    async def add_documents(self, collection_name, ids, embeddings, documents, metadatas):
        self.add_calls.append((collection_name, list(ids)))
        rows = self.collections.setdefault(collection_name, {})
        for doc_id, embedding, document, metadata in zip(ids, embeddings, documents, metadatas):
            rows[doc_id] = {"embedding": embedding, "content": document, "metadata": dict(metadata)}

    async def query(self, collection_name, query_embedding, limit=10, where=None):
        rows = self.collections.get(collection_name, {})
        scored = []
        for doc_id, row in rows.items():
            if not _matches(row["metadata"], where):
                continue
            distance = sum((a - b) ** 2 for a, b in zip(query_embedding, row["embedding"]))
            scored.append(
                {
                    "id": doc_id,
                    "content": row["content"],
                    "metadata": dict(row["metadata"]),
                    "distance": distance,
                }
            )
        scored.sort(key=lambda r: r["distance"])
        return scored[:limit]

    async def get(self, collection_name, where=None, ids=None):
        rows = self.collections.get(collection_name, {})
        return [
            {"id": doc_id, "content": row["content"], "metadata": dict(row["metadata"])}
            for doc_id, row in rows.items()
            if (ids is None or doc_id in ids) and _matches(row["metadata"], where)
        ]

    async def delete(self, collection_name, where=None, ids=None):
        rows = self.collections.get(collection_name, {})
        doomed = [
            doc_id
            for doc_id, row in rows.items()
            if (ids is None or doc_id in ids) and _matches(row["metadata"], where)
        ]
        for doc_id in doomed:
            del rows[doc_id]

    async def count(self, collection_name):
        return len(self.collections.get(collection_name, {}))

    async def health_check(self):
        return self.healthy


class HashingEmbedder(TextEmbedder):
    """Bag-of-words embedder: texts sharing words end up close together."""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.load_calls = 0
        self.embedded: list[str] = []

    async def load(self) -> None:
        self.load_calls += 1

    async def embed(self, text: str) -> list[float]:
        self.embedded.append(text)
        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]


class ScriptedLLMProvider(LLMProvider):
    """Returns scripted answers in order; exceptions in the script are raised."""

    def __init__(self, responses: list[Any] | None = None, default: Any = VALID_ANALYSIS_JSON):
        self.model_name = "fake-vision-model"
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[list[ChatTurn]] = []

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(embedding=[float(len(text))], model="fake-embedding")

    async def chat(self, messages: list[ChatTurn]) -> ResponseResult:
        self.calls.append(list(messages))
        answer = self.responses.pop(0) if self.responses else self.default
        if isinstance(answer, Exception):
            raise answer
        return ResponseResult(content=answer, model=self.model_name, token_count=42)

    async def health_check(self) -> bool:
        return True


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_capture(
    html: str = "<html><head><title>Example News</title></head><body>news</body></html>",
    image: bytes = b"\x89PNG fake screenshot",
    title: str = "Example News",
    meta_description: str | None = "Latest headlines from around the world",
    history_entry_id: str | None = None,
) -> StaticCaptureSource:
    full_text = "Example News. Breaking news and world headlines updated every hour."
    return StaticCaptureSource(
        html=html,
        extracted_text=ExtractedText(
            title=title,
            meta_description=meta_description,
            headings=[Heading(level=1, text="Top stories")],
            paragraphs=[full_text],
            full_text=full_text,
            text_length=len(full_text),
        ),
        screenshot=ScreenshotCapture(
            image_bytes=image,
            metadata=ScreenshotMetadata(viewport_width=1280, viewport_height=800),
        ),
        history_entry_id=history_entry_id,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        data_dir=tmp_path,
        queue_poll_interval=0.01,
        capture_timeout=1.0,
    )


@pytest.fixture
def storage(settings):
    return ContentStorage(settings)


@pytest.fixture
def pending_store(settings):
    return PendingExtractionStore(settings)


@pytest.fixture
def queue(settings):
    return AnalysisQueue(settings=settings)


@pytest.fixture
def categories(settings):
    return CategoryManager(settings)


@pytest.fixture
def vector_databases():
    """One in-memory database per user id, created on first open."""
    return {}


@pytest.fixture
def database_factory(vector_databases):
    def factory(user_id: str, settings: Settings) -> VectorDatabase:
        return vector_databases.setdefault(user_id, InMemoryVectorDatabase())

    return factory


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def summary_provider():
    return ScriptedLLMProvider(default="The user asked about Python packaging and testing.")


@pytest.fixture
def vector_search(settings, embedder, summary_provider, database_factory):
    return VectorSearchManager(
        embedder=embedder,
        summary_provider=summary_provider,
        database_factory=database_factory,
        settings=settings,
    )
