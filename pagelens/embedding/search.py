"""Per-user semantic index over analysed pages and chat sessions."""

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, TypeVar

from tqdm.asyncio import tqdm

from pagelens.config import Settings, get_settings
from pagelens.embedding.chat import ChatHistorySource, generate_chat_summary
from pagelens.embedding.embedder import TextEmbedder, create_embedder
from pagelens.embedding.models import (
    ChatContentType,
    ChatMessage,
    ChatSearchResult,
    ContentSearchResult,
    ContentType,
    IndexedChatDocument,
    IndexedDocument,
    SessionIndexState,
)
from pagelens.embedding.vectorizer import VectorDatabase, create_vector_database
from pagelens.llm.base import LLMProvider, extract_text

logger = logging.getLogger(__name__)

CONTENT_COLLECTION = "browsing_content"
CHAT_COLLECTION = "chat_history"

R = TypeVar("R", ContentSearchResult, ChatSearchResult)


def distance_to_score(distance: float) -> float:
    """Similarity in (0, 1], decreasing with distance."""
    return 1.0 / (1.0 + max(distance, 0.0))


def merge_by_best_score(results: Iterable[R], key: Callable[[R], str]) -> list[R]:
    """Keep the best-scoring result per group, best first.

    Example:
        merge_by_best_score(hits, key=lambda r: r.analysis_id)
    """
    best: dict[str, R] = {}
    for result in results:
        group = key(result)
        if group not in best or result.score > best[group].score:
            best[group] = result
    return sorted(best.values(), key=lambda r: r.score, reverse=True)


def _content_type_filter(content_types: Sequence[str] | None) -> dict[str, Any] | None:
    if not content_types:
        return None
    return {"content_type": {"$in": [str(getattr(t, "value", t)) for t in content_types]}}


class VectorSearchManager:
    """Embeds analyses and chat sessions for one active user at a time.

    Opening the user's database and loading the embedding model happen on the
    first call for that user. Switching users re-initializes.
    """

    def __init__(
        self,
        embedder: TextEmbedder | None = None,
        summary_provider: LLMProvider | None = None,
        database_factory: Callable[[str, Settings], VectorDatabase] = create_vector_database,
        settings: Settings | None = None,
    ):
        """Initialize the manager.

        Args:
            embedder: Text embedder (configured default if None)
            summary_provider: Provider used to summarize chat sessions
            database_factory: Opens the vector database for a user id
            settings: Application settings (global settings if None)
        """
        self.settings = settings or get_settings()
        self.embedder = embedder or create_embedder(self.settings)
        self.summary_provider = summary_provider
        self._database_factory = database_factory

        self.db: VectorDatabase | None = None
        self.current_user_id: str | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._sessions: dict[str, SessionIndexState] = {}

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self, user_id: str) -> None:
        """Open the user's collections. Concurrent callers share one attempt."""
        async with self._init_lock:
            if self._initialized and self.current_user_id == user_id:
                return

            logger.info(f"Initializing vector search for user {user_id}")
            self._initialized = False
            self._sessions.clear()

            await self.embedder.load()
            db = await asyncio.to_thread(self._database_factory, user_id, self.settings)
            for name in (CONTENT_COLLECTION, CHAT_COLLECTION):
                if await db.open_collection(name):
                    logger.info(f"Opened existing collection {name}")
                else:
                    logger.info(f"Collection {name} will be created on first write")

            self.db = db
            self.current_user_id = user_id
            self._initialized = True

    async def ensure_initialized(self, user_id: str) -> VectorDatabase:
        if not self._initialized or self.current_user_id != user_id:
            await self.initialize(user_id)
        return self.db

    # ------------------------------------------------------------------
    # Browsing content
    # ------------------------------------------------------------------

    async def index_content_analysis(
        self,
        analysis_id: str,
        user_id: str,
        url: str,
        timestamp: datetime,
        fields: Mapping[ContentType, str | None],
    ) -> int:
        """Embed each non-empty analysis field as its own document.

        Returns:
            Number of documents added
        """
        db = await self.ensure_initialized(user_id)

        documents = []
        for content_type in ContentType:
            text = fields.get(content_type)
            if not text or not text.strip():
                continue
            documents.append(
                IndexedDocument(
                    id=f"{analysis_id}:{content_type.value}",
                    analysis_id=analysis_id,
                    user_id=user_id,
                    url=url,
                    content_type=content_type,
                    content=text,
                    timestamp=timestamp,
                    vector=await self.embedder.embed(text),
                )
            )

        if not documents:
            logger.warning(f"No content to index for analysis {analysis_id}")
            return 0

        await db.add_documents(
            CONTENT_COLLECTION,
            ids=[d.id for d in documents],
            embeddings=[d.vector for d in documents],
            documents=[d.content for d in documents],
            metadatas=[d.metadata() for d in documents],
        )
        logger.info(f"Indexed {len(documents)} documents for analysis {analysis_id}")
        return len(documents)

    async def search_browsing_content(
        self,
        user_id: str,
        query: str,
        limit: int = 10,
        content_types: Sequence[ContentType] | None = None,
    ) -> list[ContentSearchResult]:
        db = await self.ensure_initialized(user_id)
        vector = await self.embedder.embed(query)
        rows = await db.query(
            CONTENT_COLLECTION, vector, limit=limit, where=_content_type_filter(content_types)
        )

        results = []
        for row in rows:
            metadata = row["metadata"]
            results.append(
                ContentSearchResult(
                    id=row["id"],
                    analysis_id=metadata["analysis_id"],
                    url=metadata["url"],
                    content_type=metadata["content_type"],
                    content=row["content"],
                    timestamp=datetime.fromisoformat(metadata["timestamp"]),
                    score=distance_to_score(row["distance"]),
                )
            )
        logger.debug(f"Found {len(results)} browsing results for query")
        return results

    async def delete_analysis_documents(self, user_id: str, analysis_id: str) -> None:
        db = await self.ensure_initialized(user_id)
        await db.delete(CONTENT_COLLECTION, where={"analysis_id": analysis_id})
        logger.info(f"Deleted documents for analysis {analysis_id}")

    async def delete_multiple_analyses(self, user_id: str, analysis_ids: Sequence[str]) -> None:
        if not analysis_ids:
            return
        db = await self.ensure_initialized(user_id)
        await db.delete(CONTENT_COLLECTION, where={"analysis_id": {"$in": list(analysis_ids)}})
        logger.info(f"Deleted documents for {len(analysis_ids)} analyses")

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    async def _session_state(self, db: VectorDatabase, session_id: str) -> SessionIndexState:
        state = self._sessions.get(session_id)
        if state is not None:
            return state

        state = SessionIndexState()
        for row in await db.get(CHAT_COLLECTION, where={"session_id": session_id}):
            metadata = row["metadata"]
            if metadata.get("content_type") == ChatContentType.SESSION_SUMMARY.value:
                state.has_summary = True
            elif metadata.get("message_id"):
                state.message_ids.add(metadata["message_id"])
        self._sessions[session_id] = state
        return state

    async def index_chat_session(
        self, user_id: str, session_id: str, messages: Sequence[ChatMessage]
    ) -> int:
        """Embed messages not yet indexed and refresh the session summary.

        Safe to call repeatedly as a session grows: already-indexed messages
        are skipped and the summary is only regenerated when something changed.

        Returns:
            Number of documents added
        """
        db = await self.ensure_initialized(user_id)
        conversation = [m for m in messages if m.role != "system"]
        if not conversation:
            return 0

        state = await self._session_state(db, session_id)
        staged: list[IndexedChatDocument] = []

        for message in conversation:
            if message.id in state.message_ids:
                continue
            text = extract_text(message.content).strip()
            if not text:
                continue
            staged.append(
                IndexedChatDocument(
                    id=f"{session_id}:{message.id}",
                    session_id=session_id,
                    user_id=user_id,
                    content_type=(
                        ChatContentType.USER_MESSAGE
                        if message.role == "user"
                        else ChatContentType.ASSISTANT_MESSAGE
                    ),
                    content=text,
                    timestamp=message.timestamp,
                    message_id=message.id,
                    vector=await self.embedder.embed(text),
                )
            )

        new_messages = len(staged)
        if not state.has_summary or new_messages:
            summary = await generate_chat_summary(self.summary_provider, conversation)
            summary_id = f"{session_id}:summary"
            vector = await self.embedder.embed(summary)
            if state.has_summary:
                await db.delete(CHAT_COLLECTION, ids=[summary_id])
                state.has_summary = False
            staged.append(
                IndexedChatDocument(
                    id=summary_id,
                    session_id=session_id,
                    user_id=user_id,
                    content_type=ChatContentType.SESSION_SUMMARY,
                    content=summary,
                    timestamp=conversation[-1].timestamp,
                    vector=vector,
                )
            )

        if not staged:
            logger.debug(f"Session {session_id} already indexed")
            return 0

        await db.add_documents(
            CHAT_COLLECTION,
            ids=[d.id for d in staged],
            embeddings=[d.vector for d in staged],
            documents=[d.content for d in staged],
            metadatas=[d.metadata() for d in staged],
        )
        for document in staged:
            if document.message_id is not None:
                state.message_ids.add(document.message_id)
            else:
                state.has_summary = True

        logger.info(
            f"Indexed session {session_id}: {new_messages} new messages, "
            f"{len(staged) - new_messages} summary"
        )
        return len(staged)

    async def search_chat_history(
        self,
        user_id: str,
        query: str,
        limit: int = 10,
        content_types: Sequence[ChatContentType] | None = None,
    ) -> list[ChatSearchResult]:
        db = await self.ensure_initialized(user_id)
        vector = await self.embedder.embed(query)
        rows = await db.query(
            CHAT_COLLECTION, vector, limit=limit, where=_content_type_filter(content_types)
        )

        return [
            ChatSearchResult(
                id=row["id"],
                session_id=row["metadata"]["session_id"],
                content_type=row["metadata"]["content_type"],
                content=row["content"],
                timestamp=datetime.fromisoformat(row["metadata"]["timestamp"]),
                score=distance_to_score(row["distance"]),
                message_id=row["metadata"].get("message_id"),
            )
            for row in rows
        ]

    async def delete_chat_session_documents(self, user_id: str, session_id: str) -> None:
        db = await self.ensure_initialized(user_id)
        await db.delete(CHAT_COLLECTION, where={"session_id": session_id})
        self._sessions[session_id] = SessionIndexState()
        logger.info(f"Deleted documents for chat session {session_id}")

    async def delete_multiple_chat_sessions(
        self, user_id: str, session_ids: Sequence[str]
    ) -> None:
        if not session_ids:
            return
        db = await self.ensure_initialized(user_id)
        await db.delete(CHAT_COLLECTION, where={"session_id": {"$in": list(session_ids)}})
        for session_id in session_ids:
            self._sessions[session_id] = SessionIndexState()
        logger.info(f"Deleted documents for {len(session_ids)} chat sessions")

    async def reindex_all_chat_sessions(
        self, user_id: str, history_source: ChatHistorySource
    ) -> int:
        """Run the incremental indexer over every non-empty session.

        Returns:
            Number of documents added across all sessions
        """
        await self.ensure_initialized(user_id)
        sessions = [s for s in await history_source.list_sessions(user_id) if s.message_count > 0]
        logger.info(f"Re-indexing {len(sessions)} chat sessions for user {user_id}")

        added = 0
        for session in tqdm(sessions, desc="Re-indexing chat sessions", unit="session"):
            try:
                messages = await history_source.get_session_messages(user_id, session.id)
                added += await self.index_chat_session(user_id, session.id, messages)
            except Exception as e:
                logger.error(f"Failed to re-index session {session.id}: {e}")

        logger.info(f"Completed re-indexing {len(sessions)} chat sessions")
        return added

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stats(self, user_id: str) -> dict[str, Any]:
        """Document counts for the user's collections."""
        db = await self.ensure_initialized(user_id)
        by_content_type = {}
        for content_type in ContentType:
            rows = await db.get(CONTENT_COLLECTION, where={"content_type": content_type.value})
            by_content_type[content_type.value] = len(rows)

        return {
            "total_documents": await db.count(CONTENT_COLLECTION),
            "by_content_type": by_content_type,
            "chat_documents": await db.count(CHAT_COLLECTION),
        }

    async def health_check(self) -> dict[str, bool]:
        health_status = {
            "vector_database": bool(self.db and await self.db.health_check()),
        }
        if self.summary_provider is not None:
            health_status["summary_provider"] = await self.summary_provider.health_check()

        health_status["overall"] = all(health_status.values())
        return health_status

    async def destroy(self) -> None:
        """Drop the open database handle and cached session state."""
        async with self._init_lock:
            self.db = None
            self.current_user_id = None
            self._initialized = False
            self._sessions.clear()
        logger.info("Vector search closed")
