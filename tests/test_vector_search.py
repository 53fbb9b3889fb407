"""Tests for the per-user vector index."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pagelens.embedding.chat import ChatHistorySource
from pagelens.embedding.models import (
    ChatContentType,
    ChatMessage,
    ChatSearchResult,
    ChatSessionInfo,
    ContentSearchResult,
    ContentType,
)
from pagelens.embedding.search import (
    CHAT_COLLECTION,
    CONTENT_COLLECTION,
    VectorSearchManager,
    distance_to_score,
    merge_by_best_score,
)
from pagelens.llm.base import ImagePart, TextPart

from conftest import InMemoryVectorDatabase, ScriptedLLMProvider

USER = "user-1"
STARTED = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _messages(count: int, session_prefix: str = "m") -> list[ChatMessage]:
    return [
        ChatMessage(
            id=f"{session_prefix}{n}",
            role="user" if n % 2 == 0 else "assistant",
            content=f"message {n} about python packaging",
            timestamp=STARTED + timedelta(minutes=n),
        )
        for n in range(count)
    ]


def _fields(overrides=None):
    fields = {
        ContentType.PAGE_DESCRIPTION: "An online bank offering mortgages and savings accounts.",
        ContentType.TITLE: "Example Bank",
        ContentType.META_DESCRIPTION: "Mortgages made simple",
        ContentType.SCREENSHOT_DESCRIPTION: "Blue header with a login button.",
    }
    fields.update(overrides or {})
    return fields


def _chat_rows(vector_databases, session_id=None):
    rows = vector_databases[USER].collections.get(CHAT_COLLECTION, {})
    return {
        doc_id: row
        for doc_id, row in rows.items()
        if session_id is None or row["metadata"]["session_id"] == session_id
    }


class TestInitialization:
    """Test vector search initialization."""

    @pytest.mark.asyncio
    async def test_concurrent_initialization_shares_one_attempt(self, settings, embedder):
        """Test that concurrent initializations share one attempt."""
        opened = []

        def factory(user_id, _settings):
            opened.append(user_id)
            return InMemoryVectorDatabase()

        manager = VectorSearchManager(
            embedder=embedder, database_factory=factory, settings=settings
        )

        await asyncio.gather(*(manager.initialize(USER) for _ in range(5)))

        assert opened == [USER]
        assert embedder.load_calls == 1

    @pytest.mark.asyncio
    async def test_switching_user_reinitializes(self, vector_search, vector_databases):
        """Test reinitialization on a user switch."""
        await vector_search.ensure_initialized("user-1")
        await vector_search.ensure_initialized("user-1")
        await vector_search.ensure_initialized("user-2")

        assert set(vector_databases) == {"user-1", "user-2"}
        assert vector_search.current_user_id == "user-2"

    @pytest.mark.asyncio
    async def test_users_do_not_see_each_other(self, vector_search):
        """Test that users have separate indexes."""
        await vector_search.index_content_analysis(
            "analysis-1", "user-1", "https://bank.example", STARTED, _fields()
        )

        assert await vector_search.search_browsing_content("user-2", "bank") == []
        assert len(await vector_search.search_browsing_content("user-1", "bank")) == 4


class TestBrowsingContent:
    """Test indexing and searching browsing content."""

    @pytest.mark.asyncio
    async def test_one_document_per_non_empty_field(self, vector_search, vector_databases):
        """Test one document per non-empty field."""
        added = await vector_search.index_content_analysis(
            "analysis-1",
            USER,
            "https://bank.example",
            STARTED,
            _fields({ContentType.META_DESCRIPTION: None, ContentType.TITLE: "   "}),
        )

        assert added == 2
        rows = vector_databases[USER].collections[CONTENT_COLLECTION]
        assert set(rows) == {"analysis-1:pageDescription", "analysis-1:screenshotDescription"}
        metadata = rows["analysis-1:pageDescription"]["metadata"]
        assert metadata == {
            "analysis_id": "analysis-1",
            "user_id": USER,
            "url": "https://bank.example",
            "content_type": "pageDescription",
            "timestamp": STARTED.isoformat(),
        }

    @pytest.mark.asyncio
    async def test_nothing_to_index(self, vector_search, vector_databases):
        """Test an analysis without text."""
        added = await vector_search.index_content_analysis(
            "analysis-1", USER, "https://x.example", STARTED, {}
        )

        assert added == 0
        assert vector_databases[USER].add_calls == []

    @pytest.mark.asyncio
    async def test_search_returns_scored_results(self, vector_search):
        """Test that search results carry scores."""
        await vector_search.index_content_analysis(
            "analysis-1", USER, "https://bank.example", STARTED, _fields()
        )

        results = await vector_search.search_browsing_content(USER, "mortgages", limit=2)

        assert len(results) == 2
        assert all(isinstance(r, ContentSearchResult) for r in results)
        assert results[0].score >= results[1].score
        assert all(0 < r.score <= 1 for r in results)
        assert results[0].url == "https://bank.example"
        assert results[0].timestamp == STARTED

    @pytest.mark.asyncio
    async def test_content_type_filter(self, vector_search):
        """Test filtering by content type."""
        await vector_search.index_content_analysis(
            "analysis-1", USER, "https://bank.example", STARTED, _fields()
        )

        results = await vector_search.search_browsing_content(
            USER, "bank", content_types=[ContentType.TITLE]
        )

        assert [r.content_type for r in results] == ["title"]
        assert results[0].content == "Example Bank"

    @pytest.mark.asyncio
    async def test_delete_analysis_documents(self, vector_search, vector_databases):
        """Test deleting an analysis."""
        for analysis_id in ("analysis-1", "analysis-2", "analysis-3"):
            await vector_search.index_content_analysis(
                analysis_id, USER, "https://bank.example", STARTED, _fields()
            )

        await vector_search.delete_analysis_documents(USER, "analysis-1")
        await vector_search.delete_multiple_analyses(USER, ["analysis-2"])

        rows = vector_databases[USER].collections[CONTENT_COLLECTION]
        assert {row["metadata"]["analysis_id"] for row in rows.values()} == {"analysis-3"}

    @pytest.mark.asyncio
    async def test_delete_multiple_with_no_ids(self, vector_search, vector_databases):
        """Test batch deletion with no ids."""
        await vector_search.delete_multiple_analyses(USER, [])
        assert vector_databases == {}

    @pytest.mark.asyncio
    async def test_stats(self, vector_search):
        """Test index statistics."""
        await vector_search.index_content_analysis(
            "analysis-1",
            USER,
            "https://bank.example",
            STARTED,
            _fields({ContentType.META_DESCRIPTION: ""}),
        )
        await vector_search.index_chat_session(USER, "session-1", _messages(2))

        stats = await vector_search.get_stats(USER)

        assert stats["total_documents"] == 3
        assert stats["by_content_type"]["metaDescription"] == 0
        assert stats["by_content_type"]["title"] == 1
        assert stats["chat_documents"] == 3


class TestChatSessions:
    """Test indexing and searching chat sessions."""

    @pytest.mark.asyncio
    async def test_indexes_messages_and_summary(self, vector_search, vector_databases):
        """Test indexing messages and a summary."""
        added = await vector_search.index_chat_session(USER, "session-1", _messages(3))

        assert added == 4
        rows = _chat_rows(vector_databases, "session-1")
        assert set(rows) == {
            "session-1:m0",
            "session-1:m1",
            "session-1:m2",
            "session-1:summary",
        }
        assert rows["session-1:m0"]["metadata"]["content_type"] == "userMessage"
        assert rows["session-1:m1"]["metadata"]["content_type"] == "assistantMessage"
        assert rows["session-1:m1"]["metadata"]["message_id"] == "m1"
        assert "message_id" not in rows["session-1:summary"]["metadata"]
        assert rows["session-1:summary"]["content"] == (
            "The user asked about Python packaging and testing."
        )
        # Everything lands in one batch
        assert len(vector_databases[USER].add_calls) == 1

    @pytest.mark.asyncio
    async def test_repeated_indexing_is_a_no_op(self, vector_search, vector_databases):
        """Test that indexing the same messages again adds nothing."""
        messages = _messages(3)
        await vector_search.index_chat_session(USER, "session-1", messages)

        added = await vector_search.index_chat_session(USER, "session-1", messages)

        assert added == 0
        assert len(_chat_rows(vector_databases, "session-1")) == 4
        assert len(vector_databases[USER].add_calls) == 1

    @pytest.mark.asyncio
    async def test_new_messages_replace_summary(
        self, vector_search, vector_databases, summary_provider
    ):
        """Test that new messages replace the summary."""
        messages = _messages(2)
        await vector_search.index_chat_session(USER, "session-1", messages)

        summary_provider.default = "Now also covers deployment."
        added = await vector_search.index_chat_session(USER, "session-1", _messages(3))

        assert added == 2
        rows = _chat_rows(vector_databases, "session-1")
        summaries = [
            row for row in rows.values()
            if row["metadata"]["content_type"] == ChatContentType.SESSION_SUMMARY.value
        ]
        assert len(summaries) == 1
        assert summaries[0]["content"] == "Now also covers deployment."
        assert len(rows) == 4

    @pytest.mark.asyncio
    async def test_system_messages_and_images_excluded(self, vector_search, vector_databases):
        """Test that system messages and images are not indexed."""
        messages = [
            ChatMessage(id="s0", role="system", content="You are helpful", timestamp=STARTED),
            ChatMessage(
                id="m1",
                role="user",
                content=[
                    TextPart(text="What is in"),
                    ImagePart(data="aW1n"),
                    TextPart(text="this?"),
                ],
                timestamp=STARTED,
            ),
            ChatMessage(
                id="m2",
                role="user",
                content=[ImagePart(data="aW1n")],
                timestamp=STARTED,
            ),
        ]

        await vector_search.index_chat_session(USER, "session-1", messages)

        rows = _chat_rows(vector_databases, "session-1")
        assert set(rows) == {"session-1:m1", "session-1:summary"}
        assert rows["session-1:m1"]["content"] == "What is in this?"
        assert all("aW1n" not in row["content"] for row in rows.values())

    @pytest.mark.asyncio
    async def test_only_system_messages(self, vector_search, vector_databases):
        """Test a session with only system messages."""
        messages = [ChatMessage(id="s0", role="system", content="x", timestamp=STARTED)]

        assert await vector_search.index_chat_session(USER, "session-1", messages) == 0
        assert vector_databases[USER].add_calls == []

    @pytest.mark.asyncio
    async def test_existing_documents_are_detected_by_a_new_manager(
        self, settings, embedder, database_factory, vector_search, vector_databases
    ):
        """Test that a new manager sees existing documents."""
        await vector_search.index_chat_session(USER, "session-1", _messages(3))

        fresh = VectorSearchManager(
            embedder=embedder,
            summary_provider=ScriptedLLMProvider(default="other summary"),
            database_factory=database_factory,
            settings=settings,
        )
        added = await fresh.index_chat_session(USER, "session-1", _messages(3))

        assert added == 0
        assert len(_chat_rows(vector_databases, "session-1")) == 4

    @pytest.mark.asyncio
    async def test_summary_falls_back_to_first_user_message(
        self, settings, embedder, database_factory, vector_databases
    ):
        """Test the summary fallback."""
        manager = VectorSearchManager(
            embedder=embedder,
            summary_provider=ScriptedLLMProvider([RuntimeError("provider down")]),
            database_factory=database_factory,
            settings=settings,
        )

        await manager.index_chat_session(USER, "session-1", _messages(2))

        summary = _chat_rows(vector_databases)["session-1:summary"]
        assert summary["content"] == "message 0 about python packaging"

    @pytest.mark.asyncio
    async def test_search_chat_history(self, vector_search):
        """Test searching chat history."""
        await vector_search.index_chat_session(USER, "session-1", _messages(3))

        results = await vector_search.search_chat_history(
            USER, "python packaging", content_types=[ChatContentType.SESSION_SUMMARY]
        )

        assert len(results) == 1
        assert isinstance(results[0], ChatSearchResult)
        assert results[0].session_id == "session-1"
        assert results[0].message_id is None

        messages_only = await vector_search.search_chat_history(
            USER,
            "message",
            content_types=[ChatContentType.USER_MESSAGE, ChatContentType.ASSISTANT_MESSAGE],
        )
        assert {r.message_id for r in messages_only} == {"m0", "m1", "m2"}

    @pytest.mark.asyncio
    async def test_delete_session_then_reindex(self, vector_search, vector_databases):
        """Test reindexing after deleting a session."""
        await vector_search.index_chat_session(USER, "session-1", _messages(2))
        await vector_search.index_chat_session(USER, "session-2", _messages(2, "n"))

        await vector_search.delete_chat_session_documents(USER, "session-1")
        assert _chat_rows(vector_databases, "session-1") == {}
        assert len(_chat_rows(vector_databases, "session-2")) == 3

        added = await vector_search.index_chat_session(USER, "session-1", _messages(2))
        assert added == 3

    @pytest.mark.asyncio
    async def test_delete_multiple_sessions(self, vector_search, vector_databases):
        """Test deleting several sessions."""
        for session_id in ("session-1", "session-2", "session-3"):
            await vector_search.index_chat_session(USER, session_id, _messages(1))

        await vector_search.delete_multiple_chat_sessions(USER, ["session-1", "session-3"])

        remaining = {row["metadata"]["session_id"] for row in _chat_rows(vector_databases).values()}
        assert remaining == {"session-2"}


class FakeHistory(ChatHistorySource):
    def __init__(self, sessions):
        self.sessions = sessions

    async def list_sessions(self, user_id):
        return [
            ChatSessionInfo(id=sid, message_count=len(msgs))
            for sid, msgs in self.sessions.items()
        ]

    async def get_session_messages(self, user_id, session_id):
        messages = self.sessions[session_id]
        if isinstance(messages, Exception):
            raise messages
        return messages


class TestReindex:
    """Test reindexing all chat sessions."""

    @pytest.mark.asyncio
    async def test_reindex_all_sessions(self, vector_search, vector_databases):
        """Test reindexing every session."""
        await vector_search.index_chat_session(USER, "session-1", _messages(2))
        history = FakeHistory(
            {
                "session-1": _messages(3),
                "session-2": _messages(2, "n"),
                "session-empty": [],
            }
        )

        added = await vector_search.reindex_all_chat_sessions(USER, history)

        # One new message plus a refreshed summary, then a whole new session
        assert added == 2 + 3
        sessions = {row["metadata"]["session_id"] for row in _chat_rows(vector_databases).values()}
        assert sessions == {"session-1", "session-2"}

    @pytest.mark.asyncio
    async def test_failing_session_does_not_stop_reindex(self, vector_search, vector_databases):
        """Test that one failing session does not stop the rest."""
        class BrokenHistory(FakeHistory):
            async def list_sessions(self, user_id):
                return [
                    ChatSessionInfo(id="broken", message_count=4),
                    ChatSessionInfo(id="ok", message_count=2),
                ]

        history = BrokenHistory({"broken": OSError("unreadable"), "ok": _messages(2)})

        added = await vector_search.reindex_all_chat_sessions(USER, history)

        assert added == 3
        assert set(_chat_rows(vector_databases)) == {"ok:m0", "ok:m1", "ok:summary"}


class TestScoring:
    """Test score helpers."""

    def test_score_decreases_with_distance(self):
        """Test that scores fall as distance grows."""
        assert distance_to_score(0.0) == 1.0
        assert distance_to_score(0.1) > distance_to_score(0.2) > distance_to_score(5.0) > 0

    def test_merge_by_best_score(self):
        """Test merging results by best score."""
        def hit(analysis_id, score):
            return ContentSearchResult(
                id=f"{analysis_id}:title",
                analysis_id=analysis_id,
                url="https://x.example",
                content_type="title",
                content="",
                timestamp=STARTED,
                score=score,
            )

        merged = merge_by_best_score(
            [hit("a", 0.4), hit("b", 0.7), hit("a", 0.9), hit("b", 0.1)],
            key=lambda r: r.analysis_id,
        )

        assert [(r.analysis_id, r.score) for r in merged] == [("a", 0.9), ("b", 0.7)]


class TestHealth:
    """Test health checks and teardown."""

    @pytest.mark.asyncio
    async def test_health_check(self, vector_search):
        """Test the health check."""
        await vector_search.ensure_initialized(USER)

        health = await vector_search.health_check()

        assert health == {"vector_database": True, "summary_provider": True, "overall": True}

    @pytest.mark.asyncio
    async def test_destroy_resets_state(self, vector_search):
        """Test that destroy resets state."""
        await vector_search.ensure_initialized(USER)
        await vector_search.destroy()

        assert vector_search.db is None
        assert vector_search.current_user_id is None
        assert (await vector_search.health_check())["overall"] is False
