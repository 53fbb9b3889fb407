"""Chat session helpers: summaries and the source of stored sessions."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from pagelens.embedding.models import ChatMessage, ChatSessionInfo
from pagelens.llm.base import LLMProvider, extract_text

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 30000
MAX_MESSAGE_CHARS = 1000
RECENT_MESSAGES = 4
FALLBACK_SUMMARY_CHARS = 200
DEFAULT_SUMMARY = "Chat session"
SUMMARY_MAX_WORDS = 60


class ChatHistorySource(ABC):
    """Read access to a user's stored chat sessions."""

    @abstractmethod
    async def list_sessions(self, user_id: str) -> list[ChatSessionInfo]:
        pass

    @abstractmethod
    async def get_session_messages(self, user_id: str, session_id: str) -> list[ChatMessage]:
        pass


def build_summary_transcript(messages: Sequence[ChatMessage]) -> str:
    """Format messages as ``role: text`` blocks, shortened to fit a summary prompt.

    Images are dropped. When the full transcript is too long only the first
    message and the most recent few are kept, each cut to a fixed length.
    """
    lines = [(m.role, extract_text(m.content)) for m in messages]
    transcript = "\n\n".join(f"{role}: {text}" for role, text in lines)
    if len(transcript) <= MAX_TRANSCRIPT_CHARS:
        return transcript

    logger.info(f"Conversation too long ({len(transcript)} chars), truncating")
    kept = lines[-RECENT_MESSAGES:]
    if len(lines) > RECENT_MESSAGES:
        kept = [lines[0], *kept]

    def shorten(text: str) -> str:
        if len(text) > MAX_MESSAGE_CHARS:
            return text[:MAX_MESSAGE_CHARS] + "..."
        return text

    return "\n\n".join(f"{role}: {shorten(text)}" for role, text in kept)


def fallback_summary(messages: Sequence[ChatMessage]) -> str:
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return DEFAULT_SUMMARY
    return extract_text(first_user.content)[:FALLBACK_SUMMARY_CHARS] or DEFAULT_SUMMARY


async def generate_chat_summary(
    provider: LLMProvider | None, messages: Sequence[ChatMessage]
) -> str:
    """Summarize a conversation, falling back to its opening user message."""
    if provider is None:
        return fallback_summary(messages)

    try:
        result = await provider.summarize(
            build_summary_transcript(messages), max_length=SUMMARY_MAX_WORDS
        )
    except Exception as e:
        logger.error(f"Failed to generate chat summary: {e}")
        return fallback_summary(messages)

    summary = result.content.strip()
    return summary or fallback_summary(messages)
