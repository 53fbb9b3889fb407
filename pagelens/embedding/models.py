"""Documents stored in the vector index and the results returned from it."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

from pagelens.llm.base import MessageContent


class ContentType(str, Enum):
    """Which analysis field a content document was embedded from."""

    PAGE_DESCRIPTION = "pageDescription"
    TITLE = "title"
    META_DESCRIPTION = "metaDescription"
    SCREENSHOT_DESCRIPTION = "screenshotDescription"


class ChatContentType(str, Enum):
    USER_MESSAGE = "userMessage"
    ASSISTANT_MESSAGE = "assistantMessage"
    SESSION_SUMMARY = "sessionSummary"


class ChatMessage(BaseModel):
    """A stored chat message; content is plain text or structured parts."""

    id: str
    role: Literal["user", "assistant", "system"]
    content: MessageContent
    timestamp: datetime


@dataclass
class IndexedDocument:
    """One embedded analysis field."""

    id: str
    analysis_id: str
    user_id: str
    url: str
    content_type: ContentType
    content: str
    timestamp: datetime
    vector: list[float] = field(default_factory=list)

    def metadata(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "user_id": self.user_id,
            "url": self.url,
            "content_type": self.content_type.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class IndexedChatDocument:
    """One embedded chat message or session summary."""

    id: str
    session_id: str
    user_id: str
    content_type: ChatContentType
    content: str
    timestamp: datetime
    message_id: str | None = None
    vector: list[float] = field(default_factory=list)

    def metadata(self) -> dict[str, Any]:
        metadata = {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "content_type": self.content_type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        # Vector store metadata cannot hold nulls
        if self.message_id is not None:
            metadata["message_id"] = self.message_id
        return metadata


@dataclass
class ContentSearchResult:
    id: str
    analysis_id: str
    url: str
    content_type: str
    content: str
    timestamp: datetime
    score: float


@dataclass
class ChatSearchResult:
    id: str
    session_id: str
    content_type: str
    content: str
    timestamp: datetime
    score: float
    message_id: str | None = None


@dataclass
class SessionIndexState:
    """What is already indexed for one chat session."""

    message_ids: set[str] = field(default_factory=set)
    has_summary: bool = False


@dataclass
class ChatSessionInfo:
    id: str
    message_count: int
