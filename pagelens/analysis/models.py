"""Data models for page capture, the analysis queue and analysis results."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Heading(BaseModel):
    level: int
    text: str


class Link(BaseModel):
    text: str
    href: str


class ExtractedText(BaseModel):
    """Structured text pulled out of a rendered page."""

    title: str = ""
    meta_description: str | None = None
    headings: list[Heading] = Field(default_factory=list)
    paragraphs: list[str] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)
    full_text: str = ""
    text_length: int = 0


class ScrollPosition(BaseModel):
    x: float = 0
    y: float = 0


class ScreenshotMetadata(BaseModel):
    """Viewport state at the moment a screenshot was taken."""

    viewport_width: int = 0
    viewport_height: int = 0
    document_height: int = 0
    scroll_position: ScrollPosition = Field(default_factory=ScrollPosition)
    zoom_factor: float = 1.0
    captured_at: datetime = Field(default_factory=utcnow)


class QueueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"


class AnalysisQueueItem(BaseModel):
    """One pending unit of analysis work."""

    queue_id: str
    activity_id: str
    user_id: str
    url: str
    history_entry_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    fingerprint: str | None = None
    # Visits with the same fingerprint that arrived while this item was queued
    linked_activity_ids: list[str] = Field(default_factory=list)


class AnalysisStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ContentAnalysisResult(BaseModel):
    """Durable output of analyzing one distinct page fingerprint."""

    analysis_id: str
    activity_ids: list[str]
    user_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    url: str

    # Text-based extractions
    page_description: str = ""
    raw_text: ExtractedText = Field(default_factory=ExtractedText)
    html_hash: str = ""

    # Visual analysis
    screenshot_description: str = ""
    screenshot_path: str = ""
    screenshot_hash: str = ""
    screenshot_metadata: ScreenshotMetadata = Field(default_factory=ScreenshotMetadata)

    # Categorization
    category: str = "other"
    subcategory: str = ""
    brand: str = ""

    # Language detection
    languages: list[str] = Field(default_factory=list)
    primary_language: str = ""

    # Analysis metadata
    analysis_status: AnalysisStatus
    model_used: str
    tokens_used: int | None = None
    analysis_time: int = 0  # milliseconds
    error: str | None = None
    llm_interaction_id: str | None = None


class LLMAnalysisResponse(BaseModel):
    """Structured answer expected from the model, keyed in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    page_description: str
    screenshot_description: str
    languages: list[str]
    primary_language: str
    category: str
    subcategory: str
    brand: str


class PendingExtraction(BaseModel):
    """Capture data held between enqueue and analysis of one activity."""

    activity_id: str
    html_hash: str
    screenshot_hash: str
    extracted_text: ExtractedText
    screenshot_metadata: ScreenshotMetadata


class ExchangeRecord(BaseModel):
    """One request/response round trip with the provider."""

    kind: str  # "initial" | "correction"
    raw_response: str = ""
    parse_error: str | None = None
    response_time: int = 0  # milliseconds
    success: bool = False


class LLMDebugLog(BaseModel):
    interaction_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    analysis_id: str
    activity_id: str
    user_id: str
    model: str
    prompt: str = ""
    screenshot_path: str = ""
    exchanges: list[ExchangeRecord] = Field(default_factory=list)
    parsed_response: LLMAnalysisResponse | None = None
    response_time: int = 0
    retry_attempt: int = 0
    success: bool = False
    error: str | None = None


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"
