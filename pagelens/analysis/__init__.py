"""Page analysis: capture, deduplication, queueing and LLM analysis."""

from .models import (
    AnalysisQueueItem,
    AnalysisStatus,
    ContentAnalysisResult,
    ExtractedText,
    LLMAnalysisResponse,
    QueueStatus,
    ScreenshotMetadata,
)
from .capture import (
    CaptureSource,
    StaticCaptureSource,
    compute_hash,
    fingerprint_key,
    is_url_blacklisted,
)
from .categories import CategoryManager, CategoryRegistry
from .queue import AnalysisQueue

__all__ = [
    "AnalysisQueue",
    "AnalysisQueueItem",
    "AnalysisStatus",
    "CaptureSource",
    "CategoryManager",
    "CategoryRegistry",
    "ContentAnalysisResult",
    "ExtractedText",
    "LLMAnalysisResponse",
    "QueueStatus",
    "ScreenshotMetadata",
    "StaticCaptureSource",
    "compute_hash",
    "fingerprint_key",
    "is_url_blacklisted",
]
