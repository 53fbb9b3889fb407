"""Page capture interface and content fingerprinting helpers."""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from pagelens.analysis.models import ExtractedText, ScreenshotMetadata


@dataclass
class ScreenshotCapture:
    """PNG bytes of a page screenshot plus the viewport state."""

    image_bytes: bytes
    metadata: ScreenshotMetadata = field(default_factory=ScreenshotMetadata)


class CaptureSource(ABC):
    """Supplies the content of one page visit."""

    history_entry_id: str | None = None

    @abstractmethod
    async def get_html(self) -> str:
        """Return the page's serialized HTML."""
        pass

    @abstractmethod
    async def extract_structured_text(self) -> ExtractedText:
        """Return title, headings, paragraphs, links and full text."""
        pass

    @abstractmethod
    async def get_screenshot_with_metadata(self) -> ScreenshotCapture:
        """Return a screenshot of the visible page."""
        pass


class StaticCaptureSource(CaptureSource):
    """Capture source over values that were already captured."""

    def __init__(
        self,
        html: str,
        extracted_text: ExtractedText,
        screenshot: ScreenshotCapture,
        history_entry_id: str | None = None,
    ):
        self.html = html
        self.extracted_text = extracted_text
        self.screenshot = screenshot
        self.history_entry_id = history_entry_id

    async def get_html(self) -> str:
        return self.html

    async def extract_structured_text(self) -> ExtractedText:
        return self.extracted_text

    async def get_screenshot_with_metadata(self) -> ScreenshotCapture:
        return self.screenshot


def compute_hash(data: str | bytes) -> str:
    """SHA-256 hex digest of text (UTF-8 encoded) or raw bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def fingerprint_key(url: str, html_hash: str, screenshot_hash: str) -> str:
    return f"{url}:{html_hash}:{screenshot_hash}"


def is_url_blacklisted(url: str, blacklist: list[str]) -> bool:
    """Exact match, or prefix match for scheme entries like ``chrome://``."""
    if url in blacklist:
        return True
    return any(entry.endswith("://") and url.startswith(entry) for entry in blacklist)
