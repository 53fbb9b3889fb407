"""File-backed persistence for analyses, blobs and pending work."""

from .content import ContentStorage
from .pending import PendingExtractionStore

__all__ = ["ContentStorage", "PendingExtractionStore"]
