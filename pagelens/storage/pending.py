"""Holding area for capture data between enqueue and analysis."""

import logging
from pathlib import Path

from pagelens.analysis.models import PendingExtraction
from pagelens.storage.base import BaseStorage

logger = logging.getLogger(__name__)


class PendingExtractionStore(BaseStorage):
    """Key-value side store of extraction data keyed by activity ID.

    Entries are created on enqueue and deleted explicitly by the worker once
    the queue item reaches a terminal state. Nothing expires on its own.
    """

    def _path(self, activity_id: str) -> Path:
        return self.settings.pending_extractions_dir / f"{activity_id}.json"

    async def save(self, extraction: PendingExtraction) -> None:
        await self.write_text(self._path(extraction.activity_id), extraction.model_dump_json())

    async def load(self, activity_id: str) -> PendingExtraction | None:
        text = await self.read_text(self._path(activity_id))
        if text is None:
            return None
        return PendingExtraction.model_validate_json(text)

    async def delete(self, activity_id: str) -> None:
        await self.delete_file(self._path(activity_id))
        logger.debug(f"Discarded pending extraction for activity {activity_id}")
