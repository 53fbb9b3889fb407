"""Persistent ordered queue of pending analysis work."""

import logging
from datetime import datetime
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from pagelens.analysis.models import AnalysisQueueItem, QueueStatus
from pagelens.storage.base import BaseStorage

logger = logging.getLogger(__name__)

_items_adapter = TypeAdapter(list[AnalysisQueueItem])


class AnalysisQueue(BaseStorage):
    """Queue items in insertion order, mirrored to a JSON file on every change.

    Owned by a single worker. Producers only append; the worker reads the
    current list each time it picks an item.
    """

    def __init__(self, path: Path | None = None, settings=None):
        super().__init__(settings)
        self.path = path or self.settings.queue_path
        self.items: list[AnalysisQueueItem] = []

    def __len__(self) -> int:
        return len(self.items)

    async def load(self) -> None:
        text = await self.read_text(self.path)
        if text is None:
            logger.info("No existing queue file, starting fresh")
            self.items = []
            return

        try:
            self.items = _items_adapter.validate_json(text)
        except ValidationError as e:
            logger.error(f"Corrupt queue file {self.path}, starting fresh: {e}")
            self.items = []
            return

        interrupted = [i for i in self.items if i.status == QueueStatus.IN_PROGRESS]
        for item in interrupted:
            item.status = QueueStatus.PENDING
        if interrupted:
            logger.warning(f"Reset {len(interrupted)} interrupted queue items to pending")
            await self.save()
        logger.info(f"Loaded {len(self.items)} items from queue")

    async def save(self) -> None:
        await self.write_bytes(self.path, _items_adapter.dump_json(self.items, indent=2))

    async def add(self, item: AnalysisQueueItem) -> None:
        self.items.append(item)
        await self.save()
        logger.info(f"Added to queue - {item.url} ({len(self.items)} items)")

    async def remove(self, queue_id: str) -> None:
        self.items = [i for i in self.items if i.queue_id != queue_id]
        await self.save()

    def get(self, queue_id: str) -> AnalysisQueueItem | None:
        return next((i for i in self.items if i.queue_id == queue_id), None)

    def next_pending(self, now: datetime) -> AnalysisQueueItem | None:
        """First pending item whose backoff, if any, has elapsed."""
        for item in self.items:
            if item.status != QueueStatus.PENDING:
                continue
            if item.next_attempt_at is not None and item.next_attempt_at > now:
                continue
            return item
        return None

    def is_idle(self) -> bool:
        return not any(i.status == QueueStatus.IN_PROGRESS for i in self.items)
