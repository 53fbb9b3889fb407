"""Shared vocabulary of high-level content categories."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from pagelens.analysis.models import utcnow
from pagelens.config import Settings, get_settings
from pagelens.storage.base import BaseStorage

logger = logging.getLogger(__name__)

SEED_CATEGORIES = [
    "banking",
    "news",
    "e-commerce",
    "social-media",
    "education",
    "entertainment",
    "health",
    "travel",
    "food-delivery",
    "government",
]
MAX_EXAMPLES = 10
CLEANUP_MIN_COUNT = 3
CLEANUP_MAX_IDLE = timedelta(days=182)


class CategoryRegistry(ABC):
    """Source of example categories and sink for observed ones."""

    @abstractmethod
    def get_example_categories(self) -> list[str]:
        """Return a representative sample of categories for prompting."""
        pass

    @abstractmethod
    async def record_category_use(self, category: str) -> None:
        """Record that an analysis produced ``category``."""
        pass


class Category(BaseModel):
    name: str
    count: int = 1
    first_seen: datetime = Field(default_factory=utcnow)
    last_used: datetime = Field(default_factory=utcnow)


class CategoryFile(BaseModel):
    version: int = 1
    last_updated: datetime = Field(default_factory=utcnow)
    categories: list[Category] = Field(default_factory=list)


class CategoryManager(CategoryRegistry, BaseStorage):
    """Category registry persisted to a single JSON file."""

    def __init__(self, settings: Settings | None = None):
        super().__init__(settings or get_settings())
        self.path = self.settings.categories_path
        self.max_categories = self.settings.max_categories
        self.categories: dict[str, Category] = {}
        self.is_loaded = False

    async def load(self) -> None:
        text = await self.read_text(self.path)
        self.categories.clear()
        if text is None:
            logger.info("No existing categories file, starting fresh")
        else:
            data = CategoryFile.model_validate_json(text)
            for category in data.categories:
                self.categories[category.name.lower()] = category
            logger.info(f"Loaded {len(self.categories)} categories")
        self.is_loaded = True

    async def save(self) -> None:
        data = CategoryFile(categories=list(self.categories.values()))
        await self.write_text(self.path, data.model_dump_json(indent=2))

    def get_category_names(self) -> list[str]:
        return sorted(self.categories)

    def get_example_categories(self) -> list[str]:
        """Seed categories already in use, topped up with the most used ones."""
        existing = [name for name in SEED_CATEGORIES if name in self.categories]
        if len(existing) >= 5:
            return existing

        top = sorted(self.categories.values(), key=lambda c: c.count, reverse=True)
        extra = [c.name for c in top if c.name not in existing]
        examples = (existing + extra)[:MAX_EXAMPLES]
        # An empty registry still needs something to steer the model
        return examples or list(SEED_CATEGORIES)

    async def record_category_use(self, category: str) -> None:
        if not self.is_loaded:
            await self.load()

        normalized = category.lower().strip()
        if not normalized or normalized == "other":
            return

        existing = self.categories.get(normalized)
        if existing:
            existing.count += 1
            existing.last_used = utcnow()
        elif len(self.categories) >= self.max_categories:
            logger.warning(
                f"Max categories ({self.max_categories}) reached, not adding '{normalized}'"
            )
            return
        else:
            self.categories[normalized] = Category(name=normalized)
            logger.info(
                f"Added new category '{normalized}' "
                f"({len(self.categories)}/{self.max_categories})"
            )

        await self.save()

    def is_at_limit(self) -> bool:
        return len(self.categories) >= self.max_categories

    def get_statistics(self) -> dict:
        by_count = sorted(self.categories.values(), key=lambda c: c.count, reverse=True)
        by_recent = sorted(self.categories.values(), key=lambda c: c.last_used, reverse=True)
        return {
            "total": len(self.categories),
            "max_allowed": self.max_categories,
            "most_used": [{"name": c.name, "count": c.count} for c in by_count[:10]],
            "recently_used": [{"name": c.name, "last_used": c.last_used} for c in by_recent[:10]],
        }

    async def cleanup(self) -> int:
        """Drop rarely used categories that have been idle for about six months."""
        if not self.is_loaded:
            await self.load()

        cutoff = utcnow() - CLEANUP_MAX_IDLE
        stale = [
            name
            for name, c in self.categories.items()
            if c.count < CLEANUP_MIN_COUNT and c.last_used < cutoff
        ]
        for name in stale:
            del self.categories[name]

        if stale:
            logger.info(f"Cleaned up {len(stale)} unused categories")
            await self.save()
        return len(stale)
