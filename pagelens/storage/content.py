"""Storage for content analysis data.

Handles several kinds of per-user data:
- Content analyses (one JSON file per analysis, plus the fingerprint index)
- Screenshots (PNG files named by activity ID)
- Raw HTML (stored by content hash, written once)
- LLM debug logs (one JSON-lines file per day)
"""

import logging
from datetime import date, datetime, timezone
from pathlib import Path

from pagelens.analysis.models import ContentAnalysisResult, LLMDebugLog
from pagelens.storage.base import BaseStorage

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"


class ContentStorage(BaseStorage):
    """File-backed analysis store keyed by user."""

    def _analysis_dir(self, user_id: str) -> Path:
        return self.user_data_path(user_id) / "content-analysis"

    def _analysis_path(self, user_id: str, analysis_id: str) -> Path:
        return self._analysis_dir(user_id) / f"{analysis_id}.json"

    def _index_path(self, user_id: str) -> Path:
        return self._analysis_dir(user_id) / INDEX_FILE

    def _history_links_path(self, user_id: str) -> Path:
        return self.user_data_path(user_id) / "history-links.json"

    def _screenshots_dir(self, user_id: str) -> Path:
        return self.user_data_path(user_id) / "screenshots"

    def _raw_html_dir(self, user_id: str) -> Path:
        return self.user_data_path(user_id) / "raw-html"

    def _debug_logs_dir(self, user_id: str) -> Path:
        return self.user_data_path(user_id) / "llm-debug-logs"

    # ------------------------------------------------------------------
    # Content analyses
    # ------------------------------------------------------------------

    async def save_content_analysis(self, user_id: str, analysis: ContentAnalysisResult) -> None:
        await self.write_text(
            self._analysis_path(user_id, analysis.analysis_id),
            analysis.model_dump_json(indent=2),
        )
        logger.info(f"Saved content analysis {analysis.analysis_id} for user {user_id}")

    async def get_content_analysis(
        self, user_id: str, analysis_id: str
    ) -> ContentAnalysisResult | None:
        text = await self.read_text(self._analysis_path(user_id, analysis_id))
        if text is None:
            return None
        return ContentAnalysisResult.model_validate_json(text)

    async def get_all_content_analyses(self, user_id: str) -> list[ContentAnalysisResult]:
        analyses = []
        for path in await self.list_files(self._analysis_dir(user_id), ".json"):
            if path.name == INDEX_FILE:
                continue
            text = await self.read_text(path)
            if text:
                analyses.append(ContentAnalysisResult.model_validate_json(text))
        return analyses

    async def get_analysis_by_activity(
        self, user_id: str, activity_id: str
    ) -> ContentAnalysisResult | None:
        for analysis in await self.get_all_content_analyses(user_id):
            if activity_id in analysis.activity_ids:
                return analysis
        return None

    async def get_analysis_ids_for_url(self, user_id: str, url: str) -> list[str]:
        return [a.analysis_id for a in await self.get_all_content_analyses(user_id) if a.url == url]

    async def link_activity_to_analysis(
        self, user_id: str, activity_id: str, analysis_id: str
    ) -> None:
        """Append an activity to an existing analysis. No-op if already linked.

        Raises:
            KeyError: If the analysis does not exist
        """
        analysis = await self.get_content_analysis(user_id, analysis_id)
        if analysis is None:
            raise KeyError(f"Analysis {analysis_id} not found")

        if activity_id in analysis.activity_ids:
            return

        analysis.activity_ids.append(activity_id)
        await self.save_content_analysis(user_id, analysis)
        logger.info(f"Linked activity {activity_id} to analysis {analysis_id}")

    # ------------------------------------------------------------------
    # Fingerprint index
    # ------------------------------------------------------------------

    async def get_analysis_index(self, user_id: str) -> dict[str, str]:
        return await self.read_json(self._index_path(user_id), default={})

    async def update_analysis_index(self, user_id: str, key: str, analysis_id: str) -> None:
        index = await self.get_analysis_index(user_id)
        index[key] = analysis_id
        await self.write_json(self._index_path(user_id), index)

    async def link_history_to_analysis(
        self, user_id: str, history_entry_id: str, analysis_id: str
    ) -> None:
        path = self._history_links_path(user_id)
        links = await self.read_json(path, default={})
        links[history_entry_id] = analysis_id
        await self.write_json(path, links)

    async def get_history_links(self, user_id: str) -> dict[str, str]:
        return await self.read_json(self._history_links_path(user_id), default={})

    # ------------------------------------------------------------------
    # Screenshots and raw HTML
    # ------------------------------------------------------------------

    def screenshot_relative_path(self, activity_id: str) -> str:
        return f"screenshots/{activity_id}.png"

    async def save_screenshot(self, user_id: str, activity_id: str, image: bytes) -> Path:
        path = self._screenshots_dir(user_id) / f"{activity_id}.png"
        await self.write_bytes(path, image)
        return path

    async def get_screenshot(self, user_id: str, activity_id: str) -> bytes | None:
        return await self.read_bytes(self._screenshots_dir(user_id) / f"{activity_id}.png")

    async def save_raw_html(self, user_id: str, html_hash: str, html: str) -> Path:
        """Store HTML under its content hash; identical markup is stored once."""
        path = self._raw_html_dir(user_id) / f"{html_hash}.html"
        if path.exists():
            logger.debug(f"HTML already stored for hash {html_hash}")
        else:
            await self.write_text(path, html)
        return path

    async def get_raw_html(self, user_id: str, html_hash: str) -> str | None:
        return await self.read_text(self._raw_html_dir(user_id) / f"{html_hash}.html")

    # ------------------------------------------------------------------
    # LLM debug logs
    # ------------------------------------------------------------------

    async def save_llm_debug_log(self, user_id: str, log: LLMDebugLog) -> None:
        """Append a debug log record. Failures are logged, never raised."""
        day = log.timestamp.astimezone(timezone.utc).date().isoformat()
        path = self._debug_logs_dir(user_id) / f"{day}.jsonl"
        try:
            await self.append_line(path, log.model_dump_json())
        except OSError as e:
            logger.error(f"Failed to save LLM debug log {log.interaction_id}: {e}")

    async def get_llm_debug_logs(self, user_id: str, day: date | None = None) -> list[LLMDebugLog]:
        day = day or datetime.now(timezone.utc).date()
        text = await self.read_text(self._debug_logs_dir(user_id) / f"{day.isoformat()}.jsonl")
        if not text:
            return []
        return [LLMDebugLog.model_validate_json(line) for line in text.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_storage_size(self, user_id: str) -> dict[str, int]:
        """Bytes used per storage area."""
        sizes = {
            "analyses": await self.directory_size(self._analysis_dir(user_id)),
            "screenshots": await self.directory_size(self._screenshots_dir(user_id)),
            "raw_html": await self.directory_size(self._raw_html_dir(user_id)),
            "debug_logs": await self.directory_size(self._debug_logs_dir(user_id)),
        }
        sizes["total"] = sum(sizes.values())
        return sizes
