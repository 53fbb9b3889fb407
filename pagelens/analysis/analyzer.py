"""Turns page visits into stored content analyses.

A page visit is fingerprinted by ``url:htmlHash:screenshotHash``. Known
fingerprints are linked to their existing analysis; new ones are captured to
disk and queued. A single worker drains the queue one item at a time, asks the
LLM for a structured analysis of the screenshot and extracted text, stores the
result and hands the text fields to the vector index.
"""

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from pagelens.analysis.capture import (
    CaptureSource,
    compute_hash,
    fingerprint_key,
    is_url_blacklisted,
)
from pagelens.analysis.categories import CategoryRegistry
from pagelens.analysis.models import (
    AnalysisQueueItem,
    AnalysisStatus,
    ContentAnalysisResult,
    ExchangeRecord,
    LLMAnalysisResponse,
    LLMDebugLog,
    PendingExtraction,
    QueueStatus,
    generate_id,
    utcnow,
)
from pagelens.analysis.prompts import (
    RETRY_PROMPT,
    AnalysisParseError,
    build_analysis_prompt,
    parse_analysis_response,
)
from pagelens.analysis.queue import AnalysisQueue
from pagelens.config import Settings, get_settings
from pagelens.embedding.models import ContentType
from pagelens.embedding.search import VectorSearchManager
from pagelens.llm.base import ChatTurn, ImagePart, LLMProvider, TextPart, is_rate_limit_error
from pagelens.storage import ContentStorage, PendingExtractionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AnalysisError(RuntimeError):
    """An analysis attempt could not produce a result."""


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ContentAnalyzer:
    """Analysis queue producer and its single consumer."""

    def __init__(
        self,
        storage: ContentStorage,
        pending_store: PendingExtractionStore,
        queue: AnalysisQueue,
        categories: CategoryRegistry,
        llm_provider: LLMProvider,
        vector_search: VectorSearchManager | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the analyzer.

        Args:
            storage: Per-user analysis store
            pending_store: Holding area for capture data awaiting analysis
            queue: Persistent work queue
            categories: Category vocabulary used for prompting
            llm_provider: Multimodal provider used for analysis
            vector_search: Vector index fed with completed analyses
            settings: Application settings (global settings if None)
            clock: Source of the current time, used for backoff scheduling
        """
        self.settings = settings or get_settings()
        self.storage = storage
        self.pending_store = pending_store
        self.queue = queue
        self.categories = categories
        self.llm_provider = llm_provider
        self.vector_search = vector_search
        self.clock = clock
        self.max_retries = self.settings.analysis_max_retries

        self._processing = False
        self._running = False
        self._wake_event = asyncio.Event()
        self._worker_task: asyncio.Task | None = None
        self._reservations: dict[tuple[str, str], list[str]] = {}

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the persisted queue and start the background worker."""
        if self._worker_task is not None:
            return
        await self.queue.load()
        self._running = True
        self._worker_task = asyncio.create_task(self._run_worker(), name="content-analyzer")
        logger.info(f"Content analyzer started with {len(self.queue)} queued items")

    async def stop(self) -> None:
        """Stop after the item in progress, if any, has finished."""
        if self._worker_task is None:
            return
        self._running = False
        self.wake()
        await self._worker_task
        self._worker_task = None

    async def destroy(self) -> None:
        await self.stop()
        await self.queue.save()
        logger.info("Content analyzer stopped")

    def wake(self) -> None:
        self._wake_event.set()

    async def _run_worker(self) -> None:
        while self._running:
            self._wake_event.clear()
            try:
                while self._running and await self.process_next():
                    pass
            except Exception:
                logger.exception("Analysis worker iteration failed")

            try:
                await asyncio.wait_for(
                    self._wake_event.wait(), timeout=self.settings.queue_poll_interval
                )
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Page visits
    # ------------------------------------------------------------------

    async def on_page_visit(
        self,
        activity_id: str,
        url: str,
        user_id: str,
        capture: CaptureSource,
        history_entry_id: str | None = None,
    ) -> None:
        """Queue a visited page for analysis unless its content is already known.

        Never raises; failures are logged so browsing is never interrupted.
        """
        try:
            await self._handle_page_visit(activity_id, url, user_id, capture, history_entry_id)
        except Exception:
            logger.exception(f"Error handling page visit for {url}")

    async def _handle_page_visit(
        self,
        activity_id: str,
        url: str,
        user_id: str,
        capture: CaptureSource,
        history_entry_id: str | None,
    ) -> None:
        if is_url_blacklisted(url, self.settings.url_blacklist):
            logger.debug(f"URL blacklisted, skipping analysis - {url}")
            return

        try:
            html = await self._with_capture_timeout(capture.get_html())
            if not html:
                logger.info(f"No HTML content, skipping analysis - {url}")
                return
            extracted_text = await self._with_capture_timeout(capture.extract_structured_text())
            screenshot = await self._with_capture_timeout(capture.get_screenshot_with_metadata())
        except asyncio.TimeoutError:
            logger.warning(f"Timed out capturing page content, skipping analysis - {url}")
            return

        html_hash = compute_hash(html)
        screenshot_hash = compute_hash(screenshot.image_bytes)
        key = fingerprint_key(url, html_hash, screenshot_hash)

        index = await self.storage.get_analysis_index(user_id)
        existing_analysis_id = index.get(key)
        if existing_analysis_id:
            try:
                await self.storage.link_activity_to_analysis(
                    user_id, activity_id, existing_analysis_id
                )
            except KeyError:
                logger.warning(
                    f"Indexed analysis {existing_analysis_id} is missing, re-analyzing {url}"
                )
            else:
                logger.info(f"Reusing existing analysis {existing_analysis_id} for {url}")
                return

        queued = next(
            (i for i in self.queue.items if i.user_id == user_id and i.fingerprint == key),
            None,
        )
        if queued is not None:
            if activity_id != queued.activity_id and activity_id not in queued.linked_activity_ids:
                queued.linked_activity_ids.append(activity_id)
                await self.queue.save()
            logger.info(f"Same content already queued as {queued.queue_id} for {url}")
            return

        # Visits with the same content that arrive while this one is being
        # written to disk wait in the reservation and are linked to its item.
        reservation = (user_id, key)
        waiting = self._reservations.get(reservation)
        if waiting is not None:
            if activity_id not in waiting:
                waiting.append(activity_id)
            logger.info(f"Same content is being queued, linking {activity_id} for {url}")
            return
        self._reservations[reservation] = []

        try:
            await self.storage.save_screenshot(user_id, activity_id, screenshot.image_bytes)
            await self.storage.save_raw_html(user_id, html_hash, html)
            await self.pending_store.save(
                PendingExtraction(
                    activity_id=activity_id,
                    html_hash=html_hash,
                    screenshot_hash=screenshot_hash,
                    extracted_text=extracted_text,
                    screenshot_metadata=screenshot.metadata,
                )
            )

            item = AnalysisQueueItem(
                queue_id=generate_id("queue"),
                activity_id=activity_id,
                user_id=user_id,
                url=url,
                history_entry_id=history_entry_id or capture.history_entry_id,
                fingerprint=key,
            )
            item.linked_activity_ids.extend(
                a for a in self._reservations[reservation] if a != activity_id
            )
            await self.queue.add(item)
        finally:
            del self._reservations[reservation]

        if not self._processing:
            self.wake()

    async def _with_capture_timeout(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.settings.capture_timeout)

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    async def process_next(self) -> bool:
        """Process the next ready queue item.

        Returns:
            True if an item was processed, False if none was ready or an item
            is already in progress
        """
        if self._processing:
            return False

        item = self.queue.next_pending(self.clock())
        if item is None:
            return False

        self._processing = True
        try:
            item.status = QueueStatus.IN_PROGRESS
            await self.queue.save()
            logger.info(f"Processing {item.url} (attempt {item.retry_count + 1})")

            started = time.monotonic()
            try:
                await self._perform_analysis(item)
            except Exception as e:
                logger.error(f"Analysis failed for {item.url}: {e}")
                await self._handle_failure(item, e, _elapsed_ms(started))
            else:
                await self.queue.remove(item.queue_id)
        finally:
            self._processing = False
        return True

    @staticmethod
    def backoff_delay(retry_count: int) -> float:
        """Seconds to wait before retrying a rate-limited item."""
        return float(2**retry_count)

    async def _handle_failure(
        self, item: AnalysisQueueItem, error: Exception, analysis_time: int
    ) -> None:
        item.retry_count += 1
        item.last_error = str(error)
        item.status = QueueStatus.PENDING

        if item.retry_count >= self.max_retries:
            logger.error(f"Max retries reached for {item.url}")
            result = await self._save_failed_result(item, str(error), analysis_time)
            await self.pending_store.delete(item.activity_id)
            await self._link_late_activities(item, result)
            await self.queue.remove(item.queue_id)
            return

        if is_rate_limit_error(error):
            delay = self.backoff_delay(item.retry_count)
            item.next_attempt_at = self.clock() + timedelta(seconds=delay)
            logger.warning(f"Rate limited, retrying {item.url} in {delay:.0f}s")
        else:
            item.next_attempt_at = None

        await self.queue.save()

    async def _perform_analysis(self, item: AnalysisQueueItem) -> None:
        started = time.monotonic()
        analysis_id = generate_id("analysis")
        screenshot_path = self.storage.screenshot_relative_path(item.activity_id)
        debug_log = LLMDebugLog(
            interaction_id=generate_id("llm"),
            analysis_id=analysis_id,
            activity_id=item.activity_id,
            user_id=item.user_id,
            model=self.llm_provider.model_name,
            screenshot_path=screenshot_path,
            retry_attempt=item.retry_count,
        )

        try:
            extraction = await self.pending_store.load(item.activity_id)
            if extraction is None:
                raise AnalysisError(
                    "Pending extraction data not found - page data may have been lost"
                )

            screenshot = await self.storage.get_screenshot(item.user_id, item.activity_id)
            if screenshot is None:
                raise AnalysisError("Screenshot not found")

            prompt = build_analysis_prompt(
                item.url,
                extraction.extracted_text,
                self.categories.get_example_categories(),
                self.settings.analysis_text_limit,
            )
            debug_log.prompt = prompt
            image = ImagePart(data=base64.b64encode(screenshot).decode("ascii"))

            response, tokens_used = await self._request_analysis(
                prompt, image, debug_log.exchanges
            )
            analysis_time = _elapsed_ms(started)

            await self.categories.record_category_use(response.category)

            result = ContentAnalysisResult(
                analysis_id=analysis_id,
                activity_ids=[item.activity_id, *item.linked_activity_ids],
                user_id=item.user_id,
                url=item.url,
                page_description=response.page_description,
                raw_text=extraction.extracted_text,
                html_hash=extraction.html_hash,
                screenshot_description=response.screenshot_description,
                screenshot_path=screenshot_path,
                screenshot_hash=extraction.screenshot_hash,
                screenshot_metadata=extraction.screenshot_metadata,
                category=response.category,
                subcategory=response.subcategory,
                brand=response.brand,
                languages=response.languages,
                primary_language=response.primary_language,
                analysis_status=AnalysisStatus.COMPLETED,
                model_used=self.llm_provider.model_name,
                tokens_used=tokens_used,
                analysis_time=analysis_time,
                llm_interaction_id=debug_log.interaction_id,
            )

            await self.storage.save_content_analysis(item.user_id, result)
            await self.storage.update_analysis_index(
                item.user_id,
                fingerprint_key(item.url, extraction.html_hash, extraction.screenshot_hash),
                analysis_id,
            )

            if item.history_entry_id:
                try:
                    await self.storage.link_history_to_analysis(
                        item.user_id, item.history_entry_id, analysis_id
                    )
                except Exception as e:
                    logger.error(f"Failed to link history entry {item.history_entry_id}: {e}")

            await self._index_analysis(result)
        except Exception as e:
            debug_log.error = str(e)
            debug_log.response_time = _elapsed_ms(started)
            await self.storage.save_llm_debug_log(item.user_id, debug_log)
            raise

        debug_log.parsed_response = response
        debug_log.response_time = analysis_time
        debug_log.success = True
        await self.storage.save_llm_debug_log(item.user_id, debug_log)

        await self.pending_store.delete(item.activity_id)
        await self._link_late_activities(item, result)
        logger.info(f"Analysis completed for {item.url} in {analysis_time}ms")

    async def _request_analysis(
        self, prompt: str, image: ImagePart, exchanges: list[ExchangeRecord]
    ) -> tuple[LLMAnalysisResponse, int | None]:
        """Ask for a structured analysis, correcting malformed output.

        Parse failures and non-rate-limit provider errors share one attempt
        budget. Rate-limit errors propagate so the queue can back off.
        """
        base = [ChatTurn(role="user", content=[image, TextPart(text=prompt)])]
        messages = base
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            record = ExchangeRecord(kind="initial" if messages is base else "correction")
            exchanges.append(record)
            started = time.monotonic()

            try:
                result = await self.llm_provider.chat(messages)
            except Exception as e:
                record.response_time = _elapsed_ms(started)
                record.parse_error = f"Provider error: {e}"
                if is_rate_limit_error(e):
                    raise
                logger.error(f"LLM call failed on attempt {attempt + 1}: {e}")
                last_error = e
                messages = base
                continue

            record.response_time = _elapsed_ms(started)
            record.raw_response = result.content
            try:
                parsed = parse_analysis_response(result.content)
            except AnalysisParseError as e:
                record.parse_error = str(e)
                logger.warning(f"Invalid JSON on attempt {attempt + 1}, retrying")
                last_error = e
                messages = [
                    *base,
                    ChatTurn(role="assistant", content=result.content),
                    ChatTurn(role="user", content=RETRY_PROMPT),
                ]
                continue

            record.success = True
            return parsed, result.token_count

        raise AnalysisError(
            f"Failed to get valid JSON response from LLM after {self.max_retries} attempts: "
            f"{last_error}"
        ) from last_error

    async def _index_analysis(self, result: ContentAnalysisResult) -> None:
        """Send analysis text to the vector index. Failures never fail the analysis."""
        if self.vector_search is None:
            return
        try:
            await self.vector_search.index_content_analysis(
                result.analysis_id,
                result.user_id,
                result.url,
                result.timestamp,
                {
                    ContentType.PAGE_DESCRIPTION: result.page_description,
                    ContentType.TITLE: result.raw_text.title,
                    ContentType.META_DESCRIPTION: result.raw_text.meta_description,
                    ContentType.SCREENSHOT_DESCRIPTION: result.screenshot_description,
                },
            )
        except Exception as e:
            logger.error(f"Vector indexing failed for {result.analysis_id}: {e}")

    async def _save_failed_result(
        self, item: AnalysisQueueItem, error: str, analysis_time: int
    ) -> ContentAnalysisResult:
        extraction = await self.pending_store.load(item.activity_id)
        result = ContentAnalysisResult(
            analysis_id=generate_id("analysis"),
            activity_ids=[item.activity_id, *item.linked_activity_ids],
            user_id=item.user_id,
            url=item.url,
            screenshot_path=self.storage.screenshot_relative_path(item.activity_id),
            analysis_status=AnalysisStatus.FAILED,
            model_used=self.llm_provider.model_name,
            analysis_time=analysis_time,
            error=error,
        )
        if extraction is not None:
            result.raw_text = extraction.extracted_text
            result.html_hash = extraction.html_hash
            result.screenshot_hash = extraction.screenshot_hash
            result.screenshot_metadata = extraction.screenshot_metadata

        await self.storage.save_content_analysis(item.user_id, result)
        return result

    async def _link_late_activities(
        self, item: AnalysisQueueItem, result: ContentAnalysisResult
    ) -> None:
        """Link visits that joined the queued item after its result was built.

        Runs until no unlinked activity is left, so the caller can remove the
        item from the queue without another visit slipping in between.
        """
        linked = set(result.activity_ids)
        while late := [a for a in item.linked_activity_ids if a not in linked]:
            for activity_id in late:
                await self.storage.link_activity_to_analysis(
                    item.user_id, activity_id, result.analysis_id
                )
                linked.add(activity_id)
