"""Main entry point for the content analysis service."""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from pagelens.analysis import AnalysisQueue, CategoryManager
from pagelens.analysis.analyzer import ContentAnalyzer
from pagelens.config import get_settings
from pagelens.embedding import VectorSearchManager
from pagelens.llm import create_llm_provider
from pagelens.storage import ContentStorage, PendingExtractionStore

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def build_analyzer() -> ContentAnalyzer:
    """Wire the analyzer and its collaborators from settings."""
    settings = get_settings()
    llm_provider = create_llm_provider()

    return ContentAnalyzer(
        storage=ContentStorage(settings),
        pending_store=PendingExtractionStore(settings),
        queue=AnalysisQueue(settings=settings),
        categories=CategoryManager(settings),
        llm_provider=llm_provider,
        vector_search=VectorSearchManager(summary_provider=llm_provider, settings=settings),
        settings=settings,
    )


async def main() -> None:
    """Main application entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Starting content analyzer in {settings.environment} mode")
    logger.info(f"Using LLM provider: {settings.llm_provider}")

    # Validate configuration
    try:
        settings.validate_provider_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    analyzer = build_analyzer()
    await analyzer.categories.load()
    await analyzer.categories.cleanup()
    await analyzer.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops
            pass

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await analyzer.destroy()
        if analyzer.vector_search is not None:
            await analyzer.vector_search.destroy()


if __name__ == "__main__":
    asyncio.run(main())
