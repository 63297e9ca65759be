"""Background polling loop for feed_sync."""

import asyncio
import logging
from typing import List, Optional

from feed_sync.models.schemas import FeedUpdateResult
from feed_sync.pipeline.updater import FeedUpdater


logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL = 300  # 5 minutes


async def poll_once(updater: FeedUpdater) -> List[FeedUpdateResult]:
    """Update all due feeds once and log a summary."""
    results = await updater.update_due_feeds()
    if results:
        failed = sum(1 for result in results if not result.success)
        new_count = sum(result.new_articles for result in results)
        logger.info(
            f"Update cycle complete: {len(results)} feeds, {new_count} new articles, "
            f"{failed} failed"
        )
    return results


async def run_polling(
    updater: FeedUpdater,
    interval: Optional[float] = None,
    max_cycles: Optional[int] = None,
) -> None:
    """Run the polling loop until cancelled (or for max_cycles cycles)."""
    if interval is None:
        interval = updater.config.update_interval or DEFAULT_UPDATE_INTERVAL
    logger.info(f"Poller started (interval: {interval}s)")

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        try:
            await poll_once(updater)
        except Exception as e:
            logger.error(f"Update cycle failed: {e}", exc_info=True)

        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break
        await asyncio.sleep(interval)
