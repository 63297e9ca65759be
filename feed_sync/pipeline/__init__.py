"""Feed update pipeline for feed_sync."""

from .scheduler import run_polling, poll_once
from .updater import FeedUpdater

__all__ = [
    "FeedUpdater",
    "poll_once",
    "run_polling",
]
