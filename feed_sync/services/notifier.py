"""New-article notifications.

Notifications are fire-and-forget: each one runs as its own task, and a
failing sink is logged without affecting the update that triggered it.
Pending tasks are tracked so shutdown can wait for them.
"""

import asyncio
import logging
from typing import Optional, Protocol, Set, Tuple

from feed_sync.models.schemas import Article, Feed
from feed_sync.services.translator import truncate_chars


logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 50


class Notifier(Protocol):
    async def notify(self, title: str, body: str) -> None:
        ...


class LogNotifier:
    """Default sink: writes notifications to the log."""

    async def notify(self, title: str, body: str) -> None:
        logger.info(f"{title} - {body}")


def build_article_notification(feed: Feed, article: Article) -> Tuple[str, str]:
    """Title and body announcing a new article."""
    display_title = truncate_chars(article.display_title, MAX_TITLE_CHARS)
    return f"RSS: {feed.name}", f"New article: {display_title}"


class NotificationDispatcher:
    """Runs notifier calls in the background and tracks them until drained."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or LogNotifier()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def article_added(self, feed: Feed, article: Article) -> None:
        """Announce a newly persisted article if the feed wants notifications."""
        if not feed.notification_enabled:
            return
        title, body = build_article_notification(feed, article)
        self.dispatch(title, body)

    def dispatch(self, title: str, body: str) -> None:
        task = asyncio.create_task(self._send(title, body))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, title: str, body: str) -> None:
        try:
            await self.notifier.notify(title, body)
        except Exception as e:
            logger.warning(f"Failed to send notification '{title}': {e}")

    async def drain(self) -> None:
        """Wait for every pending notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
