"""Services for feed_sync."""

from .feed_parser import fix_image_url, normalize_link, parse_feed
from .fetcher import FeedFetcher, PlaywrightRenderer
from .notifier import LogNotifier, NotificationDispatcher
from .translator import Translator, stream_chat, truncate_chars

__all__ = [
    "FeedFetcher",
    "LogNotifier",
    "NotificationDispatcher",
    "PlaywrightRenderer",
    "Translator",
    "fix_image_url",
    "normalize_link",
    "parse_feed",
    "stream_chat",
    "truncate_chars",
]
