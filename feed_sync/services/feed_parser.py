"""Feed parser service.

This module parses RSS/Atom documents into Article records: it picks the
best content field, resolves publication dates, strips link fragments and
rewrites image URLs to absolute form.
"""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import struct_time
from typing import List, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

import feedparser
from bs4 import BeautifulSoup

from feed_sync.errors import ParseError
from feed_sync.models.schemas import Article


logger = logging.getLogger(__name__)

UNTITLED = "Untitled"

PARSED_DATE_FIELDS = ("published_parsed", "updated_parsed", "created_parsed")
RAW_DATE_FIELDS = ("published", "updated", "created", "dc_date", "date")


def parse_feed(
    content: Union[bytes, str],
    base_url: str,
    feed_id: int = 0,
) -> List[Article]:
    """Parse an RSS or Atom document into articles.

    Args:
        content: Raw feed document
        base_url: URL the document was fetched from, used to absolutize images
        feed_id: Feed the articles belong to (0 for transient articles)

    Returns:
        List of Article objects in document order

    Raises:
        ParseError: If the document is neither RSS nor Atom
    """
    if isinstance(content, str):
        # feedparser treats str input as a possible URL or path
        content = content.encode("utf-8")

    feed = feedparser.parse(content, resolve_relative_uris=False, sanitize_html=False)

    version = feed.get("version") or ""
    if not version.startswith(("rss", "atom")):
        reason = feed.get("bozo_exception")
        detail = f": {reason}" if reason else ""
        raise ParseError(f"Failed to parse feed: not a valid RSS or Atom format{detail}")

    if feed.bozo:
        logger.warning(f"Feed {base_url} has formatting issues: {feed.bozo_exception}")

    articles = [_entry_to_article(entry, feed_id, base_url) for entry in feed.entries]
    logger.debug(f"Parsed {len(articles)} entries ({version}) from {base_url}")
    return articles


def normalize_link(link: str) -> str:
    """Strip the #fragment so links differing only by anchor share identity."""
    return link.split("#", 1)[0]


def fix_image_url(url: str, base_url: str) -> Optional[str]:
    """Turn an image URL found in a feed into an absolute URL.

    Returns None if the URL is empty or is relative and base_url cannot be
    used to resolve it.
    """
    url = url.strip()
    if not url:
        return None

    if url.startswith(("http://", "https://")):
        return url

    if url.startswith("//"):
        return "https:" + url

    base = urlsplit(base_url)
    if not base.scheme or not base.netloc:
        return None

    if url.startswith("/"):
        parts = urlsplit(url)
        return urlunsplit((base.scheme, base.netloc, parts.path, parts.query, parts.fragment))

    return urljoin(base_url, url)


def rewrite_images(html: str, base_url: str) -> Tuple[str, Optional[str]]:
    """Rewrite every <img src> in an HTML fragment to an absolute URL.

    Returns:
        Tuple of (rewritten html, absolute src of the first image or None)
    """
    if "<img" not in html.lower():
        return html, None

    soup = BeautifulSoup(html, "html.parser")
    first_image = None
    changed = False

    for img in soup.find_all("img"):
        src = img.get("src")
        if not src:
            continue
        fixed = fix_image_url(src, base_url)
        if fixed is None:
            continue
        if fixed != src:
            img["src"] = fixed
            changed = True
        if first_image is None:
            first_image = fixed

    return (str(soup) if changed else html), first_image


def _entry_to_article(entry, feed_id: int, base_url: str) -> Article:
    content, first_image = rewrite_images(_entry_content(entry), base_url)
    thumbnail = _enclosure_image(entry, base_url) or first_image

    categories = [tag.get("term") for tag in entry.get("tags", []) if tag.get("term")]

    return Article(
        id=0,
        feed_id=feed_id,
        title=entry.get("title") or UNTITLED,
        content=content,
        pub_date=_parse_date(entry),
        link=normalize_link(_entry_link(entry)),
        thumbnail=thumbnail,
        author=entry.get("author") or None,
        categories=categories,
    )


def _entry_content(entry) -> str:
    # Full content (content:encoded / Atom <content>) wins over the summary
    for item in entry.get("content", []):
        value = item.get("value")
        if value:
            return value
    return entry.get("summary") or entry.get("description") or ""


def _entry_link(entry) -> str:
    link = entry.get("link")
    if link:
        return link
    for candidate in entry.get("links", []):
        if candidate.get("rel", "alternate") == "alternate" and candidate.get("href"):
            return candidate["href"]
    return ""


def _enclosure_image(entry, base_url: str) -> Optional[str]:
    for enclosure in entry.get("enclosures", []):
        if enclosure.get("type", "").startswith("image/") and enclosure.get("href"):
            fixed = fix_image_url(enclosure["href"], base_url)
            if fixed:
                return fixed

    for thumbnail in entry.get("media_thumbnail", []):
        if thumbnail.get("url"):
            fixed = fix_image_url(thumbnail["url"], base_url)
            if fixed:
                return fixed

    for media in entry.get("media_content", []):
        is_image = media.get("medium") == "image" or media.get("type", "").startswith("image/")
        if is_image and media.get("url"):
            fixed = fix_image_url(media["url"], base_url)
            if fixed:
                return fixed

    return None


def _parse_date(entry) -> datetime:
    """Parse the publication date of an entry, falling back to now.

    Args:
        entry: feedparser entry dict

    Returns:
        Timezone-aware datetime
    """
    for field in PARSED_DATE_FIELDS:
        value = entry.get(field)
        if isinstance(value, (struct_time, tuple)):
            try:
                return datetime(*value[:6], tzinfo=timezone.utc)
            except (ValueError, TypeError):
                continue

    for field in RAW_DATE_FIELDS:
        value = entry.get(field)
        if not value or not isinstance(value, str):
            continue

        # Try RFC 2822 format (common in RSS)
        try:
            return _as_utc(parsedate_to_datetime(value))
        except (ValueError, TypeError):
            pass

        # Try ISO format
        try:
            return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass

    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
