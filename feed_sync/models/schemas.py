"""Data models for feed_sync.

This module defines the core data structures for feeds, articles and the
chat-completions wire format used by the translation client.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


BACKOFF_BASE_SECONDS = 60


class RetryState(str, Enum):
    """Where a feed stands in the failure/backoff cycle."""

    CLEAN = "clean"
    BACKING_OFF = "backing_off"
    DUE = "due"


def backoff_delay(previous_attempts: int) -> timedelta:
    """Delay before the next attempt after a failure.

    previous_attempts is the consecutive failure count before the failure
    being recorded, so the first three failures wait 60s, 120s and 240s.
    """
    return timedelta(seconds=(2 ** previous_attempts) * BACKOFF_BASE_SECONDS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Feed:
    """Represents a subscribed RSS/Atom source and its update state."""

    id: int
    name: str
    url: str
    group_id: Optional[int] = None
    translate_enabled: bool = False
    notification_enabled: bool = False
    last_updated: Optional[datetime] = None
    last_update_status: Optional[str] = None
    update_attempts: int = 0
    next_retry_time: Optional[datetime] = None

    def retry_state(self, now: Optional[datetime] = None) -> RetryState:
        if self.update_attempts == 0:
            return RetryState.CLEAN
        now = now or utcnow()
        if self.next_retry_time is not None and now < self.next_retry_time:
            return RetryState.BACKING_OFF
        return RetryState.DUE

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """True if a batch run may update this feed now."""
        if self.next_retry_time is None:
            return True
        return self.next_retry_time <= (now or utcnow())


@dataclass
class Article:
    """Represents an article from a feed.

    Identity is (feed_id, link); link is already stripped of its fragment.
    id is 0 until the article has been persisted.
    """

    feed_id: int
    title: str
    content: str
    pub_date: datetime
    link: str
    id: int = 0
    is_read: bool = False
    is_favorite: bool = False
    thumbnail: Optional[str] = None
    author: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    translated_title: Optional[str] = None
    translated_content: Optional[str] = None

    @property
    def display_title(self) -> str:
        """Translated title when present, original title otherwise."""
        return self.translated_title or self.title


@dataclass
class AIPlatform:
    """A chat-completions endpoint used for translation."""

    name: str
    api_url: str
    api_key: str
    api_model: str
    id: int = 0
    is_default: bool = False


@dataclass
class TranslationTask:
    """One piece of text to translate. Never persisted."""

    text: str
    target_language: str
    source_language: Optional[str] = None

    def prompt(self) -> str:
        if self.source_language:
            return (
                f"Translate the following text from {self.source_language} "
                f"to {self.target_language}: {self.text}"
            )
        return f"Translate the following text to {self.target_language}: {self.text}"


@dataclass
class ImageUrl:
    url: str


@dataclass
class ContentPart:
    """One typed part of a multipart message (text or image_url)."""

    type: str
    text: Optional[str] = None
    image_url: Optional[ImageUrl] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.text is not None:
            data["text"] = self.text
        if self.image_url is not None:
            data["image_url"] = {"url": self.image_url.url}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentPart":
        image = data.get("image_url")
        return cls(
            type=data["type"],
            text=data.get("text"),
            image_url=ImageUrl(url=image["url"]) if image else None,
        )


MessageContent = Union[str, List[ContentPart]]


@dataclass
class ChatMessage:
    """A chat message whose content is a plain string or a list of parts.

    The two shapes are told apart by their JSON type alone; no
    discriminator field is written.
    """

    role: str
    content: MessageContent

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [part.to_dict() for part in self.content]
        return {"role": self.role, "content": content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        content = data["content"]
        if isinstance(content, list):
            content = [ContentPart.from_dict(part) for part in content]
        return cls(role=data["role"], content=content)


@dataclass
class FeedUpdateResult:
    """Outcome of one feed's update within a batch."""

    feed: Feed
    success: bool
    articles_seen: int = 0
    new_articles: int = 0
    translated_articles: int = 0
    error: Optional[str] = None
