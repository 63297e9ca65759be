"""Error types for feed_sync.

Each pipeline component raises its own error family. The update
orchestrator wraps whatever stopped a feed update in FeedUpdateError,
which records the stage that failed.
"""

from enum import Enum
from typing import Optional


class FeedSyncError(Exception):
    """Base class for all feed_sync errors."""


class FetchErrorKind(str, Enum):
    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"
    FORBIDDEN_NO_FALLBACK = "forbidden_no_fallback"
    FALLBACK_EXTRACTION = "fallback_extraction"


class FetchError(FeedSyncError):
    """Raised when feed bytes cannot be retrieved."""

    def __init__(
        self,
        message: str,
        kind: FetchErrorKind = FetchErrorKind.TRANSPORT,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class ParseError(FeedSyncError):
    """Raised when a document is neither RSS nor Atom. Never retried."""


class TranslationError(FeedSyncError):
    """Base class for translation client failures."""


class ConfigError(TranslationError):
    """No AI platform is configured."""


class TransportError(TranslationError):
    """The HTTP call to the translation endpoint failed."""


class ApiError(TranslationError):
    """The translation endpoint answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(TranslationError):
    """A successful response did not contain the expected content."""


class RepositoryError(FeedSyncError):
    """Raised by the storage layer; wraps the underlying database error."""


class UpdateStage(str, Enum):
    FETCH = "fetch"
    PARSE = "parse"
    CLASSIFY = "classify"
    TRANSLATE = "translate"
    PERSIST = "persist"


class FeedUpdateError(FeedSyncError):
    """A feed update failed at a given stage.

    str() returns the cause's message unchanged so it can be stored as the
    feed's last_update_status.
    """

    def __init__(self, stage: UpdateStage, feed_id: int, cause: Exception):
        super().__init__(str(cause))
        self.stage = stage
        self.feed_id = feed_id
        self.cause = cause
