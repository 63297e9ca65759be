"""Logging setup for feed_sync."""

import logging
from typing import Optional

from feed_sync.config import SyncConfig


logger = logging.getLogger("feed_sync")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def setup_logging(config: Optional[SyncConfig] = None) -> None:
    """Configure root logging from the given config."""
    level = config.log_level if config else "INFO"

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
