"""Storage layer for feed_sync."""

from .database import Repository, init_database

__all__ = [
    "Repository",
    "init_database",
]
