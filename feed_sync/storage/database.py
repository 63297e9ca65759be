"""Database storage for feed_sync.

This module provides the async SQLite repository used by the update
pipeline. Every public method takes the repository lock for the duration
of its own statements only, so concurrent feed tasks serialize on storage
without ever holding the lock across a network call.

Database location: ~/.feed_sync/feed_sync.db (or FEED_SYNC_DB_PATH env var)
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, List, Optional, Union

import aiosqlite

from feed_sync.errors import RepositoryError
from feed_sync.models.schemas import AIPlatform, Article, Feed, backoff_delay, utcnow


logger = logging.getLogger(__name__)

FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


async def init_database(db: aiosqlite.Connection) -> None:
    """Initialize database tables if they don't exist."""
    await db.execute("""
        CREATE TABLE IF NOT EXISTS feeds (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL UNIQUE,
            group_id INTEGER,
            translate_enabled BOOLEAN NOT NULL DEFAULT FALSE,
            notification_enabled BOOLEAN NOT NULL DEFAULT FALSE,
            last_updated TIMESTAMP,
            last_update_status TEXT,
            update_attempts INTEGER NOT NULL DEFAULT 0,
            next_retry_time TIMESTAMP
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY,
            feed_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            pub_date TIMESTAMP NOT NULL,
            link TEXT NOT NULL,
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            is_favorite BOOLEAN NOT NULL DEFAULT FALSE,
            thumbnail TEXT,
            author TEXT,
            categories TEXT NOT NULL DEFAULT '[]',
            translated_title TEXT,
            translated_content TEXT,
            UNIQUE (feed_id, link),
            FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS ai_platforms (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            api_url TEXT NOT NULL,
            api_key TEXT NOT NULL,
            api_model TEXT NOT NULL,
            is_default BOOLEAN NOT NULL DEFAULT FALSE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_articles_feed_id ON articles(feed_id)
    """)

    await db.commit()


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_feed(row: aiosqlite.Row) -> Feed:
    return Feed(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        group_id=row["group_id"],
        translate_enabled=bool(row["translate_enabled"]),
        notification_enabled=bool(row["notification_enabled"]),
        last_updated=_from_db_time(row["last_updated"]),
        last_update_status=row["last_update_status"],
        update_attempts=row["update_attempts"],
        next_retry_time=_from_db_time(row["next_retry_time"]),
    )


def _row_to_article(row: aiosqlite.Row) -> Article:
    return Article(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        content=row["content"],
        pub_date=_from_db_time(row["pub_date"]),
        link=row["link"],
        is_read=bool(row["is_read"]),
        is_favorite=bool(row["is_favorite"]),
        thumbnail=row["thumbnail"],
        author=row["author"],
        categories=json.loads(row["categories"] or "[]"),
        translated_title=row["translated_title"],
        translated_content=row["translated_content"],
    )


def _row_to_platform(row: aiosqlite.Row) -> AIPlatform:
    return AIPlatform(
        id=row["id"],
        name=row["name"],
        api_url=row["api_url"],
        api_key=row["api_key"],
        api_model=row["api_model"],
        is_default=bool(row["is_default"]),
    )


class Repository:
    """Feed and article storage backed by one aiosqlite connection."""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: Union[str, Path] = ":memory:") -> "Repository":
        repository = cls(db_path)
        await repository.connect()
        return repository

    async def connect(self) -> None:
        """Open the connection and create the schema."""
        if self._db is not None:
            return

        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA foreign_keys = ON")
            await init_database(self._db)
        except aiosqlite.Error as e:
            raise RepositoryError(f"Failed to open database {self.db_path}: {e}") from e
        logger.info(f"Database ready at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._db is None:
            raise RepositoryError("Database is not connected")
        async with self._lock:
            try:
                yield self._db
            except aiosqlite.Error as e:
                await self._db.rollback()
                raise RepositoryError(str(e)) from e

    # Feeds

    async def add_feed(
        self,
        name: str,
        url: str,
        translate_enabled: bool = False,
        notification_enabled: bool = False,
        group_id: Optional[int] = None,
    ) -> Feed:
        """Add a new feed.

        Raises:
            ValueError: If a feed with the same URL already exists
        """
        async with self._session() as db:
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO feeds (name, url, group_id, translate_enabled, notification_enabled)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (name, url, group_id, translate_enabled, notification_enabled),
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                await db.rollback()
                raise ValueError(f"Feed with URL '{url}' already exists") from e

        return Feed(
            id=cursor.lastrowid,
            name=name,
            url=url,
            group_id=group_id,
            translate_enabled=translate_enabled,
            notification_enabled=notification_enabled,
        )

    async def get_feed(self, feed_id: int) -> Optional[Feed]:
        async with self._session() as db:
            cursor = await db.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = await cursor.fetchone()
        return _row_to_feed(row) if row else None

    async def list_feeds(self) -> List[Feed]:
        async with self._session() as db:
            cursor = await db.execute("SELECT * FROM feeds ORDER BY name")
            rows = await cursor.fetchall()
        return [_row_to_feed(row) for row in rows]

    async def list_due_feeds(self, now: Optional[datetime] = None) -> List[Feed]:
        """Feeds with no pending retry time, or whose retry time has passed."""
        now = now or utcnow()
        return [feed for feed in await self.list_feeds() if feed.is_due(now)]

    async def record_success(self, feed_id: int, timestamp: Optional[datetime] = None) -> None:
        """Mark a feed as successfully updated and clear its failure state."""
        async with self._session() as db:
            await db.execute(
                """
                UPDATE feeds
                SET last_updated = ?, last_update_status = 'success',
                    update_attempts = 0, next_retry_time = NULL
                WHERE id = ?
                """,
                (_to_db_time(timestamp or utcnow()), feed_id),
            )
            await db.commit()

    async def record_failure(
        self,
        feed_id: int,
        error_text: str,
        now: Optional[datetime] = None,
    ) -> Optional[Feed]:
        """Count a failed update and schedule the next retry.

        The delay is 2**previous_attempts minutes, uncapped; a delay too
        large for datetime pins the retry to datetime.max.

        Returns:
            The updated Feed, or None if it no longer exists
        """
        now = now or utcnow()
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT update_attempts FROM feeds WHERE id = ?", (feed_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            try:
                next_retry = now + backoff_delay(row["update_attempts"])
            except OverflowError:
                next_retry = FAR_FUTURE

            await db.execute(
                """
                UPDATE feeds
                SET last_update_status = ?, update_attempts = update_attempts + 1,
                    next_retry_time = ?
                WHERE id = ?
                """,
                (error_text, _to_db_time(next_retry), feed_id),
            )
            await db.commit()

            cursor = await db.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
            row = await cursor.fetchone()
        return _row_to_feed(row)

    # Articles

    async def needs_translation(self, feed_id: int, link: str) -> bool:
        """True if the article is unknown or has no translated title yet."""
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT translated_title FROM articles WHERE feed_id = ? AND link = ?",
                (feed_id, link),
            )
            row = await cursor.fetchone()
        return row is None or not row["translated_title"]

    async def upsert_article(self, article: Article) -> bool:
        """Insert an article or refresh the stored copy.

        On update, title, content and metadata are overwritten; stored
        translations are kept unless the article carries new non-empty
        ones; read/favorite flags are left alone.

        Returns:
            True if a new row was inserted
        """
        categories = json.dumps(article.categories, ensure_ascii=False)

        async with self._session() as db:
            cursor = await db.execute(
                """
                SELECT id, translated_title, translated_content
                FROM articles WHERE feed_id = ? AND link = ?
                """,
                (article.feed_id, article.link),
            )
            existing = await cursor.fetchone()

            if existing is None:
                cursor = await db.execute(
                    """
                    INSERT INTO articles (
                        feed_id, title, content, pub_date, link, is_read, is_favorite,
                        thumbnail, author, categories, translated_title, translated_content
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        article.feed_id,
                        article.title,
                        article.content,
                        _to_db_time(article.pub_date),
                        article.link,
                        article.is_read,
                        article.is_favorite,
                        article.thumbnail,
                        article.author,
                        categories,
                        article.translated_title or None,
                        article.translated_content or None,
                    ),
                )
                await db.commit()
                article.id = cursor.lastrowid
                return True

            await db.execute(
                """
                UPDATE articles
                SET title = ?, content = ?, pub_date = ?, thumbnail = ?, author = ?,
                    categories = ?, translated_title = ?, translated_content = ?
                WHERE id = ?
                """,
                (
                    article.title,
                    article.content,
                    _to_db_time(article.pub_date),
                    article.thumbnail,
                    article.author,
                    categories,
                    article.translated_title or existing["translated_title"],
                    article.translated_content or existing["translated_content"],
                    existing["id"],
                ),
            )
            await db.commit()
            article.id = existing["id"]
            return False

    async def get_article(self, feed_id: int, link: str) -> Optional[Article]:
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT * FROM articles WHERE feed_id = ? AND link = ?", (feed_id, link)
            )
            row = await cursor.fetchone()
        return _row_to_article(row) if row else None

    async def list_articles(self, feed_id: Optional[int] = None, limit: int = 50) -> List[Article]:
        """List articles, newest first, optionally for one feed."""
        query = "SELECT * FROM articles"
        params: List = []
        if feed_id is not None:
            query += " WHERE feed_id = ?"
            params.append(feed_id)
        query += " ORDER BY pub_date DESC, id DESC LIMIT ?"
        params.append(limit)

        async with self._session() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_article(row) for row in rows]

    # AI platforms

    async def add_ai_platform(self, platform: AIPlatform) -> AIPlatform:
        """Store a platform; a default platform replaces the previous default."""
        async with self._session() as db:
            if platform.is_default:
                await db.execute("UPDATE ai_platforms SET is_default = FALSE")
            cursor = await db.execute(
                """
                INSERT INTO ai_platforms (name, api_url, api_key, api_model, is_default)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    platform.name,
                    platform.api_url,
                    platform.api_key,
                    platform.api_model,
                    platform.is_default,
                ),
            )
            await db.commit()
        platform.id = cursor.lastrowid
        return platform

    async def get_default_ai_platform(self) -> Optional[AIPlatform]:
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT * FROM ai_platforms WHERE is_default = TRUE ORDER BY id LIMIT 1"
            )
            row = await cursor.fetchone()
        return _row_to_platform(row) if row else None
