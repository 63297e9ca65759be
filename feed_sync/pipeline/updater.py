"""Feed update orchestration.

One feed update runs fetch -> parse -> classify -> translate -> persist.
Fetch failures are retried locally a couple of times; whatever still fails
is written into the feed's retry/backoff state instead of being raised, so
a batch of feeds always completes.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from feed_sync.config import SyncConfig
from feed_sync.errors import (
    FeedUpdateError,
    FetchError,
    ParseError,
    RepositoryError,
    TranslationError,
    UpdateStage,
)
from feed_sync.models.schemas import Article, Feed, FeedUpdateResult, utcnow
from feed_sync.services.feed_parser import parse_feed
from feed_sync.services.fetcher import FeedFetcher
from feed_sync.services.notifier import NotificationDispatcher
from feed_sync.services.translator import Translator
from feed_sync.storage.database import Repository


logger = logging.getLogger(__name__)

MAX_RETRIES = 2
RETRY_DELAY = 1.0


class FeedUpdater:
    """Updates feeds and enriches their new articles."""

    def __init__(
        self,
        repository: Repository,
        fetcher: FeedFetcher,
        translator: Translator,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[SyncConfig] = None,
        retry_delay: float = RETRY_DELAY,
    ):
        self.repository = repository
        self.fetcher = fetcher
        self.translator = translator
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.config = config or SyncConfig()
        self.retry_delay = retry_delay

    async def fetch_articles(self, feed: Feed) -> List[Article]:
        """Fetch and parse a feed once.

        Raises:
            FeedUpdateError: With stage FETCH or PARSE
        """
        try:
            content = await self.fetcher.fetch(feed.url)
        except FetchError as e:
            raise FeedUpdateError(UpdateStage.FETCH, feed.id, e) from e

        try:
            return parse_feed(content, feed.url, feed_id=feed.id)
        except ParseError as e:
            raise FeedUpdateError(UpdateStage.PARSE, feed.id, e) from e

    async def fetch_with_retry(self, feed: Feed) -> List[Article]:
        """Fetch a feed, retrying fetch failures up to MAX_RETRIES times.

        Parse failures are not retried.
        """
        last_error = None

        for attempt in range(MAX_RETRIES + 1):
            if last_error is not None:
                logger.warning(
                    f"Updating feed {feed.name} failed, retrying in {self.retry_delay}s "
                    f"(attempt {attempt + 1}/{MAX_RETRIES + 1}): {last_error}"
                )
                await asyncio.sleep(self.retry_delay)

            try:
                return await self.fetch_articles(feed)
            except FeedUpdateError as e:
                if e.stage is not UpdateStage.FETCH:
                    raise
                last_error = e

        raise last_error

    async def _classify(self, feed: Feed, article: Article) -> bool:
        if not feed.translate_enabled:
            return False
        try:
            return await self.repository.needs_translation(article.feed_id, article.link)
        except RepositoryError as e:
            logger.warning(f"Failed to check translation state of {article.link}: {e}")
            return True

    async def _translate(self, article: Article) -> bool:
        try:
            title, content = await self.translator.translate_article(
                article.title, article.content, self.config.target_language
            )
        except TranslationError as e:
            logger.warning(f"Translation failed for {article.link}, saving untranslated: {e}")
            return False

        article.translated_title = title
        article.translated_content = content
        return True

    async def process_articles(self, feed: Feed, articles: Sequence[Article]) -> Tuple[int, int]:
        """Classify, translate and persist articles one at a time.

        Each article is fully saved before the next one is looked at.

        Returns:
            Tuple of (new articles, translated articles)
        """
        new_count = 0
        translated_count = 0

        for article in articles:
            if await self._classify(feed, article):
                if await self._translate(article):
                    translated_count += 1

            try:
                is_new = await self.repository.upsert_article(article)
            except RepositoryError as e:
                logger.error(f"Failed to save article {article.link} from {feed.name}: {e}")
                continue

            if is_new:
                new_count += 1
                self.dispatcher.article_added(feed, article)

        return new_count, translated_count

    async def update_feed(self, feed: Feed) -> FeedUpdateResult:
        """Run the full pipeline for one feed and record the outcome."""
        try:
            articles = await self.fetch_with_retry(feed)
        except FeedUpdateError as e:
            logger.warning(f"Failed to update feed {feed.name} ({feed.url}) at {e.stage.value}: {e}")
            await self.repository.record_failure(feed.id, str(e))
            return FeedUpdateResult(feed=feed, success=False, error=str(e))

        new_count, translated_count = await self.process_articles(feed, articles)
        await self.repository.record_success(feed.id, utcnow())

        logger.info(
            f"Feed {feed.name}: {len(articles)} articles, {new_count} new, "
            f"{translated_count} translated"
        )
        return FeedUpdateResult(
            feed=feed,
            success=True,
            articles_seen=len(articles),
            new_articles=new_count,
            translated_articles=translated_count,
        )

    async def update_feeds(self, feeds: Sequence[Feed]) -> List[FeedUpdateResult]:
        """Update feeds concurrently, one task per feed.

        An exception escaping a feed's task becomes a failed result for
        that feed only.
        """
        outcomes = await asyncio.gather(
            *(self.update_feed(feed) for feed in feeds), return_exceptions=True
        )

        results = []
        for feed, outcome in zip(feeds, outcomes):
            if isinstance(outcome, FeedUpdateResult):
                results.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome

            logger.error(f"Unexpected error updating feed {feed.name}: {outcome}", exc_info=outcome)
            try:
                await self.repository.record_failure(feed.id, str(outcome))
            except RepositoryError as e:
                logger.error(f"Failed to record failure for feed {feed.name}: {e}")
            results.append(FeedUpdateResult(feed=feed, success=False, error=str(outcome)))

        return results

    async def update_due_feeds(self, now: Optional[datetime] = None) -> List[FeedUpdateResult]:
        """Update every feed that is not waiting out a backoff delay."""
        feeds = await self.repository.list_due_feeds(now)
        if not feeds:
            logger.info("No feeds due for update")
            return []

        logger.info(f"Updating {len(feeds)} due feeds")
        return await self.update_feeds(feeds)

    async def refresh_feed(self, feed_id: int) -> FeedUpdateResult:
        """Update one feed now, regardless of its backoff state.

        Raises:
            ValueError: If the feed does not exist
        """
        feed = await self.repository.get_feed(feed_id)
        if feed is None:
            raise ValueError(f"Feed {feed_id} not found")
        return (await self.update_feeds([feed]))[0]
