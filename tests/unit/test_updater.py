"""Unit tests for the update pipeline.

Tests for local retries, classification, translation degradation,
failure bookkeeping, notifications and the polling loop.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from feed_sync.config import SyncConfig
from feed_sync.errors import (
    ApiError,
    FeedUpdateError,
    FetchError,
    FetchErrorKind,
    RepositoryError,
    UpdateStage,
)
from feed_sync.pipeline.scheduler import poll_once, run_polling
from feed_sync.pipeline.updater import MAX_RETRIES, FeedUpdater
from feed_sync.services.notifier import NotificationDispatcher


# Mark all tests as async
pytestmark = pytest.mark.anyio


class FakeFetcher:
    """Returns queued outcomes; exceptions are raised."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, str):
            return outcome.encode("utf-8")
        return outcome


class FakeTranslator:
    """Prefixes text with the target language, or raises."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.calls = []

    async def translate_article(self, title, content, target_language):
        self.calls.append(title)
        if self.error:
            raise self.error
        return f"[{target_language}] {title}", f"[{target_language}] {content}"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, title: str, body: str) -> None:
        self.sent.append((title, body))


def make_updater(repository, fetcher, translator=None, notifier=None):
    return FeedUpdater(
        repository=repository,
        fetcher=fetcher,
        translator=translator or FakeTranslator(),
        dispatcher=NotificationDispatcher(notifier or RecordingNotifier()),
        config=SyncConfig(target_language="fr"),
        retry_delay=0,
    )


class TestFetchWithRetry:
    """Tests for local fetch retries."""

    async def test_transient_failure_is_retried(self, repository, rss_factory):
        """Test that a fetch failing once then succeeding saves the articles."""
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        fetcher = FakeFetcher(
            FetchError("connection reset", FetchErrorKind.TRANSPORT),
            rss_factory(2),
        )
        updater = make_updater(repository, fetcher)

        result = await updater.update_feed(feed)

        assert result.success
        assert result.new_articles == 2
        assert len(fetcher.calls) == 2
        stored = await repository.get_feed(feed.id)
        assert stored.update_attempts == 0
        assert stored.last_update_status == "success"

    async def test_persistent_failure_is_retried_then_recorded(self, repository):
        """Test MAX_RETRIES local retries before the failure is persisted."""
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        fetcher = FakeFetcher(FetchError("timed out", FetchErrorKind.TRANSPORT))
        updater = make_updater(repository, fetcher)

        result = await updater.update_feed(feed)

        assert not result.success
        assert len(fetcher.calls) == MAX_RETRIES + 1
        stored = await repository.get_feed(feed.id)
        assert stored.update_attempts == 1
        assert stored.last_update_status == "timed out"
        assert stored.next_retry_time is not None

    async def test_last_fetch_error_is_raised_after_retries(self, repository):
        """Test that the final attempt's error is the one surfaced and stored."""
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        fetcher = FakeFetcher(
            FetchError("connection reset", FetchErrorKind.TRANSPORT),
            FetchError("timed out", FetchErrorKind.TRANSPORT),
            FetchError(
                "Failed to fetch https://example.com/feed: HTTP 502",
                FetchErrorKind.HTTP_STATUS,
                502,
            ),
        )
        updater = make_updater(repository, fetcher)

        with pytest.raises(FeedUpdateError) as exc_info:
            await updater.fetch_with_retry(feed)

        assert exc_info.value.stage is UpdateStage.FETCH
        assert exc_info.value.cause.status_code == 502
        assert len(fetcher.calls) == MAX_RETRIES + 1

    async def test_parse_failure_is_not_retried(self, repository, sample_not_a_feed_xml):
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        fetcher = FakeFetcher(sample_not_a_feed_xml)
        updater = make_updater(repository, fetcher)

        result = await updater.update_feed(feed)

        assert not result.success
        assert len(fetcher.calls) == 1
        assert "not a valid RSS or Atom" in result.error

    async def test_forbidden_without_browser_message_is_stored(self, repository):
        """Test that the 403 no-fallback message becomes the feed status."""
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        message = (
            "Failed to fetch https://example.com/feed: HTTP 403 Forbidden "
            "and no browser engine is available for the fallback"
        )
        fetcher = FakeFetcher(FetchError(message, FetchErrorKind.FORBIDDEN_NO_FALLBACK, 403))
        updater = make_updater(repository, fetcher)

        await updater.update_feed(feed)

        stored = await repository.get_feed(feed.id)
        assert stored.last_update_status == message
        assert stored.update_attempts == 1


class TestProcessArticles:
    """Tests for classification, translation and persistence."""

    async def test_translation_disabled_saves_everything_untranslated(
        self, repository, rss_factory
    ):
        """Test that a feed with translation off never calls the translator."""
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        translator = FakeTranslator()
        updater = make_updater(repository, FakeFetcher(rss_factory(5)), translator)

        result = await updater.update_feed(feed)

        assert result.new_articles == 5
        assert result.translated_articles == 0
        assert translator.calls == []
        articles = await repository.list_articles(feed.id)
        assert len(articles) == 5
        assert all(article.translated_title is None for article in articles)

    async def test_translation_enabled_translates_new_articles(self, repository, rss_factory):
        feed = await repository.add_feed(
            "Blog", "https://example.com/feed", translate_enabled=True
        )
        translator = FakeTranslator()
        updater = make_updater(repository, FakeFetcher(rss_factory(2)), translator)

        result = await updater.update_feed(feed)

        assert result.translated_articles == 2
        stored = await repository.get_article(feed.id, "https://example.com/item-0")
        assert stored.translated_title == "[fr] Item 0"

    async def test_already_translated_articles_are_skipped(self, repository, rss_factory):
        """Test that a second update does not translate the same articles again."""
        feed = await repository.add_feed(
            "Blog", "https://example.com/feed", translate_enabled=True
        )
        translator = FakeTranslator()
        updater = make_updater(repository, FakeFetcher(rss_factory(2)), translator)

        await updater.update_feed(feed)
        second = await updater.update_feed(feed)

        assert len(translator.calls) == 2
        assert second.new_articles == 0
        assert second.translated_articles == 0
        stored = await repository.get_article(feed.id, "https://example.com/item-1")
        assert stored.translated_title == "[fr] Item 1"

    async def test_translation_failure_saves_untranslated(self, repository, rss_factory):
        """Test that a translation error degrades instead of failing the feed."""
        feed = await repository.add_feed(
            "Blog", "https://example.com/feed", translate_enabled=True
        )
        translator = FakeTranslator(error=ApiError("API error: rate limited", status_code=429))
        updater = make_updater(repository, FakeFetcher(rss_factory(2)), translator)

        result = await updater.update_feed(feed)

        assert result.success
        assert result.new_articles == 2
        assert result.translated_articles == 0
        articles = await repository.list_articles(feed.id)
        assert all(article.translated_title is None for article in articles)

    async def test_classification_error_fails_open(self, repository, rss_factory):
        """Test that a failed translation-state lookup still translates."""
        feed = await repository.add_feed(
            "Blog", "https://example.com/feed", translate_enabled=True
        )
        translator = FakeTranslator()
        updater = make_updater(repository, FakeFetcher(rss_factory(1)), translator)

        with patch.object(
            repository, "needs_translation", AsyncMock(side_effect=RepositoryError("locked"))
        ):
            result = await updater.update_feed(feed)

        assert result.translated_articles == 1
        assert translator.calls == ["Item 0"]

    async def test_persist_failure_skips_article_only(self, repository, rss_factory):
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        updater = make_updater(repository, FakeFetcher(rss_factory(3)))
        original = repository.upsert_article
        calls = []

        async def flaky_upsert(article):
            calls.append(article.link)
            if len(calls) == 2:
                raise RepositoryError("disk full")
            return await original(article)

        with patch.object(repository, "upsert_article", flaky_upsert):
            result = await updater.update_feed(feed)

        assert result.success
        assert result.new_articles == 2
        assert len(await repository.list_articles(feed.id)) == 2


class TestNotifications:
    """Tests for new-article notifications."""

    async def test_new_articles_notify_with_truncated_title(self, repository):
        """Test the title/body format and 50-character truncation."""
        long_title = "A" * 80
        rss = f"""<?xml version="1.0"?>
        <rss version="2.0"><channel><title>T</title>
            <item><title>{long_title}</title><link>https://example.com/long</link></item>
        </channel></rss>"""
        feed = await repository.add_feed(
            "Blog", "https://example.com/feed", notification_enabled=True
        )
        notifier = RecordingNotifier()
        updater = make_updater(repository, FakeFetcher(rss), notifier=notifier)

        await updater.update_feed(feed)
        await updater.dispatcher.drain()

        assert notifier.sent == [("RSS: Blog", "New article: " + "A" * 50)]

    async def test_translated_title_is_announced(self, repository, rss_factory):
        feed = await repository.add_feed(
            "Blog",
            "https://example.com/feed",
            translate_enabled=True,
            notification_enabled=True,
        )
        notifier = RecordingNotifier()
        updater = make_updater(repository, FakeFetcher(rss_factory(1)), notifier=notifier)

        await updater.update_feed(feed)
        await updater.dispatcher.drain()

        assert notifier.sent == [("RSS: Blog", "New article: [fr] Item 0")]

    async def test_notifications_disabled(self, repository, rss_factory):
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        notifier = RecordingNotifier()
        updater = make_updater(repository, FakeFetcher(rss_factory(3)), notifier=notifier)

        await updater.update_feed(feed)
        await updater.dispatcher.drain()

        assert notifier.sent == []

    async def test_existing_articles_are_not_announced(self, repository, rss_factory):
        feed = await repository.add_feed(
            "Blog", "https://example.com/feed", notification_enabled=True
        )
        notifier = RecordingNotifier()
        updater = make_updater(repository, FakeFetcher(rss_factory(2)), notifier=notifier)

        await updater.update_feed(feed)
        await updater.update_feed(feed)
        await updater.dispatcher.drain()

        assert len(notifier.sent) == 2


class TestBatchUpdates:
    """Tests for concurrent multi-feed updates."""

    async def test_one_failing_feed_does_not_block_others(self, repository, rss_factory):
        good = await repository.add_feed("Good", "https://good.example.com/feed")
        bad = await repository.add_feed("Bad", "https://bad.example.com/feed")

        class RoutingFetcher:
            async def fetch(self, url):
                if "bad" in url:
                    raise FetchError("HTTP 500", FetchErrorKind.HTTP_STATUS, 500)
                return rss_factory(2).encode("utf-8")

        updater = make_updater(repository, RoutingFetcher())

        results = await updater.update_feeds([good, bad])

        assert [r.success for r in results] == [True, False]
        assert (await repository.get_feed(bad.id)).update_attempts == 1
        assert (await repository.get_feed(good.id)).update_attempts == 0

    async def test_unexpected_exception_becomes_failed_result(self, repository, rss_factory):
        """Test that an exception escaping one feed's task is contained."""
        good = await repository.add_feed("Good", "https://good.example.com/feed")
        bad = await repository.add_feed("Bad", "https://bad.example.com/feed")
        updater = make_updater(repository, FakeFetcher(rss_factory(1)))
        original = updater.update_feed

        async def exploding_update(feed):
            if feed.id == bad.id:
                raise RuntimeError("unexpected")
            return await original(feed)

        updater.update_feed = exploding_update

        results = await updater.update_feeds([good, bad])

        assert results[0].success
        assert not results[1].success
        assert results[1].error == "unexpected"
        stored = await repository.get_feed(bad.id)
        assert stored.last_update_status == "unexpected"

    async def test_update_due_feeds_skips_backing_off(self, repository, rss_factory):
        due = await repository.add_feed("Due", "https://due.example.com/feed")
        waiting = await repository.add_feed("Waiting", "https://waiting.example.com/feed")
        await repository.record_failure(waiting.id, "boom")
        fetcher = FakeFetcher(rss_factory(1))
        updater = make_updater(repository, fetcher)

        results = await updater.update_due_feeds()

        assert [r.feed.id for r in results] == [due.id]
        assert fetcher.calls == ["https://due.example.com/feed"]

    async def test_update_due_feeds_after_backoff_expires(self, repository, rss_factory):
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        failed = await repository.record_failure(feed.id, "boom")
        updater = make_updater(repository, FakeFetcher(rss_factory(1)))

        results = await updater.update_due_feeds(failed.next_retry_time + timedelta(seconds=1))

        assert [r.success for r in results] == [True]

    async def test_refresh_feed_ignores_backoff(self, repository, rss_factory):
        feed = await repository.add_feed("Blog", "https://example.com/feed")
        await repository.record_failure(feed.id, "boom")
        updater = make_updater(repository, FakeFetcher(rss_factory(1)))

        result = await updater.refresh_feed(feed.id)

        assert result.success
        assert (await repository.get_feed(feed.id)).next_retry_time is None

    async def test_refresh_unknown_feed_raises(self, repository):
        updater = make_updater(repository, FakeFetcher(b""))

        with pytest.raises(ValueError, match="not found"):
            await updater.refresh_feed(42)


class TestScheduler:
    """Tests for the polling loop."""

    async def test_poll_once_updates_due_feeds(self, repository, rss_factory):
        await repository.add_feed("Blog", "https://example.com/feed")
        updater = make_updater(repository, FakeFetcher(rss_factory(3)))

        results = await poll_once(updater)

        assert len(results) == 1
        assert results[0].new_articles == 3

    async def test_run_polling_stops_after_max_cycles(self, repository):
        updater = make_updater(repository, FakeFetcher(b""))
        updater.update_due_feeds = AsyncMock(return_value=[])

        await run_polling(updater, interval=0, max_cycles=3)

        assert updater.update_due_feeds.await_count == 3

    async def test_run_polling_survives_cycle_errors(self, repository):
        """Test that a failing cycle is logged and the loop continues."""
        updater = make_updater(repository, FakeFetcher(b""))
        updater.update_due_feeds = AsyncMock(side_effect=[RuntimeError("boom"), []])

        await run_polling(updater, interval=0, max_cycles=2)

        assert updater.update_due_feeds.await_count == 2
