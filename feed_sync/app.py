"""feed_sync - command line entry point.

This module wires the repository, fetcher, translator and notification
dispatcher together and exposes them through a click command group.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import click

from feed_sync.config import SyncConfig, get_config
from feed_sync.logging_config import logger, setup_logging
from feed_sync.models.schemas import AIPlatform, ChatMessage
from feed_sync.pipeline.scheduler import poll_once, run_polling
from feed_sync.pipeline.updater import FeedUpdater
from feed_sync.services.fetcher import FeedFetcher
from feed_sync.services.notifier import NotificationDispatcher
from feed_sync.services.translator import Translator, stream_chat
from feed_sync.storage.database import Repository


async def build_translator(config: SyncConfig, repository: Repository) -> Translator:
    """Translator bound to the env-configured platform or the stored default."""
    platform = config.platform or await repository.get_default_ai_platform()
    if platform is None:
        logger.info("No AI platform configured, translation is disabled")
    return Translator(config.translator, platform)


@asynccontextmanager
async def create_updater(config: Optional[SyncConfig] = None) -> AsyncIterator[FeedUpdater]:
    """Build a FeedUpdater and tear everything down afterwards.

    Pending notifications are drained and the database closed on exit.
    """
    if config is None:
        config = get_config()

    repository = await Repository.open(config.db_path)
    dispatcher = NotificationDispatcher()
    try:
        updater = FeedUpdater(
            repository=repository,
            fetcher=FeedFetcher(timeout=config.fetch_timeout),
            translator=await build_translator(config, repository),
            dispatcher=dispatcher,
            config=config,
        )
        yield updater
    finally:
        await dispatcher.drain()
        await repository.close()


def _run(coro) -> int:
    try:
        asyncio.run(coro)
        return 0
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=True)
        return 1


@click.group()
@click.pass_context
def main(ctx: click.Context) -> None:
    """Keep RSS/Atom feeds in sync and translate new articles."""
    config = get_config()
    setup_logging(config)
    ctx.obj = config


@main.command()
@click.option("--interval", type=float, default=None, help="Seconds between update cycles")
@click.pass_obj
def run(config: SyncConfig, interval: Optional[float]) -> None:
    """Run the background update loop."""
    async def run_loop():
        async with create_updater(config) as updater:
            await run_polling(updater, interval)

    sys.exit(_run(run_loop()))


@main.command()
@click.pass_obj
def update(config: SyncConfig) -> None:
    """Update every due feed once."""
    async def update_once():
        async with create_updater(config) as updater:
            for result in await poll_once(updater):
                status = "ok" if result.success else f"failed: {result.error}"
                click.echo(f"{result.feed.name}: {result.new_articles} new ({status})")

    sys.exit(_run(update_once()))


@main.command()
@click.argument("feed_id", type=int)
@click.pass_obj
def refresh(config: SyncConfig, feed_id: int) -> None:
    """Update one feed now, ignoring its backoff state."""
    async def refresh_one():
        async with create_updater(config) as updater:
            result = await updater.refresh_feed(feed_id)
            status = "ok" if result.success else f"failed: {result.error}"
            click.echo(f"{result.feed.name}: {result.new_articles} new ({status})")

    sys.exit(_run(refresh_one()))


@main.command("add-feed")
@click.argument("url")
@click.option("--name", default="", help="Display name (defaults to the URL)")
@click.option("--translate/--no-translate", default=False, help="Translate new articles")
@click.option("--notify/--no-notify", default=False, help="Notify about new articles")
@click.pass_obj
def add_feed(config: SyncConfig, url: str, name: str, translate: bool, notify: bool) -> None:
    """Subscribe to a feed and fetch it immediately."""
    async def add_and_refresh():
        async with create_updater(config) as updater:
            feed = await updater.repository.add_feed(
                name=name or url,
                url=url,
                translate_enabled=translate,
                notification_enabled=notify,
            )
            click.echo(f"Added feed {feed.id}: {feed.name}")
            result = await updater.refresh_feed(feed.id)
            status = "ok" if result.success else f"failed: {result.error}"
            click.echo(f"{result.new_articles} articles ({status})")

    sys.exit(_run(add_and_refresh()))


@main.command("add-platform")
@click.option("--name", required=True)
@click.option("--api-url", required=True, help="Chat completions endpoint URL")
@click.option("--api-key", required=True)
@click.option("--model", required=True)
@click.option("--default/--no-default", "is_default", default=True)
@click.pass_obj
def add_platform(
    config: SyncConfig, name: str, api_url: str, api_key: str, model: str, is_default: bool
) -> None:
    """Store an AI platform used for translation."""
    async def store():
        repository = await Repository.open(config.db_path)
        try:
            platform = await repository.add_ai_platform(
                AIPlatform(
                    name=name,
                    api_url=api_url,
                    api_key=api_key,
                    api_model=model,
                    is_default=is_default,
                )
            )
            click.echo(f"Added AI platform {platform.id}: {platform.name}")
        finally:
            await repository.close()

    sys.exit(_run(store()))


@main.command()
@click.argument("prompt")
@click.pass_obj
def chat(config: SyncConfig, prompt: str) -> None:
    """Stream a chat completion from the configured AI platform."""
    async def stream():
        repository = await Repository.open(config.db_path)
        try:
            translator = await build_translator(config, repository)
        finally:
            await repository.close()

        await stream_chat(
            translator,
            [ChatMessage(role="user", content=prompt)],
            lambda fragment: click.echo(fragment, nl=False),
        )
        click.echo()

    sys.exit(_run(stream()))


if __name__ == "__main__":
    main()
