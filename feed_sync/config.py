"""Configuration for feed_sync.

Settings come from environment variables only:

    FEED_SYNC_DB_PATH                database file (default ~/.feed_sync/feed_sync.db)
    FEED_SYNC_LOG_LEVEL              logging level (default INFO)
    FEED_SYNC_UPDATE_INTERVAL        seconds between polling cycles (default 300)
    FEED_SYNC_FETCH_TIMEOUT          feed fetch timeout in seconds (default 30)
    FEED_SYNC_TARGET_LANGUAGE        translation target language (default zh-CN)
    FEED_SYNC_TRANSLATE_MAX_TOKENS   max_tokens sent to the endpoint (default 4096)
    FEED_SYNC_TRANSLATE_TEMPERATURE  temperature sent to the endpoint (default 0.7)
    FEED_SYNC_TRANSLATE_TIMEOUT      translation request timeout (default 30)
    FEED_SYNC_STREAM_DELAY           pause after each streamed fragment (default 0.01)
    FEED_SYNC_AI_API_URL / FEED_SYNC_AI_API_KEY / FEED_SYNC_AI_MODEL
                                     optional platform used instead of the stored default
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

from feed_sync.models.schemas import AIPlatform


T = TypeVar("T")


@dataclass
class TranslatorConfig:
    """Request parameters for the translation client."""

    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: float = 30.0
    stream_fragment_delay: float = 0.01


@dataclass
class SyncConfig:
    """Top-level configuration passed explicitly to every component."""

    name: str = "feed_sync"
    log_level: str = "INFO"
    db_path: Path = field(default_factory=lambda: Path.home() / ".feed_sync" / "feed_sync.db")
    update_interval: float = 300.0
    fetch_timeout: float = 30.0
    target_language: str = "zh-CN"
    translator: TranslatorConfig = field(default_factory=TranslatorConfig)
    platform: Optional[AIPlatform] = None


def _read(env: Mapping[str, str], name: str, convert: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return convert(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e


def load_config(env: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """Build a SyncConfig from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        Populated SyncConfig

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    if env is None:
        env = os.environ

    defaults = SyncConfig()
    translator = TranslatorConfig(
        max_tokens=_read(env, "FEED_SYNC_TRANSLATE_MAX_TOKENS", int, TranslatorConfig.max_tokens),
        temperature=_read(env, "FEED_SYNC_TRANSLATE_TEMPERATURE", float, TranslatorConfig.temperature),
        timeout=_read(env, "FEED_SYNC_TRANSLATE_TIMEOUT", float, TranslatorConfig.timeout),
        stream_fragment_delay=_read(
            env, "FEED_SYNC_STREAM_DELAY", float, TranslatorConfig.stream_fragment_delay
        ),
    )

    platform = None
    api_url = env.get("FEED_SYNC_AI_API_URL")
    if api_url:
        platform = AIPlatform(
            name="env",
            api_url=api_url,
            api_key=env.get("FEED_SYNC_AI_API_KEY", ""),
            api_model=env.get("FEED_SYNC_AI_MODEL", ""),
            is_default=True,
        )

    return SyncConfig(
        log_level=env.get("FEED_SYNC_LOG_LEVEL", defaults.log_level).upper(),
        db_path=_read(env, "FEED_SYNC_DB_PATH", Path, defaults.db_path),
        update_interval=_read(env, "FEED_SYNC_UPDATE_INTERVAL", float, defaults.update_interval),
        fetch_timeout=_read(env, "FEED_SYNC_FETCH_TIMEOUT", float, defaults.fetch_timeout),
        target_language=env.get("FEED_SYNC_TARGET_LANGUAGE", defaults.target_language),
        translator=translator,
        platform=platform,
    )


_config: Optional[SyncConfig] = None


def get_config() -> SyncConfig:
    """Return the process configuration, loading it on first use."""
    global _config

    if _config is None:
        _config = load_config()
    return _config
