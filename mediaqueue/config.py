"""Configuration management for the media queue.

This module provides centralized configuration loading from environment variables.
Only the database URL is cached; everything the download worker needs is
re-read on every tick through get_download_settings() so operator changes
take effect without a restart.

Environment Variables:
    DATABASE_URL: Database URL (default: sqlite+aiosqlite:///mediaqueue.db)
    MEDIAQUEUE_CACHE_DIR: Downloaded media + manifests (default: cache/videos)
    MEDIAQUEUE_RULES_PATH: Operator rules YAML (default: config/rules.yaml)
    MEDIAQUEUE_STOCK_DIR: Stock list JSON files (default: config/stocks)
    MAX_CONCURRENT_DOWNLOADS: Download slots (default: 5)
    YTDLP_PATH / FFMPEG_PATH: External binaries
    YTDLP_COOKIES_FROM_BROWSER[_KEYRING|_PROFILE|_CONTAINER]: Cookie source
    YTDLP_USER_AGENT / YTDLP_BILIBILI_PROXY: Optional downloader overrides

Usage:
    from mediaqueue.config import get_download_settings

    settings = get_download_settings()
    slots = settings.max_concurrent_downloads - downloading_count
"""

import os
from dataclasses import dataclass
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///mediaqueue.db"
DEFAULT_MAX_CONCURRENT_DOWNLOADS = 5
DEFAULT_STALL_TIMEOUT_SECONDS = 300
DEFAULT_METADATA_TIMEOUT_SECONDS = 60
DEFAULT_TICK_SECONDS = 2.0


def _get_int_env(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer environment variable clamped to [minimum, maximum]."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(minimum, min(maximum, int(raw)))
    except ValueError:
        log.warning("invalid_int_setting", name=name, value=raw, using_default=default)
        return default


def _get_float_env(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(minimum, min(maximum, float(raw)))
    except ValueError:
        log.warning("invalid_float_setting", name=name, value=raw, using_default=default)
        return default


def _get_optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: Database connection URL (default: local SQLite file)

    Returns:
        Database URL with an async driver.
    """
    url = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

    return url


def get_database_echo() -> bool:
    return os.getenv("DATABASE_ECHO", "").lower() == "true"


def get_cache_dir() -> str:
    """Get the media cache directory.

    Environment Variable:
        MEDIAQUEUE_CACHE_DIR: Directory for downloaded artifacts (default: "cache/videos")
    """
    return os.getenv("MEDIAQUEUE_CACHE_DIR", "cache/videos")


def get_rules_path() -> str:
    """Get the operator rules YAML path.

    Environment Variable:
        MEDIAQUEUE_RULES_PATH: Rules file (default: "config/rules.yaml")
    """
    return os.getenv("MEDIAQUEUE_RULES_PATH", "config/rules.yaml")


def get_stock_dir() -> str:
    """Get the stock list directory.

    Environment Variable:
        MEDIAQUEUE_STOCK_DIR: Directory of <name>.json stock files (default: "config/stocks")
    """
    return os.getenv("MEDIAQUEUE_STOCK_DIR", "config/stocks")


def get_max_concurrent_downloads() -> int:
    """Get the maximum number of simultaneous DOWNLOADING requests.

    Environment Variable:
        MAX_CONCURRENT_DOWNLOADS: Download slots (default: 5, clamped to 1-32)
    """
    return _get_int_env("MAX_CONCURRENT_DOWNLOADS", DEFAULT_MAX_CONCURRENT_DOWNLOADS, 1, 32)


def get_download_tick_seconds() -> float:
    return _get_float_env("DOWNLOAD_TICK_SECONDS", DEFAULT_TICK_SECONDS, 0.1, 60.0)


def get_autoplay_tick_seconds() -> float:
    return _get_float_env("AUTOPLAY_TICK_SECONDS", DEFAULT_TICK_SECONDS, 0.1, 60.0)


def is_download_worker_embedded() -> bool:
    """Whether the web process runs the download loop itself.

    Environment Variable:
        DOWNLOAD_WORKER_EMBEDDED: "false" when `python -m mediaqueue.worker`
            runs as a separate process (default: "true")
    """
    return os.getenv("DOWNLOAD_WORKER_EMBEDDED", "true").lower() != "false"


@dataclass(frozen=True)
class DownloadSettings:
    """Snapshot of downloader settings taken at the start of a worker tick."""

    cache_dir: str
    max_concurrent_downloads: int
    ytdlp_path: str
    ffmpeg_path: str | None = None
    cookies_from_browser: str | None = None
    cookies_keyring: str | None = None
    cookies_profile: str | None = None
    cookies_container: str | None = None
    user_agent: str | None = None
    bilibili_proxy: str | None = None
    stall_timeout_seconds: int = DEFAULT_STALL_TIMEOUT_SECONDS
    metadata_timeout_seconds: int = DEFAULT_METADATA_TIMEOUT_SECONDS

    @property
    def cookie_spec(self) -> str | None:
        """yt-dlp --cookies-from-browser spec: browser[+keyring][:profile][::container]."""
        if not self.cookies_from_browser:
            return None
        spec = self.cookies_from_browser
        if self.cookies_keyring:
            spec = f"{spec}+{self.cookies_keyring}"
        if self.cookies_profile:
            spec = f"{spec}:{self.cookies_profile}"
        if self.cookies_container:
            spec = f"{spec}::{self.cookies_container}"
        return spec

    @property
    def cookie_args(self) -> list[str]:
        spec = self.cookie_spec
        return ["--cookies-from-browser", spec] if spec else []


def get_download_settings() -> DownloadSettings:
    """Load downloader settings from environment (never cached)."""
    return DownloadSettings(
        cache_dir=get_cache_dir(),
        max_concurrent_downloads=get_max_concurrent_downloads(),
        ytdlp_path=os.getenv("YTDLP_PATH", "yt-dlp"),
        ffmpeg_path=_get_optional_env("FFMPEG_PATH"),
        cookies_from_browser=_get_optional_env("YTDLP_COOKIES_FROM_BROWSER"),
        cookies_keyring=_get_optional_env("YTDLP_COOKIES_FROM_BROWSER_KEYRING"),
        cookies_profile=_get_optional_env("YTDLP_COOKIES_FROM_BROWSER_PROFILE"),
        cookies_container=_get_optional_env("YTDLP_COOKIES_FROM_BROWSER_CONTAINER"),
        user_agent=_get_optional_env("YTDLP_USER_AGENT"),
        bilibili_proxy=_get_optional_env("YTDLP_BILIBILI_PROXY"),
        stall_timeout_seconds=_get_int_env(
            "YTDLP_STALL_TIMEOUT_SECONDS", DEFAULT_STALL_TIMEOUT_SECONDS, 10, 3600
        ),
        metadata_timeout_seconds=_get_int_env(
            "YTDLP_METADATA_TIMEOUT_SECONDS", DEFAULT_METADATA_TIMEOUT_SECONDS, 5, 600
        ),
    )
