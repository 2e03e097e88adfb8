"""Tests for mediaqueue/config.py configuration module.

This module tests:
- Database URL normalization to async drivers
- Clamped numeric settings with fallback on garbage
- DownloadSettings snapshot and cookie spec composition

Priority: P1 - Configuration is read by every background loop.
"""

import pytest

from mediaqueue.config import (
    DEFAULT_MAX_CONCURRENT_DOWNLOADS,
    DownloadSettings,
    get_database_url,
    get_download_settings,
    get_max_concurrent_downloads,
    is_download_worker_embedded,
)


@pytest.fixture(autouse=True)
def clear_database_url_cache():
    get_database_url.cache_clear()
    yield
    get_database_url.cache_clear()


class TestGetDatabaseUrl:
    """Tests for get_database_url function."""

    def test_p1_defaults_to_local_sqlite(self, monkeypatch: pytest.MonkeyPatch):
        """[P1] Should use the aiosqlite file database when DATABASE_URL is unset."""
        # GIVEN: DATABASE_URL is not set
        monkeypatch.delenv("DATABASE_URL", raising=False)

        # WHEN: Reading the URL
        result = get_database_url()

        # THEN: Local SQLite with the async driver
        assert result == "sqlite+aiosqlite:///mediaqueue.db"

    def test_p1_rewrites_postgresql_to_asyncpg(self, monkeypatch: pytest.MonkeyPatch):
        """[P1] Should convert postgresql:// to postgresql+asyncpg://."""
        # GIVEN: A plain PostgreSQL URL
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/queue")

        # WHEN: Reading the URL
        result = get_database_url()

        # THEN: asyncpg driver is selected
        assert result == "postgresql+asyncpg://u:p@db:5432/queue"

    def test_p2_rewrites_sync_sqlite_to_aiosqlite(self, monkeypatch: pytest.MonkeyPatch):
        """[P2] Should convert sqlite:/// to sqlite+aiosqlite:///."""
        monkeypatch.setenv("DATABASE_URL", "sqlite:///other.db")

        assert get_database_url() == "sqlite+aiosqlite:///other.db"


class TestNumericSettings:
    """Tests for clamped integer settings."""

    def test_p1_clamps_concurrency_to_range(self, monkeypatch: pytest.MonkeyPatch):
        """[P1] Values outside 1-32 are clamped."""
        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "0")
        assert get_max_concurrent_downloads() == 1

        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "500")
        assert get_max_concurrent_downloads() == 32

    def test_p2_invalid_value_falls_back_to_default(self, monkeypatch: pytest.MonkeyPatch):
        """[P2] Non-numeric values use the default instead of raising."""
        # GIVEN: A garbage value
        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "lots")

        # WHEN/THEN: Default is returned
        assert get_max_concurrent_downloads() == DEFAULT_MAX_CONCURRENT_DOWNLOADS


class TestDownloadSettings:
    """Tests for the per-tick DownloadSettings snapshot."""

    def test_p1_reads_environment_each_call(self, monkeypatch: pytest.MonkeyPatch):
        """[P1] Settings are not cached between ticks."""
        # GIVEN: One concurrency value
        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "3")
        first = get_download_settings()

        # WHEN: The environment changes
        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "7")
        second = get_download_settings()

        # THEN: The next snapshot sees the new value
        assert first.max_concurrent_downloads == 3
        assert second.max_concurrent_downloads == 7

    def test_p1_cookie_spec_composition(self):
        """[P1] browser[+keyring][:profile][::container]."""
        settings = DownloadSettings(
            cache_dir="cache",
            max_concurrent_downloads=1,
            ytdlp_path="yt-dlp",
            cookies_from_browser="firefox",
            cookies_keyring="gnomekeyring",
            cookies_profile="default-release",
            cookies_container="Personal",
        )

        assert settings.cookie_spec == "firefox+gnomekeyring:default-release::Personal"
        assert settings.cookie_args == [
            "--cookies-from-browser",
            "firefox+gnomekeyring:default-release::Personal",
        ]

    def test_p2_no_browser_means_no_cookie_args(self):
        """[P2] Without a browser the keyring/profile are ignored."""
        settings = DownloadSettings(
            cache_dir="cache",
            max_concurrent_downloads=1,
            ytdlp_path="yt-dlp",
            cookies_profile="ignored",
        )

        assert settings.cookie_spec is None
        assert settings.cookie_args == []

    def test_p2_blank_optional_values_are_none(self, monkeypatch: pytest.MonkeyPatch):
        """[P2] Whitespace-only optional settings are treated as unset."""
        monkeypatch.setenv("YTDLP_USER_AGENT", "   ")

        assert get_download_settings().user_agent is None


class TestWorkerEmbedding:
    def test_p2_embedded_by_default(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("DOWNLOAD_WORKER_EMBEDDED", raising=False)
        assert is_download_worker_embedded() is True

    def test_p2_can_be_disabled(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DOWNLOAD_WORKER_EMBEDDED", "false")
        assert is_download_worker_embedded() is False
