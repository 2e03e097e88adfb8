"""Shared pytest fixtures for async database testing.

This module provides reusable fixtures for testing the services against an
in-memory SQLite database, plus small factories for seeding requests.
"""

from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from mediaqueue.config import DownloadSettings
from mediaqueue.models import QUEUE_BUCKET, Request, RequestStatus, utcnow
from mediaqueue.services.notifications import NotificationBus
from mediaqueue.services.policy_store import PolicyStore
from mediaqueue.services.request_service import RequestService
from mediaqueue.utils.ids import create_request_id


@pytest.fixture
def notifications() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def rules_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "rules.yaml"


@pytest.fixture
def write_rules(rules_path: Path):
    """Write a rules YAML file; returns the path."""

    def _write(**rules) -> Path:
        rules_path.parent.mkdir(parents=True, exist_ok=True)
        rules_path.write_text(yaml.safe_dump(rules), encoding="utf-8")
        return rules_path

    return _write


@pytest.fixture
def policy_store(rules_path: Path) -> PolicyStore:
    return PolicyStore(rules_path)


@pytest.fixture
def request_service(test_session_factory, notifications) -> RequestService:
    return RequestService(test_session_factory, notifications)


@pytest.fixture
def download_settings(tmp_path: Path) -> DownloadSettings:
    return DownloadSettings(
        cache_dir=str(tmp_path / "cache"),
        max_concurrent_downloads=2,
        ytdlp_path="yt-dlp",
    )


@pytest.fixture
def make_request(test_session_factory):
    """Insert a Request row with sensible defaults and return it."""

    async def _make(
        video_id: str = "dQw4w9WgXcQ",
        status: RequestStatus = RequestStatus.QUEUED,
        bucket: str = QUEUE_BUCKET,
        position: int | None = 1,
        created_offset_sec: int = 0,
        **fields,
    ) -> Request:
        url = fields.pop("url", f"https://www.youtube.com/watch?v={video_id}")
        request = Request(
            id=fields.pop("id", create_request_id()),
            bucket=bucket,
            platform=fields.pop("platform", "youtube"),
            original_message=url,
            url=url,
            parsed_site=fields.pop("parsed_site", "youtube"),
            parsed_video_id=video_id,
            parsed_normalized_url=url,
            status=status,
            queue_position=position,
            created_at=utcnow() + timedelta(seconds=created_offset_sec),
            **fields,
        )
        async with test_session_factory() as session, session.begin():
            session.add(request)
        return request

    return _make


# Import additional fixtures from fixtures/ package
from tests.fixtures.database import (  # noqa: F401, E402
    async_test_engine,
    async_test_session,
    test_session_factory,
)
