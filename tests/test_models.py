"""Tests for the ORM models and the Request status state machine.

Tests cover:
- Valid and invalid status transitions (validates("status"))
- Identity immutability once set
- ParsedUrl reconstruction and owner id fallback
- Timestamp helpers (naive SQLite values, epoch ms)
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from mediaqueue.exceptions import InvalidStateTransitionError
from mediaqueue.models import (
    PlaybackLog,
    Request,
    RequestStatus,
    ensure_utc,
    from_epoch_ms,
    to_epoch_ms,
)


def _request(status: RequestStatus = RequestStatus.QUEUED) -> Request:
    return Request(
        id="req_test",
        url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        parsed_site="youtube",
        parsed_video_id="dQw4w9WgXcQ",
        status=status,
    )


class TestStatusTransitions:
    """Tests for Request.VALID_TRANSITIONS enforcement."""

    @pytest.mark.parametrize(
        "path",
        [
            [RequestStatus.VALIDATING, RequestStatus.DOWNLOADING, RequestStatus.READY],
            [RequestStatus.VALIDATING, RequestStatus.READY, RequestStatus.PLAYING],
            [RequestStatus.VALIDATING, RequestStatus.READY, RequestStatus.PLAYING, RequestStatus.DONE],
            [RequestStatus.SUSPEND, RequestStatus.READY],
        ],
    )
    def test_p0_lifecycle_paths_are_allowed(self, path):
        """[P0] Happy path, cache hit and suspend/resume paths validate."""
        request = _request()

        for status in path:
            request.status = status

        assert request.status == path[-1]

    def test_p0_queued_cannot_jump_to_playing(self):
        """[P0] An undownloaded request can never be played."""
        # GIVEN: A QUEUED request
        request = _request()

        # WHEN/THEN: Jumping to PLAYING raises with both statuses attached
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            request.status = RequestStatus.PLAYING

        assert exc_info.value.from_status == RequestStatus.QUEUED
        assert exc_info.value.to_status == RequestStatus.PLAYING
        assert "QUEUED" in str(exc_info.value)

    def test_p1_terminal_statuses_have_no_exits(self):
        """[P1] REJECTED/FAILED are terminal."""
        assert Request.VALID_TRANSITIONS[RequestStatus.REJECTED] == []
        assert Request.VALID_TRANSITIONS[RequestStatus.FAILED] == []

    def test_p2_reassigning_current_status_is_noop(self):
        """[P2] READY → READY does not raise."""
        request = _request(RequestStatus.READY)

        request.status = RequestStatus.READY

        assert request.status == RequestStatus.READY


class TestIdentity:
    def test_p1_identity_is_immutable_once_set(self):
        """[P1] parsed_video_id cannot be rewritten."""
        request = _request()

        with pytest.raises(ValueError, match="immutable"):
            request.parsed_video_id = "other"

    def test_p1_parsed_reconstructs_identity(self):
        request = _request()
        request.parsed_normalized_url = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

        parsed = request.parsed

        assert parsed.site == "youtube"
        assert parsed.video_id == "dQw4w9WgXcQ"
        assert parsed.raw_url == request.url

    def test_p2_owner_id_falls_back_to_user_name(self):
        request = _request()
        request.user_name = "viewer"

        assert request.owner_id == "viewer"

        request.user_id = "UC123"
        assert request.owner_id == "UC123"


class TestTimestampHelpers:
    def test_p1_ensure_utc_attaches_timezone(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)

        assert ensure_utc(naive).tzinfo == timezone.utc
        assert ensure_utc(None) is None

    def test_p2_epoch_ms_conversion(self):
        value = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert to_epoch_ms(value) == 1704067200000
        assert from_epoch_ms(1704067200000) == value


class TestPersistence:
    async def test_p1_request_and_playback_log_persist(self, async_test_session):
        """[P1] Rows round-trip through SQLite with defaults applied."""
        # GIVEN: A request and a playback log
        request = _request()
        async_test_session.add(request)
        await async_test_session.flush()
        async_test_session.add(PlaybackLog(request_id=request.id, url=request.url))
        await async_test_session.commit()

        # WHEN: Reading back
        stored = await async_test_session.get(Request, "req_test")
        logs = (await async_test_session.execute(select(PlaybackLog))).scalars().all()

        # THEN: Defaults are filled in
        assert stored.bucket == "queue"
        assert stored.created_at is not None
        assert len(logs) == 1
        assert logs[0].request_id == "req_test"
