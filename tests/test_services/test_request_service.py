"""Tests for RequestService and the request repository helpers.

Test Coverage:
- Status primitive side effects (notices, DONE clears position, terminal delete)
- Compare-and-set updates
- Queue ordering, reorder, suspend/resume
- Shuffle-aware selection of the next READY item
- Restart recovery, summary and bulk clears
"""

import random

import pytest
from sqlalchemy import select

from mediaqueue.exceptions import InvalidStateTransitionError, RequestNotFoundError
from mediaqueue.models import Comment, PlaybackLog, Request, RequestStatus, utcnow
from mediaqueue.services.request_service import (
    STOP_REASON,
    ShuffleMode,
    insert_playback_log,
    pick_next_ready,
)


class TestUpdateStatus:
    """Tests for the single status mutation primitive."""

    async def test_p0_entering_ready_emits_accepted_notice(
        self, request_service, make_request, notifications
    ):
        """[P0] READY in the live queue tells the viewer the request was accepted."""
        # GIVEN: A downloading request
        request = await make_request(status=RequestStatus.DOWNLOADING, title="Song")

        # WHEN: It becomes READY
        updated = await request_service.update_status(request.id, RequestStatus.READY)

        # THEN: One accepted notice
        assert updated.status == RequestStatus.READY
        keys = [n.title_key for n in notifications.history]
        assert keys == ["request_accepted_title"]
        assert notifications.history[0].params["title"] == "Song"

    async def test_p1_stop_demotion_is_silent(self, request_service, make_request, notifications):
        request = await make_request(status=RequestStatus.PLAYING)

        await request_service.update_status(request.id, RequestStatus.READY, STOP_REASON)

        assert notifications.history == []

    async def test_p0_failed_request_is_deleted_with_comment_trace(
        self, request_service, make_request, test_session_factory, notifications
    ):
        """[P0] FAILED rows disappear, the comment keeps status and reason."""
        # GIVEN: A request spawned by a comment
        async with test_session_factory() as session, session.begin():
            session.add(
                Comment(
                    id="c1",
                    platform="youtube",
                    message="https://youtu.be/dQw4w9WgXcQ",
                    published_at=utcnow(),
                )
            )
        request = await make_request(status=RequestStatus.DOWNLOADING, comment_id="c1")

        # WHEN: The download fails
        result = await request_service.update_status(
            request.id, RequestStatus.FAILED, "download failed"
        )

        # THEN: Row removed, comment keeps the trace, error notice emitted
        assert result is None
        assert await request_service.get(request.id) is None
        async with test_session_factory() as session:
            comment = await session.get(Comment, "c1")
        assert comment.request_id == request.id
        assert comment.request_status == "FAILED"
        assert comment.request_status_reason == "download failed"
        assert notifications.history[-1].level == "error"

    async def test_p1_done_clears_queue_position(self, request_service, make_request):
        request = await make_request(status=RequestStatus.READY, position=4)

        updated = await request_service.update_status(request.id, RequestStatus.DONE)

        assert updated.queue_position is None

    async def test_p1_invalid_transition_raises(self, request_service, make_request):
        request = await make_request(status=RequestStatus.QUEUED)

        with pytest.raises(InvalidStateTransitionError):
            await request_service.update_status(request.id, RequestStatus.PLAYING)

    async def test_p1_compare_and_set_skips_when_status_moved(self, request_service, make_request):
        """[P1] expected= guards against overwriting a concurrent transition."""
        # GIVEN: A request that was suspended meanwhile
        request = await make_request(status=RequestStatus.SUSPEND)

        # WHEN: A worker tries to mark it READY expecting DOWNLOADING
        result = await request_service.update_status(
            request.id, RequestStatus.READY, expected=[RequestStatus.DOWNLOADING]
        )

        # THEN: Nothing is written
        assert result is None
        assert (await request_service.get(request.id)).status == RequestStatus.SUSPEND

    async def test_p2_missing_request_returns_none(self, request_service):
        assert await request_service.update_status("req_missing", RequestStatus.DONE) is None

    async def test_p1_update_fields_routes_status(self, request_service, make_request):
        request = await make_request(status=RequestStatus.VALIDATING)

        updated = await request_service.update_fields(
            request.id, title="Fetched", duration_sec=200.0, status=RequestStatus.DOWNLOADING
        )

        assert updated.title == "Fetched"
        assert updated.status == RequestStatus.DOWNLOADING


class TestQueueOrdering:
    async def test_p1_playing_first_then_position_then_created(self, request_service, make_request):
        """[P1] PLAYING sorts first; ties on position break by creation time."""
        later = await make_request(
            video_id="bbbbbbbbbbb", status=RequestStatus.READY, position=1, created_offset_sec=10
        )
        earlier = await make_request(video_id="aaaaaaaaaaa", status=RequestStatus.READY, position=1)
        playing = await make_request(
            video_id="ccccccccccc", status=RequestStatus.PLAYING, position=5
        )
        unplaced = await make_request(
            video_id="ddddddddddd", status=RequestStatus.QUEUED, position=None
        )

        page = await request_service.list_requests()

        assert [r.id for r in page.items] == [playing.id, earlier.id, later.id, unplaced.id]
        assert page.total == 4

    async def test_p2_stock_buckets_are_separate(self, request_service, make_request):
        await make_request(bucket="favorites")
        await make_request(video_id="aaaaaaaaaaa")

        page = await request_service.list_requests(bucket="favorites")

        assert page.total == 1


class TestReorder:
    async def test_p1_reorder_sets_position(self, request_service, make_request):
        request = await make_request(status=RequestStatus.READY, position=3)

        updated = await request_service.reorder(request.id, 1)

        assert updated.queue_position == 1

    async def test_p1_reordering_done_item_promotes_to_ready(self, request_service, make_request):
        request = await make_request(status=RequestStatus.DONE, position=None)

        updated = await request_service.reorder(request.id, 2)

        assert updated.status == RequestStatus.READY
        assert updated.queue_position == 2

    async def test_p2_reorder_rejects_playing_and_bad_positions(self, request_service, make_request):
        request = await make_request(status=RequestStatus.PLAYING)

        with pytest.raises(ValueError):
            await request_service.reorder(request.id, 0)
        with pytest.raises(ValueError):
            await request_service.reorder(request.id, 1)
        with pytest.raises(RequestNotFoundError):
            await request_service.reorder("req_missing", 1)


class TestSuspendResume:
    async def test_p0_resumed_item_goes_to_back_of_queue(self, request_service, make_request):
        """[P0] A resumed item is placed after everything already queued."""
        # GIVEN: Two queued items and one suspended item at the front
        suspended = await make_request(video_id="aaaaaaaaaaa", status=RequestStatus.READY, position=1)
        await make_request(video_id="bbbbbbbbbbb", status=RequestStatus.READY, position=2)
        await make_request(video_id="ccccccccccc", status=RequestStatus.QUEUED, position=3)
        await request_service.suspend([suspended.id])

        # WHEN: Resuming it
        resumed = await request_service.resume([suspended.id])

        # THEN: READY at the back
        assert len(resumed) == 1
        assert resumed[0].status == RequestStatus.READY
        assert resumed[0].queue_position == 4
        page = await request_service.list_requests(statuses=[RequestStatus.READY])
        assert page.items[-1].id == suspended.id

    async def test_p1_suspend_records_previous_status(self, request_service, make_request):
        request = await make_request(status=RequestStatus.DOWNLOADING)

        updated = await request_service.suspend([request.id])

        assert updated[0].status == RequestStatus.SUSPEND
        assert updated[0].status_reason == "DOWNLOADING"

    async def test_p2_non_suspendable_ids_are_skipped(self, request_service, make_request):
        playing = await make_request(status=RequestStatus.PLAYING)

        assert await request_service.suspend([playing.id, "req_missing"]) == []
        assert await request_service.resume([playing.id]) == []


class TestNextReadySelection:
    def _ready(self, positions):
        return [
            Request(id=f"req_{i}", url="u", status=RequestStatus.READY, queue_position=p)
            for i, p in enumerate(positions)
        ]

    def test_p1_off_takes_head(self):
        ready = self._ready([1, 2, 3])

        assert pick_next_ready(ready, ShuffleMode.OFF).id == "req_0"

    def test_p1_priority_picks_among_lowest_position(self):
        ready = self._ready([2, 2, 5])

        chosen = {
            pick_next_ready(ready, ShuffleMode.PRIORITY, random.Random(seed)).id
            for seed in range(20)
        }

        assert chosen <= {"req_0", "req_1"}

    def test_p2_empty_queue(self):
        assert pick_next_ready([], ShuffleMode.ANY) is None

    def test_p2_mode_cycles(self):
        assert ShuffleMode.OFF.next() == ShuffleMode.PRIORITY
        assert ShuffleMode.PRIORITY.next() == ShuffleMode.ANY
        assert ShuffleMode.ANY.next() == ShuffleMode.OFF

    async def test_p1_select_next_ready_ignores_stock(self, request_service, make_request):
        await make_request(bucket="stock", status=RequestStatus.READY, position=1)
        queued = await make_request(video_id="aaaaaaaaaaa", status=RequestStatus.READY, position=2)

        chosen = await request_service.select_next_ready(ShuffleMode.OFF)

        assert chosen.id == queued.id


class TestRecovery:
    async def test_p1_recover_after_restart(self, request_service, make_request):
        """[P1] PLAYING → READY, VALIDATING/DOWNLOADING → QUEUED."""
        playing = await make_request(video_id="aaaaaaaaaaa", status=RequestStatus.PLAYING)
        downloading = await make_request(video_id="bbbbbbbbbbb", status=RequestStatus.DOWNLOADING)
        validating = await make_request(video_id="ccccccccccc", status=RequestStatus.VALIDATING)

        result = await request_service.recover_after_restart()

        assert result == {"demoted_playing": 1, "requeued_downloads": 2}
        assert (await request_service.get(playing.id)).status == RequestStatus.READY
        assert (await request_service.get(downloading.id)).status == RequestStatus.QUEUED
        assert (await request_service.get(validating.id)).status == RequestStatus.QUEUED

    async def test_p1_requeue_for_download_clears_cache_fields(self, request_service, make_request):
        request = await make_request(
            status=RequestStatus.READY, file_name="x.json", cache_file_size=10, position=None
        )

        updated = await request_service.requeue_for_download(request.id)

        assert updated.status == RequestStatus.QUEUED
        assert updated.file_name is None
        assert updated.cache_file_size is None
        assert updated.queue_position == 1


class TestSummaryAndClears:
    async def test_p1_summary_counts_pending_with_duration(self, request_service, make_request):
        await make_request(video_id="aaaaaaaaaaa", status=RequestStatus.READY, duration_sec=100.0)
        await make_request(video_id="bbbbbbbbbbb", status=RequestStatus.QUEUED, duration_sec=50.0)
        await make_request(video_id="ccccccccccc", status=RequestStatus.QUEUED)
        await make_request(video_id="ddddddddddd", status=RequestStatus.DONE, duration_sec=999.0)
        await make_request(video_id="eeeeeeeeeee", bucket="stock", duration_sec=10.0)

        summary = await request_service.summary()

        assert summary.total_items == 4
        assert summary.pending_items == 2
        assert summary.pending_duration_sec == 150.0

    async def test_p1_clear_all_keeps_playback_history(
        self, request_service, make_request, test_session_factory
    ):
        request = await make_request(status=RequestStatus.READY)
        async with test_session_factory() as session, session.begin():
            await insert_playback_log(session, await session.get(Request, request.id))

        deleted = await request_service.clear_all()

        assert deleted == 1
        logs = await request_service.list_playback_logs()
        assert len(logs) == 1
        assert logs[0].request_id is None

    async def test_p2_clear_playback_logs(self, request_service, make_request, test_session_factory):
        request = await make_request(status=RequestStatus.READY)
        async with test_session_factory() as session, session.begin():
            await insert_playback_log(session, await session.get(Request, request.id))

        assert await request_service.clear_playback_logs() == 1
        async with test_session_factory() as session:
            assert (await session.execute(select(PlaybackLog))).scalars().all() == []

    async def test_p2_delete_twice_returns_none(self, request_service, make_request):
        request = await make_request()

        deleted = await request_service.delete(request.id)

        assert deleted.id == request.id
        assert await request_service.delete(request.id) is None
