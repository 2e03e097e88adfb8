"""Tests for the overlay WebSocket hub and its wire schema."""

from unittest.mock import AsyncMock

import pytest

from mediaqueue.exceptions import PlaybackError
from mediaqueue.models import Request, RequestStatus
from mediaqueue.schemas.overlay import StopCommand
from mediaqueue.services.overlay_hub import OverlayHub


class FakeClient:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self._fail = fail

    async def send_json(self, data) -> None:
        if self._fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.fixture
def hub() -> OverlayHub:
    return OverlayHub()


class TestBroadcast:
    async def test_p0_play_command_wire_format(self, hub):
        """[P0] Play commands use camelCase keys and the /media route."""
        # GIVEN: One connected overlay
        client = FakeClient()
        hub.register(client)
        request = Request(
            id="req_1",
            url="https://youtu.be/dQw4w9WgXcQ",
            status=RequestStatus.READY,
            title="Song",
            user_name="viewer",
            file_name="youtube_dqw4w9wgxcq.media.json",
        )

        # WHEN: Playing
        await hub.play(request)

        # THEN: The overlay receives the manifest URL
        assert client.sent == [
            {
                "type": "play",
                "requestId": "req_1",
                "url": "/media/youtube_dqw4w9wgxcq.media.json",
                "title": "Song",
                "requester": "viewer",
                "volume": 1,
                "loop": False,
            }
        ]

    async def test_p1_play_without_cache_raises(self, hub):
        request = Request(id="req_1", url="u", status=RequestStatus.READY)

        with pytest.raises(PlaybackError):
            await hub.play(request)

    async def test_p1_failed_client_is_dropped(self, hub):
        good, bad = FakeClient(), FakeClient(fail=True)
        hub.register(good)
        hub.register(bad)

        delivered = await hub.broadcast(StopCommand(fade_ms=200))

        assert delivered == 1
        assert good.sent == [{"type": "stop", "fadeMs": 200}]
        assert hub.connection_count == 1

    async def test_p2_pause_resume_seek(self, hub):
        client = FakeClient()
        hub.register(client)

        await hub.pause()
        await hub.resume()
        await hub.seek(42.5)

        assert [m["type"] for m in client.sent] == ["pause", "resume", "seek"]
        assert client.sent[-1]["positionSec"] == 42.5

    def test_p2_status(self, hub):
        assert hub.status() == {"overlay_connected": False, "connections": 0}
        hub.register(FakeClient())
        assert hub.status() == {"overlay_connected": True, "connections": 1}


class TestInbound:
    async def test_p0_ended_dispatches_to_handler(self, hub):
        on_ended, on_error = AsyncMock(), AsyncMock()
        hub.set_handlers(on_ended, on_error)

        await hub.handle_message('{"type": "ended", "requestId": "req_1"}')

        on_ended.assert_awaited_once_with("req_1")
        on_error.assert_not_awaited()

    async def test_p1_error_carries_reason(self, hub):
        on_ended, on_error = AsyncMock(), AsyncMock()
        hub.set_handlers(on_ended, on_error)

        await hub.handle_message('{"type": "error", "request_id": "req_1", "reason": "decode"}')

        on_error.assert_awaited_once_with("req_1", "decode")

    @pytest.mark.parametrize(
        "raw",
        ['{"type": "ended"}', '{"type": "launch", "requestId": "x"}', "not json", "[]"],
    )
    async def test_p1_malformed_messages_are_ignored(self, hub, raw):
        on_ended, on_error = AsyncMock(), AsyncMock()
        hub.set_handlers(on_ended, on_error)

        await hub.handle_message(raw)

        on_ended.assert_not_awaited()
        on_error.assert_not_awaited()
