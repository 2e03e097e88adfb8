"""Overlay WebSocket hub.

The playback overlay (a browser source in the streaming software) connects
to /ws/overlay. The hub fans playback commands out to every connected
client and hands "ended"/"error" reports back to the orchestrator.

    orchestrator ──play/stop/pause/resume/seek──> hub ──JSON──> overlay(s)
    orchestrator <──on_ended/on_error────────────── hub <──JSON── overlay

A client whose send fails is dropped; malformed inbound messages are logged
and ignored.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from mediaqueue.exceptions import PlaybackError
from mediaqueue.models import Request
from mediaqueue.schemas.overlay import (
    EndedEvent,
    OverlayInbound,
    OverlayMessage,
    PauseCommand,
    PlayCommand,
    ResumeCommand,
    SeekCommand,
    StopCommand,
)

log = structlog.get_logger()

EndedHandler = Callable[[str], Awaitable[Any]]
ErrorHandler = Callable[[str, str], Awaitable[Any]]


class OverlayClient(Protocol):
    async def send_json(self, data: Any) -> None: ...


class OverlayHub:
    """Tracks overlay connections and broadcasts playback commands."""

    def __init__(self, media_route: str = "/media") -> None:
        self._clients: list[OverlayClient] = []
        self._media_route = media_route.rstrip("/")
        self._on_ended: EndedHandler | None = None
        self._on_error: ErrorHandler | None = None

    def set_handlers(self, on_ended: EndedHandler, on_error: ErrorHandler) -> None:
        self._on_ended = on_ended
        self._on_error = on_error

    @property
    def overlay_connected(self) -> bool:
        return bool(self._clients)

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def register(self, client: OverlayClient) -> None:
        self._clients.append(client)
        log.info("overlay_connected", connections=len(self._clients))

    def unregister(self, client: OverlayClient) -> None:
        if client in self._clients:
            self._clients.remove(client)
            log.info("overlay_disconnected", connections=len(self._clients))

    async def serve(self, websocket: WebSocket) -> None:
        """Accept a FastAPI WebSocket and pump its messages until it closes."""
        await websocket.accept()
        self.register(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.unregister(websocket)

    async def handle_message(self, raw: str | bytes) -> None:
        try:
            event = OverlayInbound.validate_json(raw)
        except ValidationError as e:
            log.warning("overlay_message_invalid", errors=e.error_count(), raw=str(raw)[:200])
            return

        if isinstance(event, EndedEvent):
            log.info("overlay_ended", request_id=event.request_id)
            if self._on_ended is not None:
                await self._on_ended(event.request_id)
        else:
            log.warning("overlay_error", request_id=event.request_id, reason=event.reason)
            if self._on_error is not None:
                await self._on_error(event.request_id, event.reason)

    async def broadcast(self, message: OverlayMessage) -> int:
        """Send to every client; returns how many received it."""
        payload = message.to_wire()
        delivered = 0
        for client in list(self._clients):
            try:
                await client.send_json(payload)
                delivered += 1
            except Exception as e:
                log.warning("overlay_send_failed", error=str(e), command=payload["type"])
                self.unregister(client)
        return delivered

    def media_url(self, file_name: str) -> str:
        return f"{self._media_route}/{file_name}"

    async def play(self, request: Request) -> None:
        if not request.file_name:
            raise PlaybackError(f"request {request.id} has no cached media")
        await self.broadcast(
            PlayCommand(
                request_id=request.id,
                url=self.media_url(request.file_name),
                title=request.title,
                requester=request.user_name,
            )
        )

    async def stop(self, fade_ms: int = 400) -> None:
        await self.broadcast(StopCommand(fade_ms=fade_ms))

    async def pause(self) -> None:
        await self.broadcast(PauseCommand())

    async def resume(self) -> None:
        await self.broadcast(ResumeCommand())

    async def seek(self, position_sec: float) -> None:
        await self.broadcast(SeekCommand(position_sec=position_sec))

    def status(self) -> dict[str, Any]:
        return {
            "overlay_connected": self.overlay_connected,
            "connections": self.connection_count,
        }
