"""Comment source adapters.

Platform chat clients live outside this package; they only have to satisfy
the CommentSource protocol. CommentSourceRunner wires one source to one
CommentIngestionService (the single writer for that stream) and owns the
streaming task.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

from mediaqueue.services.comment_ingestion import CommentIngestionService, IngestResult

log = structlog.get_logger()


@dataclass(frozen=True)
class CommentEvent:
    """One chat message as delivered by a platform client."""

    id: str
    message: str
    timestamp_sec: float
    user_id: str | None = None
    user_name: str | None = None

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp_sec * 1000)


CommentHandler = Callable[[CommentEvent], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]


class CommentSource(Protocol):
    async def stream_comments(
        self, room_id: str, on_comment: CommentHandler, on_error: ErrorHandler
    ) -> None:
        """Deliver comments until stop() is called or the stream ends."""
        ...

    async def stop(self) -> None: ...


class CommentSourceRunner:
    """Streams one room into ingestion as platform comments."""

    def __init__(
        self,
        source: CommentSource,
        ingestion: CommentIngestionService,
        platform: str,
        room_id: str,
    ) -> None:
        self._source = source
        self._ingestion = ingestion
        self._platform = platform
        self._room_id = room_id
        self._task: asyncio.Task | None = None
        self._errors = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def error_count(self) -> int:
        return self._errors

    async def handle_comment(self, event: CommentEvent) -> IngestResult | None:
        try:
            return await self._ingestion.ingest(
                message=event.message,
                platform=self._platform,
                user_id=event.user_id,
                user_name=event.user_name,
                room_id=self._room_id,
                timestamp=event.timestamp_ms,
                comment_id=event.id,
            )
        except Exception as e:
            self.handle_error(e)
            return None

    def handle_error(self, error: Exception) -> None:
        self._errors += 1
        log.error(
            "comment_source_error",
            platform=self._platform,
            room_id=self._room_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    async def _on_comment(self, event: CommentEvent) -> None:
        await self.handle_comment(event)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._ingestion.mark_request_intake_opened()
        log.info("comment_source_started", platform=self._platform, room_id=self._room_id)
        self._task = asyncio.create_task(
            self._source.stream_comments(self._room_id, self._on_comment, self.handle_error)
        )
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._source.stop()
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.handle_error(e)
        self._task = None
        log.info("comment_source_stopped", platform=self._platform, room_id=self._room_id)
