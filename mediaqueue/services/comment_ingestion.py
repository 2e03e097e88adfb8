"""Chat comment ingestion.

Turns raw chat events into persisted comments and, when the acceptance
guards pass, QUEUED requests at the front of the live queue.

Ordering and deduplication (per service instance, i.e. per stream source):
    - Events published within ±BUFFER_WINDOW_MS of the intake-open time are
      buffered and applied later, sorted by (published, received).
    - Events older than the intake-open time, older than the watermark, or
      whose comment id was already processed at an equal or later time are
      skipped with a warning code instead of an exception.

Poll votes ("yes"/"no" words) are counted for the currently playing request
in addition to any request attempt in the same message.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.exceptions import InvalidCommentError
from mediaqueue.models import (
    QUEUE_BUCKET,
    Comment,
    Request,
    RequestStatus,
    from_epoch_ms,
    to_epoch_ms,
    utcnow,
)
from mediaqueue.services import request_service
from mediaqueue.services.notifications import NotificationBus
from mediaqueue.services.policy_store import PolicyStore
from mediaqueue.services.poll import ContinuationPoll, normalize_poll_vote
from mediaqueue.services.request_guards import GuardContext, run_guards
from mediaqueue.utils.ids import create_comment_id, create_request_id

log = structlog.get_logger()

BUFFER_WINDOW_MS = 5000
INTAKE_PAUSED_REASON = "Please wait until intake resumes"


@dataclass(frozen=True)
class IngestResult:
    comment: Comment | None
    request: Request | None
    warning: str | None = None


@dataclass(frozen=True)
class CommentInput:
    message: str
    platform: str
    user_id: str | None = None
    user_name: str | None = None
    room_id: str | None = None
    comment_id: str | None = None
    allow_request_creation: bool = True
    warn_on_missing_url: bool = False
    queue_position: int | None = None


@dataclass
class _PendingComment:
    payload: CommentInput
    published_ms: int
    received_ms: int
    sequence: int = field(default=0)

    def sort_key(self) -> tuple[int, int, int]:
        return (self.published_ms, self.received_ms, self.sequence)


class IntakeGate:
    """Process-wide switch that stops new requests while comments still flow."""

    def __init__(self, notifications: NotificationBus) -> None:
        self._notifications = notifications
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    def set_paused(self, paused: bool) -> bool:
        self._paused = bool(paused)
        log.info("intake_state_set", paused=self._paused)
        return self._paused

    def toggle(self) -> bool:
        self._paused = not self._paused
        self._notifications.emit(
            "info",
            title_key="request_intake_paused_title"
            if self._paused
            else "request_intake_resumed_title",
        )
        log.info("intake_toggled", paused=self._paused)
        return self._paused


def _now_ms() -> int:
    return to_epoch_ms(utcnow())


class CommentIngestionService:
    """Single-writer ingestion pipeline for one comment source."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy_store: PolicyStore,
        notifications: NotificationBus,
        intake_gate: IntakeGate | None = None,
        poll: ContinuationPoll | None = None,
        opened_at_ms: int | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy_store = policy_store
        self._notifications = notifications
        self._intake_gate = intake_gate or IntakeGate(notifications)
        self._poll = poll
        self._clock = clock or _now_ms
        self._lock = asyncio.Lock()

        self._request_open_at = opened_at_ms if opened_at_ms is not None else self._clock()
        self._last_processed_at = 0
        self._processed_ids: dict[str, int] = {}
        self._buffer: list[_PendingComment] = []
        self._sequence = 0

    # Intake gate

    @property
    def intake_paused(self) -> bool:
        return self._intake_gate.paused

    def toggle_intake(self) -> bool:
        return self._intake_gate.toggle()

    def set_intake_paused(self, paused: bool) -> bool:
        return self._intake_gate.set_paused(paused)

    # Ordering state

    @property
    def request_open_at(self) -> int:
        return self._request_open_at

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    def mark_request_intake_opened(self, opened_at_ms: int | None = None) -> None:
        self._request_open_at = opened_at_ms if opened_at_ms is not None else self._clock()
        self._buffer = []
        log.info("request_intake_opened", opened_at_ms=self._request_open_at)

    def reset_comment_tracking(self) -> None:
        self._processed_ids.clear()
        self._last_processed_at = 0
        self._buffer = []

    def _in_buffer_window(self, published_ms: int) -> bool:
        return abs(published_ms - self._request_open_at) <= BUFFER_WINDOW_MS

    def _skip_reason(self, comment_id: str | None, published_ms: int) -> str | None:
        if published_ms < self._request_open_at:
            return "before-intake-window"
        if comment_id is not None:
            previous = self._processed_ids.get(comment_id)
            if previous is not None and published_ms <= previous:
                return "duplicate-comment-id"
        if published_ms < self._last_processed_at:
            return "watermark-old"
        if (
            published_ms == self._last_processed_at
            and comment_id is not None
            and comment_id in self._processed_ids
        ):
            return "watermark-equal-id"
        return None

    def _finalize_watermark(self, comment_id: str | None, published_ms: int) -> None:
        if comment_id is not None:
            self._processed_ids[comment_id] = published_ms
        if published_ms > self._last_processed_at:
            self._last_processed_at = published_ms

    # Public entry points

    async def ingest(
        self,
        message: str,
        platform: str,
        user_id: str | None = None,
        user_name: str | None = None,
        room_id: str | None = None,
        timestamp: int | None = None,
        comment_id: str | None = None,
        allow_request_creation: bool = True,
        warn_on_missing_url: bool = False,
        queue_position: int | None = None,
    ) -> IngestResult:
        """Ingest one chat event.

        Args:
            timestamp: Publish time in epoch milliseconds (default: now).

        Raises:
            InvalidCommentError: If the message is empty or whitespace.
        """
        if not message or not message.strip():
            raise InvalidCommentError("message is required")

        received_ms = self._clock()
        published_ms = timestamp if timestamp is not None else received_ms
        payload = CommentInput(
            message=message,
            platform=platform,
            user_id=user_id,
            user_name=user_name,
            room_id=room_id,
            comment_id=comment_id,
            allow_request_creation=allow_request_creation,
            warn_on_missing_url=warn_on_missing_url,
            queue_position=queue_position,
        )

        async with self._lock:
            self._sequence += 1
            entry = _PendingComment(payload, published_ms, received_ms, self._sequence)
            if self._in_buffer_window(published_ms):
                self._buffer.append(entry)
                log.debug("comment_buffered", comment_id=comment_id, published_ms=published_ms)
                return IngestResult(comment=None, request=None, warning="buffered")

            batch = sorted([*self._buffer, entry], key=_PendingComment.sort_key)
            self._buffer = []
            result = IngestResult(comment=None, request=None, warning="no-op")
            for pending in batch:
                outcome = await self._process_entry(pending)
                if pending is entry:
                    result = outcome
            return result

    async def flush_expired(self, now_ms: int | None = None) -> list[IngestResult]:
        """Apply buffered events once the window around the open time elapsed."""
        now_ms = now_ms if now_ms is not None else self._clock()
        async with self._lock:
            if not self._buffer or now_ms <= self._request_open_at + BUFFER_WINDOW_MS:
                return []
            batch = sorted(self._buffer, key=_PendingComment.sort_key)
            self._buffer = []
            log.info("comment_buffer_flushed", count=len(batch))
            return [await self._process_entry(pending) for pending in batch]

    async def ingest_debug(self, message: str, user_name: str | None = None) -> IngestResult:
        """Operator test hook: ingest as platform "debug"."""
        return await self.ingest(
            message=message,
            platform="debug",
            user_id="debug",
            user_name=user_name or "debug",
            warn_on_missing_url=False,
        )

    # Processing

    async def _process_entry(self, entry: _PendingComment) -> IngestResult:
        comment_id = entry.payload.comment_id
        skip = self._skip_reason(comment_id, entry.published_ms)
        if skip is not None:
            log.debug("comment_skipped", comment_id=comment_id, reason=skip)
            return IngestResult(comment=None, request=None, warning=skip)
        result = await self._process_core(entry.payload, entry.published_ms)
        self._finalize_watermark(comment_id, entry.published_ms)
        return result

    async def _process_core(self, payload: CommentInput, published_ms: int) -> IngestResult:
        normalized = payload.message.strip()
        published_at = from_epoch_ms(published_ms)
        comment = Comment(
            id=payload.comment_id or create_comment_id(),
            platform=payload.platform,
            room_id=payload.room_id,
            user_id=payload.user_id,
            user_name=payload.user_name,
            message=normalized,
            published_at=published_at,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(comment)
        except IntegrityError:
            log.info("duplicate_comment", comment_id=comment.id, platform=payload.platform)
            return IngestResult(comment=comment, request=None, warning="duplicate-comment")

        await self._handle_vote(payload, normalized)

        if self._intake_gate.paused:
            self._notifications.emit(
                "warn",
                title_key="request_intake_paused_title",
                message_key="body_with_reason",
                params={"reason": INTAKE_PAUSED_REASON, "url": normalized},
                user_name=payload.user_name,
                url=normalized,
            )
            return IngestResult(comment=comment, request=None, warning="intake-paused")

        if not payload.allow_request_creation:
            return IngestResult(comment=comment, request=None)

        return await self._create_request(comment, payload, normalized)

    async def _handle_vote(self, payload: CommentInput, normalized: str) -> None:
        vote = normalize_poll_vote(normalized)
        if vote is None or self._poll is None:
            return
        async with self._session_factory() as session:
            current = await request_service.get_current_playing(session)
        voter = payload.user_id or payload.user_name or payload.platform
        if self._poll.vote(current.id if current else None, voter, vote):
            log.debug("poll_vote_recorded", voter=voter, vote=vote)

    async def _create_request(
        self, comment: Comment, payload: CommentInput, normalized: str
    ) -> IngestResult:
        ctx = GuardContext(
            message=normalized,
            platform=payload.platform,
            user_id=payload.user_id,
            user_name=payload.user_name,
            rules=self._policy_store.get_rules(),
            now=comment.published_at,
            warn_on_missing_url=payload.warn_on_missing_url,
        )
        async with self._session_factory() as session, session.begin():
            rejection = await run_guards(session, ctx)
            if rejection is not None:
                if not rejection.notify:
                    return IngestResult(comment=comment, request=None)
                url = ctx.parsed.raw_url if ctx.parsed else payload.message
                self._notifications.emit(
                    "warn",
                    title_key="request_rejected_title",
                    message_key=rejection.message_key,
                    params=rejection.params,
                    user_name=payload.user_name,
                    url=url,
                )
                return IngestResult(comment=comment, request=None, warning=rejection.reason)

            parsed = ctx.parsed
            request = Request(
                id=create_request_id(),
                bucket=QUEUE_BUCKET,
                created_at=comment.published_at,
                comment_id=comment.id,
                platform=payload.platform,
                user_id=ctx.owner_id,
                user_name=payload.user_name,
                original_message=payload.message,
                url=parsed.raw_url,
                parsed_site=parsed.site,
                parsed_video_id=parsed.video_id,
                parsed_normalized_url=parsed.normalized_url,
                status=RequestStatus.QUEUED,
                queue_position=payload.queue_position or 1,
            )
            session.add(request)

            stored = await session.get(Comment, comment.id)
            stored.request_id = request.id
            stored.request_status = RequestStatus.QUEUED.value
            stored.request_status_reason = None
            await session.flush()

        log.info(
            "request_created",
            request_id=request.id,
            site=parsed.site,
            video_id=parsed.video_id,
            platform=payload.platform,
        )
        return IngestResult(comment=stored, request=request)
