"""Request lifecycle and queue service.

This module owns every mutation of the requests table:
- The status transition primitive (apply_status / RequestService.update_status)
- Queue ordering, shuffle-aware selection of the next READY item
- Reorder, suspend/resume, delete, bulk clear and restart recovery
- Playback log writes

Architecture:
- Module-level helpers take an AsyncSession and run inside the caller's
  transaction (used by ingestion guards, the worker and the orchestrator)
- RequestService methods open their own short transaction per call
- Status changes go through the ORM so Request.VALID_TRANSITIONS is enforced
- REJECTED/FAILED rows are deleted right after the transition; the
  originating comment keeps the status/reason trace
"""

import enum
import random
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.exceptions import RequestNotFoundError
from mediaqueue.models import (
    ACTIVE_STATUSES,
    EDITABLE_STATUSES,
    ORDERED_STATUSES,
    OWNER_INACTIVE_STATUSES,
    QUEUE_BUCKET,
    SUSPENDABLE_STATUSES,
    TERMINAL_STATUSES,
    Comment,
    PlaybackLog,
    Request,
    RequestStatus,
    utcnow,
)
from mediaqueue.services.notifications import NotificationBus

log = structlog.get_logger()

STOP_REASON = "STOP"
PENDING_SUMMARY_STATUSES = [
    RequestStatus.QUEUED,
    RequestStatus.DOWNLOADING,
    RequestStatus.READY,
]


class ShuffleMode(str, enum.Enum):
    """Autoplay selection strategy, cycled off → priority → any → off."""

    OFF = "off"
    PRIORITY = "priority"
    ANY = "any"

    def next(self) -> "ShuffleMode":
        members = list(ShuffleMode)
        return members[(members.index(self) + 1) % len(members)]


@dataclass(frozen=True)
class QueueSummary:
    """Aggregate counts for the live queue.

    Attributes:
        total_items: All rows in the "queue" bucket.
        pending_items: QUEUED/DOWNLOADING/READY rows with a known duration.
        pending_duration_sec: Sum of those durations.
    """

    total_items: int
    pending_items: int
    pending_duration_sec: float


@dataclass(frozen=True)
class RequestPage:
    items: list[Request]
    total: int


def queue_order_by() -> list[Any]:
    """ORDER BY for a bucket: PLAYING, then active rows by position, then the rest."""
    status_rank = case(
        (Request.status == RequestStatus.PLAYING, -1),
        (Request.status.in_(ORDERED_STATUSES), 0),
        else_=1,
    )
    return [
        status_rank,
        Request.queue_position.is_(None),
        Request.queue_position.asc(),
        Request.created_at.asc(),
    ]


def position_order_by() -> list[Any]:
    return [
        Request.queue_position.is_(None),
        Request.queue_position.asc(),
        Request.created_at.asc(),
    ]


async def sync_comment_state(
    session: AsyncSession,
    comment_id: str | None,
    request_id: str | None,
    status: RequestStatus | None,
    reason: str | None,
) -> None:
    """Mirror a request's status/reason onto its originating comment."""
    if not comment_id:
        return
    await session.execute(
        update(Comment)
        .where(Comment.id == comment_id)
        .values(
            request_id=request_id,
            request_status=status.value if status else None,
            request_status_reason=reason,
        )
    )


async def delete_request(
    session: AsyncSession,
    request: Request,
    preserve_comment_state: bool = False,
) -> None:
    """Delete a request, detaching playback logs and (optionally) the comment."""
    await session.execute(
        update(PlaybackLog).where(PlaybackLog.request_id == request.id).values(request_id=None)
    )
    if not preserve_comment_state:
        await sync_comment_state(session, request.comment_id, None, None, None)
    await session.delete(request)
    await session.flush()


async def apply_status(
    session: AsyncSession,
    request: Request,
    status: RequestStatus,
    notifications: NotificationBus,
    reason: str | None = None,
    notify: bool = True,
) -> Request | None:
    """Single status mutation primitive.

    Side effects:
        - DONE clears queue_position
        - Status/reason propagate onto the linked comment
        - Entering READY in the live queue emits an "accepted" notice
          (not for STOP demotions or READY → READY)
        - REJECTED/FAILED emit a warn/error notice and delete the row while
          preserving the comment's trace

    Returns:
        The updated request, or None when it was deleted.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed.
    """
    previous = request.status
    request.status = status
    request.status_reason = reason
    request.updated_at = utcnow()
    if status == RequestStatus.DONE:
        request.queue_position = None
    await sync_comment_state(session, request.comment_id, request.id, status, reason)

    log.info(
        "request_status_changed",
        request_id=request.id,
        from_status=previous.value if previous else None,
        to_status=status.value,
        reason=reason,
    )

    if (
        notify
        and status == RequestStatus.READY
        and reason != STOP_REASON
        and previous != RequestStatus.READY
        and request.bucket == QUEUE_BUCKET
    ):
        notifications.emit(
            "info",
            title_key="request_accepted_title",
            message_key="request_accepted_body",
            params={"title": request.title or "", "url": request.url},
            request_id=request.id,
            user_name=request.user_name,
            url=request.url,
        )

    if status in TERMINAL_STATUSES:
        failed = status == RequestStatus.FAILED
        notifications.emit(
            "error" if failed else "warn",
            title_key="request_failed_title" if failed else "request_rejected_title",
            message_key="body_with_reason",
            params={"reason": reason or "", "url": request.url},
            request_id=request.id,
            user_name=request.user_name,
            url=request.url,
        )
        await delete_request(session, request, preserve_comment_state=True)
        return None

    await session.flush()
    return request


async def get_current_playing(session: AsyncSession) -> Request | None:
    result = await session.execute(
        select(Request)
        .where(Request.bucket == QUEUE_BUCKET, Request.status == RequestStatus.PLAYING)
        .limit(1)
    )
    return result.scalars().first()


async def reset_playing_except(session: AsyncSession, request_id: str | None) -> list[str]:
    """Demote every PLAYING row in the live queue (except request_id) to READY."""
    query = select(Request).where(
        Request.bucket == QUEUE_BUCKET, Request.status == RequestStatus.PLAYING
    )
    if request_id:
        query = query.where(Request.id != request_id)
    result = await session.execute(query)
    demoted = []
    for request in result.scalars().all():
        request.status = RequestStatus.READY
        request.play_started_at = None
        request.updated_at = utcnow()
        demoted.append(request.id)
    if demoted:
        log.warning("playing_rows_demoted", request_ids=demoted)
    return demoted


async def find_active_by_video(session: AsyncSession, site: str, video_id: str) -> Request | None:
    result = await session.execute(
        select(Request)
        .where(
            Request.parsed_site == site,
            Request.parsed_video_id == video_id,
            Request.bucket == QUEUE_BUCKET,
            Request.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Request.created_at.asc())
        .limit(1)
    )
    return result.scalars().first()


async def find_latest_by_video(session: AsyncSession, site: str, video_id: str) -> Request | None:
    result = await session.execute(
        select(Request)
        .where(
            Request.parsed_site == site,
            Request.parsed_video_id == video_id,
            Request.bucket == QUEUE_BUCKET,
        )
        .order_by(
            func.coalesce(Request.play_ended_at, Request.updated_at, Request.created_at).desc()
        )
        .limit(1)
    )
    return result.scalars().first()


async def count_active_by_owner(session: AsyncSession, owner_id: str) -> int:
    """Count an owner's requests that still hold a slot.

    Owner matches user_id, or user_name when the row has no user_id.
    """
    result = await session.execute(
        select(func.count(Request.id)).where(
            Request.status.not_in(OWNER_INACTIVE_STATUSES),
            (Request.user_id == owner_id)
            | ((Request.user_id.is_(None)) & (Request.user_name == owner_id)),
        )
    )
    return int(result.scalar_one())


async def count_by_status(
    session: AsyncSession, status: RequestStatus, bucket: str | None = None
) -> int:
    query = select(func.count(Request.id)).where(Request.status == status)
    if bucket:
        query = query.where(Request.bucket == bucket)
    result = await session.execute(query)
    return int(result.scalar_one())


async def next_queue_position(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.max(Request.queue_position)).where(Request.bucket == QUEUE_BUCKET)
    )
    current = result.scalar_one_or_none()
    return (current or 0) + 1


async def list_downloadable(session: AsyncSession, bucket: str, limit: int) -> list[Request]:
    result = await session.execute(
        select(Request)
        .where(Request.bucket == bucket, Request.status == RequestStatus.QUEUED)
        .order_by(*position_order_by())
        .limit(max(1, limit))
    )
    return list(result.scalars().all())


async def list_buckets(session: AsyncSession) -> list[str]:
    """All bucket names, live queue first, then stock lists alphabetically."""
    result = await session.execute(select(Request.bucket).distinct())
    names = sorted(name for name in result.scalars().all() if name and name != QUEUE_BUCKET)
    return [QUEUE_BUCKET, *names]


async def list_ready(session: AsyncSession, bucket: str = QUEUE_BUCKET) -> list[Request]:
    result = await session.execute(
        select(Request)
        .where(Request.bucket == bucket, Request.status == RequestStatus.READY)
        .order_by(*position_order_by())
    )
    return list(result.scalars().all())


async def insert_playback_log(session: AsyncSession, request: Request) -> PlaybackLog:
    entry = PlaybackLog(
        request_id=request.id,
        title=request.title,
        url=request.url,
        played_at=utcnow(),
    )
    session.add(entry)
    await session.flush()
    return entry


def pick_next_ready(
    ready: list[Request], mode: ShuffleMode, rng: random.Random | None = None
) -> Request | None:
    """Shuffle-aware selection over READY rows already in queue order."""
    if not ready:
        return None
    if mode == ShuffleMode.OFF:
        return ready[0]
    chooser = rng or random
    if mode == ShuffleMode.PRIORITY:
        positions = [r.queue_position for r in ready if r.queue_position is not None]
        if positions:
            best = min(positions)
            candidates = [r for r in ready if r.queue_position == best]
        else:
            candidates = ready
        return chooser.choice(candidates)
    return chooser.choice(ready)


class RequestService:
    """Short-transaction facade over the request repository."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifications: NotificationBus,
    ) -> None:
        self._session_factory = session_factory
        self._notifications = notifications

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @property
    def notifications(self) -> NotificationBus:
        return self._notifications

    async def get(self, request_id: str) -> Request | None:
        async with self._session_factory() as session:
            return await session.get(Request, request_id)

    async def require(self, request_id: str) -> Request:
        request = await self.get(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    async def get_current_playing(self) -> Request | None:
        async with self._session_factory() as session:
            return await get_current_playing(session)

    async def update_status(
        self,
        request_id: str,
        status: RequestStatus,
        reason: str | None = None,
        *,
        expected: Collection[RequestStatus] | None = None,
    ) -> Request | None:
        """Transition a request, optionally as a compare-and-set.

        Args:
            expected: When given, the transition only happens if the row is
                still in one of these statuses; otherwise None is returned
                and nothing is written.

        Returns:
            Updated request, or None if missing, skipped, or deleted as
            REJECTED/FAILED.
        """
        async with self._session_factory() as session, session.begin():
            request = await session.get(Request, request_id)
            if request is None:
                log.info("status_update_missing_request", request_id=request_id, to_status=status.value)
                return None
            if expected is not None and request.status not in expected:
                log.info(
                    "status_update_skipped",
                    request_id=request_id,
                    current=request.status.value,
                    to_status=status.value,
                )
                return None
            return await apply_status(session, request, status, self._notifications, reason)

    async def update_fields(
        self,
        request_id: str,
        *,
        expected: Collection[RequestStatus] | None = None,
        **fields: Any,
    ) -> Request | None:
        """Update plain columns (metadata, cache fields, timestamps).

        A "status" key is routed through apply_status after the other fields
        are set, with "status_reason" as its reason.
        """
        status = fields.pop("status", None)
        reason = fields.pop("status_reason", None)
        async with self._session_factory() as session, session.begin():
            request = await session.get(Request, request_id)
            if request is None:
                return None
            if expected is not None and request.status not in expected:
                log.info(
                    "field_update_skipped",
                    request_id=request_id,
                    current=request.status.value,
                    fields=sorted(fields),
                )
                return None
            for key, value in fields.items():
                setattr(request, key, value)
            request.updated_at = utcnow()
            if status is not None:
                return await apply_status(session, request, status, self._notifications, reason)
            await session.flush()
            return request

    async def list_requests(
        self,
        bucket: str = QUEUE_BUCKET,
        statuses: Iterable[RequestStatus] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> RequestPage:
        filters = [Request.bucket == bucket]
        if statuses:
            filters.append(Request.status.in_(list(statuses)))
        async with self._session_factory() as session:
            total = await session.execute(select(func.count(Request.id)).where(*filters))
            result = await session.execute(
                select(Request)
                .where(*filters)
                .order_by(*queue_order_by())
                .limit(max(1, limit))
                .offset(max(0, offset))
            )
            return RequestPage(items=list(result.scalars().all()), total=int(total.scalar_one()))

    async def delete(self, request_id: str) -> Request | None:
        """Remove a request outright; the comment loses its request pointer."""
        async with self._session_factory() as session, session.begin():
            request = await session.get(Request, request_id)
            if request is None:
                return None
            await delete_request(session, request)
            log.info("request_deleted", request_id=request_id)
            return request

    async def reorder(self, request_id: str, position: int) -> Request | None:
        """Move a request to an explicit 1-based position.

        DONE items are promoted back to READY.

        Raises:
            ValueError: If position < 1 or the status is not editable.
            RequestNotFoundError: If the request does not exist.
        """
        if position < 1:
            raise ValueError("position must be >= 1")
        async with self._session_factory() as session, session.begin():
            request = await session.get(Request, request_id)
            if request is None:
                raise RequestNotFoundError(request_id)
            if request.status not in EDITABLE_STATUSES:
                raise ValueError(f"order cannot be changed in status {request.status.value}")
            was_done = request.status == RequestStatus.DONE
            request.queue_position = int(position)
            request.updated_at = utcnow()
            log.info("request_reordered", request_id=request_id, position=position)
            if was_done:
                return await apply_status(
                    session, request, RequestStatus.READY, self._notifications
                )
            await session.flush()
            return request

    async def suspend(self, request_ids: Iterable[str]) -> list[Request]:
        """Suspend every id whose status allows it; others are skipped."""
        updated: list[Request] = []
        async with self._session_factory() as session, session.begin():
            for request_id in request_ids:
                request = await session.get(Request, request_id)
                if request is None or request.status not in SUSPENDABLE_STATUSES:
                    continue
                result = await apply_status(
                    session,
                    request,
                    RequestStatus.SUSPEND,
                    self._notifications,
                    reason=request.status.value,
                )
                if result is not None:
                    updated.append(result)
        return updated

    async def resume(self, request_ids: Iterable[str]) -> list[Request]:
        """Move SUSPEND items to READY at the back of the live queue."""
        updated: list[Request] = []
        now = utcnow()
        async with self._session_factory() as session, session.begin():
            position = await next_queue_position(session)
            for request_id in request_ids:
                request = await session.get(Request, request_id)
                if request is None or request.status != RequestStatus.SUSPEND:
                    continue
                request.queue_position = position + len(updated)
                request.created_at = now
                result = await apply_status(
                    session, request, RequestStatus.READY, self._notifications, notify=False
                )
                if result is not None:
                    updated.append(result)
        return updated

    async def next_queue_position(self) -> int:
        async with self._session_factory() as session:
            return await next_queue_position(session)

    async def count_by_status(self, status: RequestStatus, bucket: str | None = None) -> int:
        async with self._session_factory() as session:
            return await count_by_status(session, status, bucket)

    async def summary(self) -> QueueSummary:
        pending = (Request.status.in_(PENDING_SUMMARY_STATUSES)) & (
            Request.duration_sec.is_not(None)
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(Request.id),
                    func.count(case((pending, 1))),
                    func.coalesce(func.sum(case((pending, Request.duration_sec))), 0),
                ).where(Request.bucket == QUEUE_BUCKET)
            )
            total, pending_items, pending_duration = result.one()
        return QueueSummary(
            total_items=int(total or 0),
            pending_items=int(pending_items or 0),
            pending_duration_sec=float(pending_duration or 0),
        )

    async def select_next_ready(
        self, mode: ShuffleMode, rng: random.Random | None = None
    ) -> Request | None:
        async with self._session_factory() as session:
            return pick_next_ready(await list_ready(session), mode, rng)

    async def requeue_for_download(self, request_id: str) -> Request | None:
        """Send a request whose cache vanished back to the download worker."""
        async with self._session_factory() as session, session.begin():
            request = await session.get(Request, request_id)
            if request is None:
                return None
            request.queue_position = request.queue_position or 1
            request.file_name = None
            request.cache_file_path = None
            request.cache_file_size = None
            request.play_started_at = None
            request.play_ended_at = None
            log.warning("cache_missing_requeued", request_id=request_id)
            return await apply_status(session, request, RequestStatus.QUEUED, self._notifications)

    async def recover_after_restart(self) -> dict[str, int]:
        """Reconcile rows left behind by a crash.

        PLAYING rows are demoted to READY (no playback survives a restart);
        VALIDATING/DOWNLOADING rows go back to QUEUED for the worker.
        """
        demoted = 0
        requeued = 0
        async with self._session_factory() as session, session.begin():
            demoted = len(await reset_playing_except(session, None))
            result = await session.execute(
                select(Request).where(
                    Request.status.in_([RequestStatus.VALIDATING, RequestStatus.DOWNLOADING])
                )
            )
            for request in result.scalars().all():
                await apply_status(session, request, RequestStatus.QUEUED, self._notifications)
                requeued += 1
        log.info("queue_recovered", demoted_playing=demoted, requeued_downloads=requeued)
        return {"demoted_playing": demoted, "requeued_downloads": requeued}

    async def clear_all(self) -> int:
        """Delete every request in every bucket."""
        async with self._session_factory() as session, session.begin():
            await session.execute(update(PlaybackLog).values(request_id=None))
            await session.execute(
                update(Comment)
                .where(Comment.request_id.is_not(None))
                .values(request_id=None, request_status=None, request_status_reason=None)
            )
            result = await session.execute(delete(Request))
        log.warning("all_requests_cleared", count=result.rowcount)
        return int(result.rowcount or 0)

    async def list_playback_logs(self, limit: int = 50) -> list[PlaybackLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlaybackLog)
                .order_by(PlaybackLog.played_at.desc(), PlaybackLog.id.desc())
                .limit(max(1, limit))
            )
            return list(result.scalars().all())

    async def clear_playback_logs(self) -> int:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(delete(PlaybackLog))
        log.warning("playback_logs_cleared", count=result.rowcount)
        return int(result.rowcount or 0)
