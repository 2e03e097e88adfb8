"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the media queue.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    comments: Immutable chat events, with a denormalized pointer to the
        request they spawned (kept after the request itself is deleted).
    requests: Units of work moving through the RequestStatus state machine.
        The "queue" bucket is autoplayed; any other bucket is a stock list.
    playback_logs: Append-only history written once per playback start.

Timestamps are stored timezone-aware. SQLite hands them back naive, so
readers compare through ensure_utc().
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from mediaqueue.exceptions import InvalidStateTransitionError

QUEUE_BUCKET = "queue"


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_epoch_ms(value: datetime | None) -> int | None:
    value = ensure_utc(value)
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RequestStatus(enum.Enum):
    """Request lifecycle state machine.

    Happy Path:
        QUEUED → VALIDATING → DOWNLOADING → READY → PLAYING → DONE

    Cache hit:
        QUEUED → VALIDATING → READY (no downloader process)

    Side States:
        SUSPEND: operator-paused, re-enters as READY at the back of the queue
        REJECTED: policy rejection (e.g. too long), row deleted immediately
        FAILED: metadata/download/playback failure, row deleted immediately
    """

    QUEUED = "QUEUED"
    VALIDATING = "VALIDATING"
    DOWNLOADING = "DOWNLOADING"
    READY = "READY"
    PLAYING = "PLAYING"
    DONE = "DONE"
    SUSPEND = "SUSPEND"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


# Status groupings used by queue ordering and acceptance guards
ORDERED_STATUSES = [
    RequestStatus.QUEUED,
    RequestStatus.VALIDATING,
    RequestStatus.DOWNLOADING,
    RequestStatus.READY,
    RequestStatus.DONE,
    RequestStatus.SUSPEND,
]

EDITABLE_STATUSES = frozenset(ORDERED_STATUSES)

SUSPENDABLE_STATUSES = frozenset(
    [
        RequestStatus.QUEUED,
        RequestStatus.VALIDATING,
        RequestStatus.DOWNLOADING,
        RequestStatus.READY,
    ]
)

ACTIVE_STATUSES = [
    RequestStatus.QUEUED,
    RequestStatus.VALIDATING,
    RequestStatus.DOWNLOADING,
    RequestStatus.READY,
    RequestStatus.PLAYING,
    RequestStatus.SUSPEND,
]

# Statuses that no longer count against a viewer's concurrent-request cap
OWNER_INACTIVE_STATUSES = [
    RequestStatus.DONE,
    RequestStatus.FAILED,
    RequestStatus.REJECTED,
]

TERMINAL_STATUSES = frozenset([RequestStatus.REJECTED, RequestStatus.FAILED])


@dataclass(frozen=True)
class ParsedUrl:
    """Canonical video identity extracted from a chat message.

    Attributes:
        site: "youtube", "nicovideo", "bilibili" or "other" (custom site rule).
        video_id: Site-local id; for custom sites the normalized URL itself.
        normalized_url: Canonical URL handed to the downloader.
        raw_url: URL as it appeared in the message (or the normalized form
            when only a bare id was found).
    """

    site: str
    video_id: str
    normalized_url: str
    raw_url: str

    def as_dict(self) -> dict[str, str]:
        return {
            "site": self.site,
            "video_id": self.video_id,
            "normalized_url": self.normalized_url,
            "raw_url": self.raw_url,
        }


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Comment(Base):
    """Chat comment as received from a comment source.

    The request_* columns mirror the spawned request's last known status so
    the history stays inspectable after REJECTED/FAILED rows are deleted.
    """

    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    room_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    published_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    # Denormalized link to the spawned request (no FK: survives deletion)
    request_id: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    request_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    request_status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Comment(id={self.id!r}, platform={self.platform!r}, "
            f"request_id={self.request_id!r})>"
        )


class Request(Base):
    """Media request moving through the RequestStatus state machine.

    Attributes:
        id: "req_<hex>" primary key.
        bucket: "queue" for the live autoplayed queue, anything else is a
            stock list excluded from autoplay and duplicate/cooldown checks.
        comment_id: Originating chat comment (None for stock/debug items).
        user_id / user_name: Owner identity used for the per-owner cap.
        parsed_site / parsed_video_id / parsed_normalized_url: Canonical
            identity, the dedup and cooldown key. Never changes once set.
        file_name: Manifest file name inside the cache directory.
        cache_file_size: Sum of the manifest's referenced artifact sizes.
        queue_position: 1-based position, nulls sort last; ties break on
            created_at.
        play_started_at: Wall-clock anchor for position (now - anchor).

    Indexes:
        - ix_requests_bucket_status: worker claims and queue listing
        - ix_requests_identity: duplicate and cooldown lookups
    """

    __tablename__ = "requests"

    VALID_TRANSITIONS = {
        RequestStatus.QUEUED: [
            RequestStatus.VALIDATING,
            RequestStatus.SUSPEND,
            RequestStatus.DONE,
            RequestStatus.REJECTED,
            RequestStatus.FAILED,
        ],
        RequestStatus.VALIDATING: [
            RequestStatus.DOWNLOADING,
            RequestStatus.READY,
            RequestStatus.QUEUED,
            RequestStatus.SUSPEND,
            RequestStatus.DONE,
            RequestStatus.REJECTED,
            RequestStatus.FAILED,
        ],
        RequestStatus.DOWNLOADING: [
            RequestStatus.READY,
            RequestStatus.QUEUED,
            RequestStatus.SUSPEND,
            RequestStatus.DONE,
            RequestStatus.FAILED,
        ],
        RequestStatus.READY: [
            RequestStatus.PLAYING,
            RequestStatus.QUEUED,
            RequestStatus.SUSPEND,
            RequestStatus.DONE,
            RequestStatus.FAILED,
        ],
        RequestStatus.PLAYING: [
            RequestStatus.DONE,
            RequestStatus.READY,
            RequestStatus.FAILED,
        ],
        RequestStatus.DONE: [
            RequestStatus.READY,
            RequestStatus.PLAYING,
            RequestStatus.QUEUED,
        ],
        RequestStatus.SUSPEND: [RequestStatus.READY, RequestStatus.DONE],
        # Terminal: row is deleted right after entering these
        RequestStatus.REJECTED: [],
        RequestStatus.FAILED: [],
    }

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    bucket: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default=QUEUE_BUCKET,
    )

    comment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, default="debug")
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(Text, nullable=False)

    parsed_site: Mapped[str | None] = mapped_column(String(32), nullable=True)
    parsed_video_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    parsed_normalized_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Remote metadata (display only)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_sec: Mapped[float | None] = mapped_column(Float, nullable=True)
    uploader: Mapped[str | None] = mapped_column(String(255), nullable=True)
    uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    view_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    like_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    dislike_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    comment_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mylist_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    favorite_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    danmaku_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Cache materialization
    file_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    cache_file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    cache_file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[RequestStatus] = mapped_column(
        Enum(
            RequestStatus,
            native_enum=True,
            name="requeststatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=RequestStatus.QUEUED,
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    play_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    play_ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_requests_bucket_status", "bucket", "status"),
        Index("ix_requests_identity", "parsed_site", "parsed_video_id"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: RequestStatus) -> RequestStatus:
        """Validate status transition before committing to database.

        Raises:
            InvalidStateTransitionError: If the transition is not listed in
                VALID_TRANSITIONS.

        Note:
            - Validation is skipped on initial creation (status is None)
            - Re-assigning the current status is a no-op
        """
        if self.status is None or self.status == value:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )

        return value

    @validates("parsed_site", "parsed_video_id", "parsed_normalized_url")
    def validate_identity_immutable(self, key: str, value: str | None) -> str | None:
        """Reject changes to an identity field once it has been set."""
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} is immutable once set (was {current!r})")
        return value

    @property
    def parsed(self) -> ParsedUrl | None:
        if not self.parsed_site or not self.parsed_video_id:
            return None
        return ParsedUrl(
            site=self.parsed_site,
            video_id=self.parsed_video_id,
            normalized_url=self.parsed_normalized_url or self.url,
            raw_url=self.url,
        )

    @property
    def owner_id(self) -> str | None:
        return self.user_id or self.user_name

    def __repr__(self) -> str:
        return (
            f"<Request(id={self.id!r}, bucket={self.bucket!r}, "
            f"status={self.status.value!r}, position={self.queue_position!r})>"
        )


class PlaybackLog(Base):
    """Append-only record written exactly once when playback starts.

    request_id is nulled (not cascaded) when the request is deleted so the
    history survives queue clears.
    """

    __tablename__ = "playback_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str | None] = mapped_column(
        String(40),
        ForeignKey("requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    played_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<PlaybackLog(id={self.id!r}, request_id={self.request_id!r})>"
