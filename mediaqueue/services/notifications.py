"""User-visible notifications (info overlay events).

Every rejection, acceptance, playback banner and poll prompt is emitted as a
Notification on the NotificationBus. Listeners (the info overlay WebSocket,
tests) subscribe; a failing listener is logged and never blocks the others.

Notices carry message keys plus params rather than rendered text so the
overlay client can localise them.
"""

import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import structlog

from mediaqueue.models import utcnow

log = structlog.get_logger()

NotificationLevel = Literal["info", "warn", "error"]
NotificationScope = Literal["info", "status"]


@dataclass(frozen=True)
class Notification:
    id: str
    level: NotificationLevel
    created_at: int
    title: str | None = None
    message: str | None = None
    title_key: str | None = None
    message_key: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    user_name: str | None = None
    url: str | None = None
    scope: NotificationScope = "status"
    stats: dict[str, Any] | None = None
    duration_ms: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


Listener = Callable[[Notification], Any]


class NotificationBus:
    """In-process pub/sub for notifications with a bounded replay history."""

    def __init__(self, history_size: int = 50) -> None:
        self._listeners: list[Listener] = []
        self._history: deque[Notification] = deque(maxlen=history_size)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def history(self) -> list[Notification]:
        return list(self._history)

    def emit(
        self,
        level: NotificationLevel = "info",
        *,
        title: str | None = None,
        message: str | None = None,
        title_key: str | None = None,
        message_key: str | None = None,
        params: dict[str, Any] | None = None,
        request_id: str | None = None,
        user_name: str | None = None,
        url: str | None = None,
        scope: NotificationScope = "status",
        stats: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> Notification:
        notification = Notification(
            id=uuid.uuid4().hex,
            level=level,
            created_at=int(utcnow().timestamp() * 1000),
            title=title,
            message=message,
            title_key=title_key,
            message_key=message_key,
            params=dict(params or {}),
            request_id=request_id,
            user_name=user_name,
            url=url,
            scope=scope,
            stats=stats,
            duration_ms=duration_ms,
        )
        self._history.append(notification)
        log.info(
            "notification_emitted",
            level=level,
            title_key=title_key,
            message_key=message_key,
            request_id=request_id,
        )
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                log.error(
                    "notification_listener_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return notification
