"""Playback orchestrator.

Drives the live queue: which READY request plays next, what the overlay is
told to do, and how overlay reports and poll results feed back into the
request lifecycle.

Architecture:
- Transient state only (current id, autoplay/playback pause, shuffle mode,
  paused position); everything durable lives in the requests table and is
  reconciled by RequestService.recover_after_restart() at startup
- Every terminal transition (ended, error, skip, delete) is followed by
  play_next_ready(), which is also polled by run_autoplay() on a steady tick
- play_next_ready() is serialized by an asyncio.Lock and never raises
- The continuation poll is advanced by run_poll_driver(), which sleeps until
  the poll's next deadline and is woken whenever the poll is re-armed

Playback position is derived, never stored: position = now - play_started_at,
with play_started_at shifted on seek/resume and nulled while paused.
"""

import asyncio
import dataclasses
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from mediaqueue.config import DownloadSettings, get_autoplay_tick_seconds, get_download_settings
from mediaqueue.exceptions import CacheMissingError, MetadataFetchError, PlaybackError
from mediaqueue.models import Request, RequestStatus, ensure_utc, to_epoch_ms, utcnow
from mediaqueue.services import request_service as repo
from mediaqueue.services.comment_ingestion import CommentIngestionService, IntakeGate
from mediaqueue.services.metadata import VideoMetadata, fetch_metadata
from mediaqueue.services.overlay_hub import OverlayHub
from mediaqueue.services.poll import ContinuationPoll
from mediaqueue.services.request_service import STOP_REASON, RequestService, ShuffleMode

log = structlog.get_logger()

PLAYABLE_STATUSES = frozenset([RequestStatus.READY, RequestStatus.DONE])
META_STALE_AFTER = timedelta(hours=6)
BAND_DURATION_MS = 30_000
MIN_BAND_DURATION_MS = 5_000
SWITCH_FADE_MS = 100
STOP_FADE_MS = 200

MetadataFetcher = Callable[[str, DownloadSettings], Awaitable[VideoMetadata]]


def playback_band_duration_ms(duration_sec: float | None) -> int:
    """How long the playback banners stay up: 30s, shorter for short clips."""
    if not duration_sec or duration_sec <= 0:
        return BAND_DURATION_MS
    duration_ms = int(duration_sec * 1000)
    if duration_ms < BAND_DURATION_MS:
        return max(MIN_BAND_DURATION_MS, duration_ms - 1000)
    return BAND_DURATION_MS


@dataclass(frozen=True)
class PlaybackInfo:
    id: str
    title: str | None
    duration_sec: float | None
    position_sec: float
    is_playing: bool

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class PlaybackOrchestrator:
    """Autoplay, overlay control and poll handling for the live queue."""

    def __init__(
        self,
        requests: RequestService,
        overlay: OverlayHub,
        poll: ContinuationPoll,
        intake_gate: IntakeGate | None = None,
        ingestion: CommentIngestionService | None = None,
        settings_provider: Callable[[], DownloadSettings] = get_download_settings,
        metadata_fetcher: MetadataFetcher = fetch_metadata,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._requests = requests
        self._notifications = requests.notifications
        self._overlay = overlay
        self._poll = poll
        self._intake_gate = intake_gate
        self._ingestion = ingestion
        self._settings_provider = settings_provider
        self._fetch_metadata = metadata_fetcher
        self._clock = clock
        self._rng = rng

        self._current_id: str | None = None
        self._autoplay_paused = False
        self._shuffle_mode = ShuffleMode.OFF
        self._playback_paused = False
        self._paused_position_sec = 0.0

        self._autoplay_lock = asyncio.Lock()
        self._poll_changed = asyncio.Event()

        overlay.set_handlers(self.on_ended, self.on_error)

    @property
    def current_id(self) -> str | None:
        return self._current_id

    @property
    def autoplay_paused(self) -> bool:
        return self._autoplay_paused

    @property
    def shuffle_mode(self) -> ShuffleMode:
        return self._shuffle_mode

    @property
    def playback_paused(self) -> bool:
        return self._playback_paused

    @property
    def poll(self) -> ContinuationPoll:
        return self._poll

    def _clear_current(self) -> None:
        self._current_id = None
        self._playback_paused = False
        self._paused_position_sec = 0.0

    def _reset_poll(self) -> None:
        self._poll.reset()
        self._poll_changed.set()

    # Play

    def _manifest_path(self, request: Request) -> Path | None:
        if request.cache_file_path:
            return Path(request.cache_file_path)
        if request.file_name:
            return Path(self._settings_provider().cache_dir) / request.file_name
        return None

    async def _ensure_cached(self, request: Request) -> None:
        """Re-queue the request and raise if its manifest is gone."""
        manifest_path = self._manifest_path(request)
        if request.file_name and manifest_path is not None and manifest_path.is_file():
            return
        log.warning(
            "playback_cache_missing",
            request_id=request.id,
            manifest=str(manifest_path) if manifest_path else None,
        )
        await self._requests.requeue_for_download(request.id)
        raise CacheMissingError(request.id)

    async def _refresh_metadata_if_stale(self, request: Request) -> Request:
        now = self._clock()
        refreshed_at = ensure_utc(request.meta_refreshed_at)
        if refreshed_at is not None and now - refreshed_at < META_STALE_AFTER:
            return request
        try:
            meta = await self._fetch_metadata(request.url, self._settings_provider())
        except MetadataFetchError as e:
            log.warning("metadata_refresh_failed", request_id=request.id, error=str(e))
            return request
        changes = {k: v for k, v in meta.as_request_fields().items() if v is not None}
        updated = await self._requests.update_fields(request.id, meta_refreshed_at=now, **changes)
        return updated or request

    async def play(self, request_id: str) -> Request:
        """Start playing a READY or DONE request on the overlay.

        Raises:
            RequestNotFoundError: If the request does not exist.
            PlaybackError: If the status is not playable.
            CacheMissingError: If the cached media vanished; the request was
                sent back to the download worker.
        """
        request = await self._requests.require(request_id)
        if request.status not in PLAYABLE_STATUSES:
            raise PlaybackError(f"only READY or DONE can be played (was {request.status.value})")
        await self._ensure_cached(request)
        request = await self._refresh_metadata_if_stale(request)

        now = self._clock()
        async with self._requests.session_factory() as session, session.begin():
            request = await session.get(Request, request_id)
            if request is None or request.status not in PLAYABLE_STATUSES:
                raise PlaybackError(f"request {request_id} changed state before playback")
            await repo.reset_playing_except(session, request.id)
            request.play_started_at = now
            request.play_ended_at = None
            await repo.apply_status(session, request, RequestStatus.PLAYING, self._notifications)
            await repo.insert_playback_log(session, request)

        log.info("playback_started", request_id=request.id, previous=self._current_id)
        self._playback_paused = False
        self._paused_position_sec = 0.0
        if self._current_id and self._current_id != request.id:
            await self._overlay.stop(SWITCH_FADE_MS)
        await self._overlay.play(request)
        self._current_id = request.id

        self._poll.start(request.id, request.url, now)
        self._poll_changed.set()
        await self._emit_playback_banners(request)
        return request

    async def _emit_playback_banners(self, request: Request) -> None:
        duration_ms = playback_band_duration_ms(request.duration_sec)
        title = (request.title or "").strip()
        self._notifications.emit(
            "info",
            message=" ".join(part for part in (title, request.url) if part),
            request_id=request.id,
            user_name=request.user_name,
            url=request.url,
            scope="info",
            duration_ms=duration_ms,
        )
        summary = await self._requests.summary()
        self._notifications.emit(
            "info",
            message="",
            request_id=request.id,
            user_name=request.user_name,
            url=request.url,
            scope="status",
            duration_ms=duration_ms,
            stats={
                "uploaded_at": to_epoch_ms(request.uploaded_at),
                "duration_sec": request.duration_sec,
                "view_count": request.view_count,
                "like_count": request.like_count,
                "dislike_count": request.dislike_count,
                "comment_count": request.comment_count,
                "mylist_count": request.mylist_count,
                "favorite_count": request.favorite_count,
                "danmaku_count": request.danmaku_count,
                "uploader": request.uploader,
                "site": request.parsed_site or "other",
                "meta_refreshed_at": to_epoch_ms(request.meta_refreshed_at)
                or to_epoch_ms(self._clock()),
                "pending_items": summary.pending_items,
                "pending_duration_sec": summary.pending_duration_sec,
            },
        )

    # Terminal transitions

    async def skip(self, request_id: str) -> Request | None:
        """Mark a request DONE; if it is on air, stop it and advance.

        Raises:
            RequestNotFoundError: If the request does not exist.
        """
        await self._requests.require(request_id)
        log.info("playback_skip", request_id=request_id)
        updated = await self._requests.update_fields(
            request_id, play_ended_at=self._clock(), status=RequestStatus.DONE
        )
        if self._current_id == request_id:
            await self._overlay.stop(STOP_FADE_MS)
            self._clear_current()
            self._reset_poll()
        await self.play_next_ready()
        return updated

    async def delete(self, request_id: str) -> Request | None:
        removed = await self._requests.delete(request_id)
        if removed is None:
            return None
        if self._current_id == request_id:
            await self._overlay.stop(STOP_FADE_MS)
            self._clear_current()
            self._reset_poll()
        await self.play_next_ready()
        return removed

    async def on_ended(self, request_id: str) -> None:
        request = await self._requests.get(request_id)
        if request is None:
            log.info("overlay_ended_unknown_request", request_id=request_id)
            return
        now = self._clock()
        await self._requests.update_fields(
            request_id,
            expected=[RequestStatus.PLAYING],
            play_started_at=request.play_started_at or now,
            play_ended_at=now,
            status=RequestStatus.DONE,
        )
        self._finish_current(request_id)
        await self.play_next_ready()

    async def on_error(self, request_id: str, reason: str) -> None:
        request = await self._requests.get(request_id)
        if request is None:
            log.info("overlay_error_unknown_request", request_id=request_id)
            return
        log.error("overlay_playback_failed", request_id=request_id, reason=reason)
        await self._requests.update_status(
            request_id,
            RequestStatus.FAILED,
            reason,
            expected=[RequestStatus.PLAYING, RequestStatus.READY],
        )
        self._finish_current(request_id)
        await self.play_next_ready()

    def _finish_current(self, request_id: str) -> None:
        if self._current_id == request_id:
            self._clear_current()
        if self._poll.request_id in (None, request_id):
            self._reset_poll()

    async def stop_playback(self) -> Request | None:
        """Stop the overlay and pause autoplay; the item goes back to READY."""
        if self._current_id is None:
            return None
        request = await self._requests.get(self._current_id)
        await self._overlay.stop(STOP_FADE_MS)
        self._autoplay_paused = True
        updated = None
        if request is not None:
            updated = await self._requests.update_fields(
                request.id,
                play_started_at=None,
                play_ended_at=None,
                status=RequestStatus.READY,
                status_reason=STOP_REASON,
            )
        self._clear_current()
        self._reset_poll()
        log.info("playback_stopped", request_id=request.id if request else None)
        self._notifications.emit(
            "warn",
            message_key="request_stop_full",
            params={"url": request.url if request else ""},
        )
        return updated

    # Transport controls

    async def playback_info(self) -> PlaybackInfo | None:
        if self._current_id is None:
            return None
        request = await self._requests.get(self._current_id)
        if request is None or request.status != RequestStatus.PLAYING:
            return None
        duration = request.duration_sec
        if self._playback_paused:
            position = self._paused_position_sec
        else:
            started = ensure_utc(request.play_started_at) or self._clock()
            position = max(0.0, (self._clock() - started).total_seconds())
            if duration:
                position = min(duration, position)
        return PlaybackInfo(
            id=request.id,
            title=request.title,
            duration_sec=duration,
            position_sec=position,
            is_playing=not self._playback_paused,
        )

    async def pause(self) -> PlaybackInfo | None:
        if self._current_id is None:
            return None
        info = await self.playback_info()
        if info is None:
            return None
        self._paused_position_sec = info.position_sec
        self._playback_paused = True
        await self._requests.update_fields(
            self._current_id, play_started_at=None, play_ended_at=None
        )
        await self._overlay.pause()
        self._reset_poll()
        return await self.playback_info()

    async def resume(self) -> PlaybackInfo | None:
        if self._current_id is None:
            return None
        request = await self._requests.get(self._current_id)
        if request is None:
            return None
        now = self._clock()
        self._playback_paused = False
        await self._requests.update_fields(
            request.id,
            play_started_at=now - timedelta(seconds=self._paused_position_sec),
            play_ended_at=None,
        )
        await self._overlay.resume()
        self._poll.start(request.id, request.url, now)
        self._poll_changed.set()
        return await self.playback_info()

    async def seek(self, position_sec: float) -> PlaybackInfo:
        """Jump within the current item.

        Raises:
            PlaybackError: If nothing is playing.
        """
        if self._current_id is None:
            raise PlaybackError("no track is playing")
        request = await self._requests.get(self._current_id)
        if request is None or request.status != RequestStatus.PLAYING:
            raise PlaybackError("playing track not found")
        upper = request.duration_sec if request.duration_sec is not None else float("inf")
        clamped = max(0.0, min(upper, float(position_sec)))
        started = None if self._playback_paused else self._clock() - timedelta(seconds=clamped)
        await self._requests.update_fields(request.id, play_started_at=started, play_ended_at=None)
        self._paused_position_sec = clamped
        await self._overlay.seek(clamped)
        return PlaybackInfo(
            id=request.id,
            title=request.title,
            duration_sec=request.duration_sec,
            position_sec=clamped,
            is_playing=not self._playback_paused,
        )

    # Autoplay

    async def toggle_autoplay(self) -> bool:
        self._autoplay_paused = not self._autoplay_paused
        log.info("autoplay_toggled", paused=self._autoplay_paused)
        if self._autoplay_paused:
            await self._overlay.stop(STOP_FADE_MS)
            if self._current_id is not None:
                await self._requests.update_status(
                    self._current_id, RequestStatus.READY, expected=[RequestStatus.PLAYING]
                )
            self._clear_current()
            self._reset_poll()
            self._notifications.emit("info", title_key="request_autoplay_paused_title")
            return True
        await self.play_next_ready()
        self._notifications.emit("info", title_key="request_autoplay_resumed_title")
        return False

    async def cycle_shuffle_mode(self) -> ShuffleMode:
        self._shuffle_mode = self._shuffle_mode.next()
        log.info("shuffle_mode_changed", mode=self._shuffle_mode.value)
        if not self._autoplay_paused and self._current_id is None:
            await self.play_next_ready()
        return self._shuffle_mode

    async def play_next_ready(self) -> Request | None:
        """Start the next READY item unless something plays or autoplay is off."""
        if self._current_id is not None or self._autoplay_paused:
            return None
        if self._autoplay_lock.locked():
            return None
        async with self._autoplay_lock:
            if self._current_id is not None or self._autoplay_paused:
                return None
            candidate = await self._requests.select_next_ready(self._shuffle_mode, self._rng)
            if candidate is None:
                return None
            log.info("autoplay_candidate", request_id=candidate.id, mode=self._shuffle_mode.value)
            try:
                return await self.play(candidate.id)
            except Exception as e:
                log.error(
                    "autoplay_failed",
                    request_id=candidate.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return None

    async def run_autoplay(
        self, stop_event: asyncio.Event | None = None, tick_seconds: float | None = None
    ) -> None:
        """Flush the comment buffer and try to autoplay on every tick."""
        interval = tick_seconds if tick_seconds is not None else get_autoplay_tick_seconds()
        log.info("autoplay_loop_started", tick_seconds=interval)
        while stop_event is None or not stop_event.is_set():
            try:
                if self._ingestion is not None:
                    await self._ingestion.flush_expired()
                await self.play_next_ready()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("autoplay_tick_failed", error=str(e), error_type=type(e).__name__)
            if stop_event is None:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("autoplay_loop_stopped")

    # Continuation poll

    async def check_poll(self, now: datetime | None = None) -> bool:
        """Advance the poll; skips the current item after a "no" result."""
        request_id = self._poll.request_id
        if not self._poll.advance(now or self._clock()):
            return False
        if request_id is not None and request_id == self._current_id:
            log.info("poll_skipping_current", request_id=request_id)
            await self.skip(request_id)
        return True

    async def run_poll_driver(self) -> None:
        """Sleep until the poll's next deadline; runs until cancelled."""
        while True:
            deadline = self._poll.next_deadline
            timeout = None
            if deadline is not None:
                timeout = max(0.0, (deadline - self._clock()).total_seconds())
            self._poll_changed.clear()
            try:
                await asyncio.wait_for(self._poll_changed.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            try:
                await self.check_poll()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("poll_driver_failed", error=str(e), error_type=type(e).__name__)

    # Bulk

    async def clear_all(self) -> int:
        await self._overlay.stop(STOP_FADE_MS)
        removed = await self._requests.clear_all()
        self._clear_current()
        self._reset_poll()
        return removed

    async def summary(self) -> dict[str, Any]:
        queue = await self._requests.summary()
        info = await self.playback_info()
        return {
            **dataclasses.asdict(queue),
            "overlay_connected": self._overlay.overlay_connected,
            "downloading_count": await self._requests.count_by_status(RequestStatus.DOWNLOADING),
            "current_playing_id": self._current_id,
            "autoplay_paused": self._autoplay_paused,
            "shuffle_mode": self._shuffle_mode.value,
            "intake_paused": self._intake_gate.paused if self._intake_gate else False,
            "current_playback": info.as_dict() if info else None,
        }
