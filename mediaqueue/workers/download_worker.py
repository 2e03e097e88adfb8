"""Download Worker.

Turns QUEUED requests into cached, playable media.

Architecture Pattern:
    - Short transactions (claim → close DB → fetch/download → reopen DB → update)
    - Slots re-derived from the repository on every tick (no in-memory counters)
    - Settings re-read from the environment on every tick
    - Compare-and-set updates: a request deleted while downloading has its
      result discarded; one suspended while downloading keeps only the cache
      fields and stays suspended

Per-request pipeline:
    1. QUEUED → VALIDATING
    2. yt-dlp --dump-json (failure → FAILED "metadata fetch failed")
    3. Duration above the policy limit → REJECTED "too long (Ns)"
    4. Persist metadata
    5. Manifest already on disk → READY (cache hit, no process spawned)
    6. VALIDATING → DOWNLOADING, run the retry ladder
    7. Promote *.part files, write the manifest
    8. DOWNLOADING → READY with cache fields

Error Handling:
    - DownloaderError (ladder exhausted) → FAILED "yt-dlp exited with code N"
    - MediaManifestError → FAILED with the manifest message
    - Exception → FAILED with the error text, logged with traceback
"""

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mediaqueue.config import DownloadSettings, get_download_settings, get_download_tick_seconds
from mediaqueue.exceptions import MediaManifestError, MetadataFetchError
from mediaqueue.models import Request, RequestStatus, utcnow
from mediaqueue.services import media_cache
from mediaqueue.services import request_service as repo
from mediaqueue.services.media_cache import CacheTargets
from mediaqueue.services.metadata import VideoMetadata, fetch_metadata
from mediaqueue.services.policy_store import PolicyStore
from mediaqueue.services.request_service import RequestService
from mediaqueue.services.url_parser import sanitize_download_url
from mediaqueue.utils.downloader import DownloaderError, ProcessResult, run_process
from mediaqueue.utils.logging import get_logger, truncate

log = get_logger(__name__)

HLS_FAILURE_PATTERNS = [
    re.compile(r"Error opening input file.*\.m3u8", re.IGNORECASE),
    re.compile(r"Invalid data found when processing input", re.IGNORECASE),
    re.compile(r"is not in allowed_segment_extensions", re.IGNORECASE),
]
COOKIE_DECODE_PATTERN = re.compile(r"'NoneType' object has no attribute 'decode'", re.IGNORECASE)

MetadataFetcher = Callable[[str, DownloadSettings], Awaitable[VideoMetadata]]
ProcessRunner = Callable[..., Awaitable[ProcessResult]]


def _first_attempt(failures: list[DownloaderError], cookies_configured: bool) -> bool:
    return True


def _native_hls_failed(failures: list[DownloaderError], cookies_configured: bool) -> bool:
    first = failures[0]
    if not first.has_output:
        return True
    return any(pattern.search(first.stderr) for pattern in HLS_FAILURE_PATTERNS)


def _cookies_failed(failures: list[DownloaderError], cookies_configured: bool) -> bool:
    if not cookies_configured:
        return False
    return any(
        COOKIE_DECODE_PATTERN.search(failure.stderr) or not failure.has_output
        for failure in failures
    )


@dataclass(frozen=True)
class DownloadAttempt:
    """One rung of the retry ladder.

    trigger decides, from the failures so far, whether this rung runs.
    """

    label: str
    use_cookies: bool
    prefer_native_hls: bool
    trigger: Callable[[list[DownloaderError], bool], bool]


RETRY_LADDER = [
    DownloadAttempt("native_hls", use_cookies=True, prefer_native_hls=True, trigger=_first_attempt),
    DownloadAttempt(
        "ffmpeg_hls", use_cookies=True, prefer_native_hls=False, trigger=_native_hls_failed
    ),
    DownloadAttempt(
        "without_cookies", use_cookies=False, prefer_native_hls=True, trigger=_cookies_failed
    ),
]


def _ffmpeg_args(settings: DownloadSettings) -> list[str]:
    if not settings.ffmpeg_path:
        return []
    if not Path(settings.ffmpeg_path).is_file():
        log.warning("ffmpeg_not_found", configured=settings.ffmpeg_path)
        return []
    return ["--ffmpeg-location", settings.ffmpeg_path]


def build_download_args(
    request: Request,
    settings: DownloadSettings,
    targets: CacheTargets,
    use_cookies: bool,
    prefer_native_hls: bool,
) -> list[str]:
    """Full yt-dlp argv for one download attempt."""
    site = request.parsed_site or "other"
    args = [
        settings.ytdlp_path,
        "-o",
        targets.output_template,
        "--no-playlist",
        "--write-info-json",
        "--write-thumbnail",
        "--no-part",
        "--force-overwrites",
        "--no-continue",
        "--hls-prefer-native" if prefer_native_hls else "--hls-prefer-ffmpeg",
        "--concurrent-fragments",
        "4",
        "--fragment-retries",
        "3",
        "--socket-timeout",
        "30",
        *_ffmpeg_args(settings),
    ]
    if settings.user_agent:
        args += ["--user-agent", settings.user_agent]
    if site == "bilibili":
        if settings.bilibili_proxy:
            args += ["--proxy", settings.bilibili_proxy]
        args += [
            "--add-header",
            f"Referer:{request.url}",
            "--add-header",
            "Origin:https://www.bilibili.com",
        ]
    if use_cookies:
        args += settings.cookie_args
    args += [sanitize_download_url(request.parsed_normalized_url or request.url), "--newline"]
    return args


class DownloadWorker:
    """Concurrency-limited download loop over all buckets."""

    def __init__(
        self,
        requests: RequestService,
        policy_store: PolicyStore,
        settings_provider: Callable[[], DownloadSettings] = get_download_settings,
        metadata_fetcher: MetadataFetcher = fetch_metadata,
        process_runner: ProcessRunner = run_process,
    ) -> None:
        self._requests = requests
        self._policy_store = policy_store
        self._settings_provider = settings_provider
        self._fetch_metadata = metadata_fetcher
        self._run_process = process_runner

    async def run(self, stop_event: asyncio.Event | None = None, tick_seconds: float | None = None) -> None:
        """Tick until stop_event is set (or the task is cancelled)."""
        interval = tick_seconds if tick_seconds is not None else get_download_tick_seconds()
        log.info("download_worker_started", tick_seconds=interval)
        while stop_event is None or not stop_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                log.info("download_worker_cancelled")
                raise
            except Exception as e:
                log.error(
                    "download_tick_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            if stop_event is None:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        log.info("download_worker_stopped")

    async def tick(self) -> int:
        """Claim up to the free slots and process them; returns the count."""
        settings = self._settings_provider()
        downloading = await self._requests.count_by_status(RequestStatus.DOWNLOADING)
        slots = settings.max_concurrent_downloads - downloading
        if slots <= 0:
            log.debug(
                "download_slots_full",
                downloading=downloading,
                limit=settings.max_concurrent_downloads,
            )
            return 0

        async with self._requests.session_factory() as session:
            buckets = await repo.list_buckets(session)

        processed = 0
        for bucket in buckets:
            if slots <= 0:
                break
            async with self._requests.session_factory() as session:
                batch = await repo.list_downloadable(session, bucket, slots)
            if not batch:
                continue
            await asyncio.gather(*(self.process_request(r, settings) for r in batch))
            slots -= len(batch)
            processed += len(batch)
        return processed

    async def process_request(self, request: Request, settings: DownloadSettings) -> None:
        """Run the pipeline for one request; never raises except on cancellation."""
        request_log = log.bind(request_id=request.id, url=request.url)
        claimed = await self._requests.update_status(
            request.id, RequestStatus.VALIDATING, expected=[RequestStatus.QUEUED]
        )
        if claimed is None:
            request_log.info("download_claim_lost")
            return

        try:
            await self._process_claimed(claimed, settings, request_log)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            request_log.error(
                "download_pipeline_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._requests.update_status(
                request.id,
                RequestStatus.FAILED,
                str(e) or type(e).__name__,
                expected=[RequestStatus.VALIDATING, RequestStatus.DOWNLOADING],
            )

    async def _process_claimed(self, request: Request, settings: DownloadSettings, request_log: Any) -> None:
        targets = media_cache.cache_targets(
            settings.cache_dir, request.parsed_video_id, request.parsed_normalized_url, request.url
        )

        try:
            metadata = await self._fetch_metadata(request.parsed_normalized_url or request.url, settings)
        except MetadataFetchError as e:
            request_log.error("metadata_fetch_failed", error=str(e))
            await self._requests.update_status(
                request.id,
                RequestStatus.FAILED,
                "metadata fetch failed",
                expected=[RequestStatus.VALIDATING],
            )
            return

        limit = self._policy_store.get_rules().effective_max_duration_sec
        if metadata.duration and metadata.duration > limit:
            request_log.info("request_too_long", duration=metadata.duration, limit=limit)
            await self._requests.update_status(
                request.id,
                RequestStatus.REJECTED,
                f"too long ({metadata.duration:g}s)",
                expected=[RequestStatus.VALIDATING],
            )
            return

        stored = await self._requests.update_fields(
            request.id, **metadata.as_request_fields(), meta_refreshed_at=utcnow()
        )
        if stored is None:
            request_log.info("download_result_discarded", stage="metadata")
            return

        cached = media_cache.read_manifest(targets.manifest_path)
        if cached is not None:
            _, total_size = cached
            request_log.info("cache_hit", file=targets.file_name)
            await self._complete(request.id, targets, total_size, RequestStatus.VALIDATING, request_log)
            return

        downloading = await self._requests.update_status(
            request.id, RequestStatus.DOWNLOADING, expected=[RequestStatus.VALIDATING]
        )
        if downloading is None:
            request_log.info("download_claim_lost", stage="downloading")
            return

        request_log.info("cache_miss", file=targets.file_name)
        try:
            await self._download(downloading, settings, targets, request_log)
            media_cache.cleanup_partials(targets.cache_dir, targets.base_name)
            manifest = media_cache.write_manifest(targets, request.id, request.url)
        except DownloaderError as e:
            await self._requests.update_status(
                request.id,
                RequestStatus.FAILED,
                f"yt-dlp exited with code {e.exit_code}",
                expected=[RequestStatus.DOWNLOADING],
            )
            return
        except MediaManifestError as e:
            request_log.error("manifest_failed", error=str(e))
            await self._requests.update_status(
                request.id, RequestStatus.FAILED, str(e), expected=[RequestStatus.DOWNLOADING]
            )
            return

        total_size = media_cache.manifest_total_size(targets.cache_dir, manifest)
        await self._complete(request.id, targets, total_size, RequestStatus.DOWNLOADING, request_log)

    async def _download(
        self,
        request: Request,
        settings: DownloadSettings,
        targets: CacheTargets,
        request_log: Any,
    ) -> str:
        """Walk the retry ladder; returns the label of the attempt that succeeded.

        Raises:
            DownloaderError: The last failure once no further rung triggers.
        """
        targets.cache_dir.mkdir(parents=True, exist_ok=True)
        cookies_configured = bool(settings.cookie_spec)
        failures: list[DownloaderError] = []
        for attempt in RETRY_LADDER:
            if failures and not attempt.trigger(failures, cookies_configured):
                continue
            command = build_download_args(
                request, settings, targets, attempt.use_cookies, attempt.prefer_native_hls
            )
            try:
                await self._run_process(command, stall_timeout=settings.stall_timeout_seconds)
                request_log.info("download_succeeded", attempt=attempt.label)
                return attempt.label
            except DownloaderError as e:
                failures.append(e)
                request_log.warning(
                    "download_attempt_failed",
                    attempt=attempt.label,
                    exit_code=e.exit_code,
                    stderr=truncate(e.stderr.strip()),
                    stdout=truncate(e.stdout.strip()) if not e.stderr.strip() else None,
                )
        raise failures[-1]

    async def _complete(
        self,
        request_id: str,
        targets: CacheTargets,
        total_size: int,
        from_status: RequestStatus,
        request_log: Any,
    ) -> None:
        cache_fields = {
            "file_name": targets.file_name,
            "cache_file_path": targets.relative_path,
            "cache_file_size": total_size,
        }
        ready = await self._requests.update_fields(
            request_id, expected=[from_status], status=RequestStatus.READY, **cache_fields
        )
        if ready is not None:
            return

        current = await self._requests.get(request_id)
        if current is None:
            request_log.info("download_result_discarded", reason="deleted")
        elif current.status == RequestStatus.SUSPEND:
            await self._requests.update_fields(request_id, **cache_fields)
            request_log.info("download_cached_while_suspended")
        else:
            request_log.info("download_result_discarded", status=current.status.value)
