"""Remote video metadata via `yt-dlp --dump-json`.

Only display/policy data is extracted: title, duration (for the max
duration rule) and the engagement counters shown in the playback banner.
"""

import json
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any

import structlog

from mediaqueue.config import DownloadSettings
from mediaqueue.exceptions import MetadataFetchError
from mediaqueue.services.url_parser import sanitize_download_url
from mediaqueue.utils.downloader import DownloaderError, run_process

log = structlog.get_logger()


@dataclass(frozen=True)
class VideoMetadata:
    title: str | None = None
    duration: float | None = None
    uploader: str | None = None
    uploaded_at: datetime | None = None
    view_count: int | None = None
    like_count: int | None = None
    dislike_count: int | None = None
    comment_count: int | None = None
    mylist_count: int | None = None
    favorite_count: int | None = None
    danmaku_count: int | None = None
    thumbnail_url: str | None = None

    def as_request_fields(self) -> dict[str, Any]:
        """Column values for Request (duration → duration_sec)."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["duration_sec"] = values.pop("duration")
        return values


def parse_first_json_object(raw: str) -> dict[str, Any] | None:
    """Decode the first JSON object in raw, ignoring any leading noise."""
    if not raw:
        return None
    start = raw.find("{")
    if start < 0:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(raw, start)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def _upload_date(value: Any) -> datetime | None:
    if not isinstance(value, str) or len(value) != 8 or not value.isdigit():
        return None
    try:
        return datetime(int(value[:4]), int(value[4:6]), int(value[6:8]), tzinfo=timezone.utc)
    except ValueError:
        return None


def _best_thumbnail(data: dict[str, Any]) -> str | None:
    thumbnails = data.get("thumbnails")
    if isinstance(thumbnails, list) and thumbnails:
        candidates = [t for t in thumbnails if isinstance(t, dict)]
        if candidates:
            best = max(candidates, key=lambda t: _number(t.get("width")) or 0)
            return best.get("url")
    thumbnail = data.get("thumbnail")
    return thumbnail if isinstance(thumbnail, str) else None


def metadata_from_info(data: dict[str, Any]) -> VideoMetadata:
    """Map a yt-dlp info dict onto VideoMetadata."""
    duration = _number(data.get("duration"))
    return VideoMetadata(
        title=data.get("title"),
        duration=float(duration) if duration is not None else None,
        uploader=data.get("uploader") or data.get("channel"),
        uploaded_at=_upload_date(data.get("upload_date")),
        view_count=_number(data.get("view_count")),
        like_count=_number(data.get("like_count")),
        dislike_count=_number(data.get("dislike_count")),
        comment_count=_number(data.get("comment_count")),
        mylist_count=_number(data.get("niconico_mylist_count")),
        favorite_count=_number(data.get("like_count")),
        danmaku_count=_number(data.get("danmaku_count")),
        thumbnail_url=_best_thumbnail(data),
    )


async def fetch_metadata(url: str, settings: DownloadSettings) -> VideoMetadata:
    """Run yt-dlp in metadata-only mode.

    Raises:
        MetadataFetchError: If yt-dlp fails or prints no JSON object.
    """
    command = [
        settings.ytdlp_path,
        "--dump-json",
        "--skip-download",
        "--no-playlist",
        *settings.cookie_args,
        sanitize_download_url(url),
    ]
    try:
        result = await run_process(
            command,
            stall_timeout=settings.metadata_timeout_seconds,
            max_output_bytes=None,
        )
    except DownloaderError as e:
        raise MetadataFetchError(f"yt-dlp metadata failed: {e}") from e

    data = parse_first_json_object(result.stdout)
    if data is None:
        log.error("metadata_json_missing", url=url)
        raise MetadataFetchError("metadata json not found")
    return metadata_from_info(data)
