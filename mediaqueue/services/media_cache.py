"""On-disk media cache: naming, artifact discovery and manifests.

Every request maps to a deterministic base name derived from its canonical
identity, so a second request for the same video finds the manifest of the
first one and skips the download entirely:

    https://www.youtube.com/watch?v=dQw4w9WgXcQ → youtube_dqw4w9wgxcq
        cache/videos/youtube_dqw4w9wgxcq.media.json   (manifest)
        cache/videos/youtube_dqw4w9wgxcq.mp4          (artifact)
        cache/videos/youtube_dqw4w9wgxcq.info.json    (yt-dlp, ignored)
"""

import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import structlog
from pydantic import ValidationError

from mediaqueue.exceptions import MediaManifestError
from mediaqueue.models import to_epoch_ms, utcnow
from mediaqueue.schemas.manifest import ManifestEntry, ManifestEntryKind, MediaManifest

log = structlog.get_logger()

MAX_BASE_LENGTH = 240
MANIFEST_SUFFIX = ".media.json"

THUMBNAIL_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif")
AUDIO_EXTENSIONS = (".m4a", ".aac", ".mp3", ".opus", ".weba", ".ogg", ".wav", ".flac")
VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm", ".mov")

CONTAINER_PREFERENCE = [".mp4", ".webm", ".mkv", ".mov"]
AUDIO_PREFERENCE = [".m4a", ".mp4", ".webm", ".aac", ".mp3", ".opus", ".ogg", ".weba", ".flac"]

AUDIO_MIME_TYPES = {
    ".mp4": "audio/mp4",
    ".m4a": "audio/mp4",
    ".webm": "audio/webm",
    ".aac": "audio/aac",
    ".mp3": "audio/mpeg",
}
VIDEO_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".mov": "video/quicktime",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def sanitize_segment(value: str | None, fallback: str) -> str:
    if not value:
        return fallback
    normalized = _NON_ALNUM.sub("-", value.lower()).strip("-")
    if not normalized:
        return fallback
    return normalized[:MAX_BASE_LENGTH]


def stable_hash(value: str) -> str:
    """31-multiplier 32-bit string hash rendered in base 36."""
    digest = 0
    for char in value:
        digest = (digest * 31 + ord(char)) & 0xFFFFFFFF
    if digest == 0:
        return "0"
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = []
    while digest:
        digest, remainder = divmod(digest, 36)
        out.append(alphabet[remainder])
    return "".join(reversed(out))


def host_segment(url: str) -> str:
    """Host without "www" and TLD, dash-joined: www.nicovideo.jp → nicovideo."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return "media"
    if not hostname:
        return "media"
    parts = [part for part in hostname.split(".") if part != "www"]
    if len(parts) > 1:
        parts.pop()
    return sanitize_segment("-".join(parts) or hostname, "media")


def cache_base_name(video_id: str | None, normalized_url: str | None, url: str) -> str:
    source_url = normalized_url or url
    unique_source = video_id or source_url or url
    unique = sanitize_segment(unique_source, stable_hash(unique_source))
    return f"{host_segment(source_url)}_{unique}"[:MAX_BASE_LENGTH]


@dataclass(frozen=True)
class CacheTargets:
    cache_dir: Path
    base_name: str

    @property
    def file_name(self) -> str:
        return f"{self.base_name}{MANIFEST_SUFFIX}"

    @property
    def manifest_path(self) -> Path:
        return self.cache_dir / self.file_name

    @property
    def relative_path(self) -> str:
        return (self.cache_dir / self.file_name).as_posix()

    @property
    def output_template(self) -> str:
        return str(self.cache_dir / f"{self.base_name}.%(ext)s")


def cache_targets(
    cache_dir: Path | str, video_id: str | None, normalized_url: str | None, url: str
) -> CacheTargets:
    return CacheTargets(Path(cache_dir), cache_base_name(video_id, normalized_url, url))


def _owned_files(cache_dir: Path, base_name: str) -> list[Path]:
    if not cache_dir.is_dir():
        return []
    prefix = f"{base_name}."
    return sorted(p for p in cache_dir.iterdir() if p.is_file() and p.name.startswith(prefix))


def cleanup_partials(cache_dir: Path, base_name: str) -> None:
    """Promote *.part files and delete leftover *.part-frag* fragments."""
    for path in _owned_files(cache_dir, base_name):
        if path.name.lower().endswith(".part"):
            try:
                path.rename(path.with_name(path.name[: -len(".part")]))
            except OSError as e:
                log.warning("partial_rename_failed", file=path.name, error=str(e))
    for path in _owned_files(cache_dir, base_name):
        if ".part-frag" in path.name.lower():
            try:
                path.unlink()
            except OSError as e:
                log.warning("fragment_delete_failed", file=path.name, error=str(e))


def classify_artifact(name: str) -> ManifestEntryKind:
    lower = name.lower()
    if ".fvideo" in lower or ".video" in lower:
        return "video"
    if ".faudio" in lower or ".audio" in lower or lower.endswith(AUDIO_EXTENSIONS):
        return "audio"
    if lower.endswith(VIDEO_EXTENSIONS):
        return "video"
    if lower.endswith(THUMBNAIL_EXTENSIONS):
        return "thumbnail"
    return "container"


@dataclass(frozen=True)
class Artifact:
    name: str
    kind: ManifestEntryKind

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower()


def find_artifacts(cache_dir: Path, base_name: str) -> list[Artifact]:
    artifacts = []
    for path in _owned_files(cache_dir, base_name):
        lower = path.name.lower()
        if lower.endswith(".info.json") or path.name.endswith(MANIFEST_SUFFIX):
            continue
        artifacts.append(Artifact(path.name, classify_artifact(path.name)))
    return artifacts


def select_preferred(artifacts: list[Artifact], priority: list[str]) -> Artifact | None:
    """Highest-ranked extension wins; first seen wins ties."""
    if not artifacts:
        return None
    scores = {ext: len(priority) - index for index, ext in enumerate(priority)}
    return max(artifacts, key=lambda a: scores.get(a.extension, 0))


def guess_mime(name: str, kind: ManifestEntryKind) -> str:
    extension = Path(name).suffix.lower()
    if kind == "audio" and extension in AUDIO_MIME_TYPES:
        return AUDIO_MIME_TYPES[extension]
    if kind in ("video", "container") and extension in VIDEO_MIME_TYPES:
        return VIDEO_MIME_TYPES[extension]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def build_manifest_entries(artifacts: list[Artifact]) -> list[ManifestEntry]:
    containers = [a for a in artifacts if a.kind == "container"]
    videos = [a for a in artifacts if a.kind == "video"]
    audios = [a for a in artifacts if a.kind == "audio"]

    if not videos and not audios:
        container = select_preferred(containers, CONTAINER_PREFERENCE)
        if container is None:
            return []
        return [
            ManifestEntry(
                kind="container",
                file=container.name,
                mime_type=guess_mime(container.name, "container"),
            )
        ]

    entries: list[ManifestEntry] = []
    video = select_preferred(videos, CONTAINER_PREFERENCE)
    if video is not None:
        entries.append(
            ManifestEntry(kind="video", file=video.name, mime_type=guess_mime(video.name, "video"))
        )
    else:
        fallback = select_preferred(containers, CONTAINER_PREFERENCE)
        if fallback is not None:
            entries.append(
                ManifestEntry(
                    kind="video",
                    file=fallback.name,
                    mime_type=guess_mime(fallback.name, "container"),
                )
            )
    audio = select_preferred(audios, AUDIO_PREFERENCE)
    if audio is not None:
        entries.append(
            ManifestEntry(kind="audio", file=audio.name, mime_type=guess_mime(audio.name, "audio"))
        )
    return entries


def write_manifest(targets: CacheTargets, request_id: str, source_url: str) -> MediaManifest:
    """Scan the artifacts of targets.base_name and write the manifest.

    Raises:
        MediaManifestError: If nothing was downloaded or nothing is playable.
    """
    artifacts = find_artifacts(targets.cache_dir, targets.base_name)
    if not artifacts:
        raise MediaManifestError("yt-dlp did not produce any media files")
    entries = build_manifest_entries(artifacts)
    if not entries:
        raise MediaManifestError("No playable media artifacts were found")

    thumbnail = next((a.name for a in artifacts if a.kind == "thumbnail"), None)
    manifest = MediaManifest(
        request_id=request_id,
        source_url=source_url,
        created_at=to_epoch_ms(utcnow()),
        thumbnail=thumbnail,
        entries=entries,
    )
    targets.manifest_path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
    log.info(
        "manifest_written",
        request_id=request_id,
        file=targets.file_name,
        entries=[entry.kind for entry in entries],
    )
    return manifest


def manifest_total_size(cache_dir: Path, manifest: MediaManifest) -> int:
    total = 0
    for entry in manifest.entries:
        try:
            total += (cache_dir / entry.file).stat().st_size
        except OSError:
            log.warning("manifest_entry_missing", file=entry.file)
    return total


def read_manifest(manifest_path: Path) -> tuple[MediaManifest, int] | None:
    """Load a manifest and sum its entry sizes; None if unreadable or empty."""
    try:
        manifest = MediaManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        log.warning("manifest_unreadable", file=str(manifest_path), error=str(e))
        return None
    if not manifest.entries:
        return None
    return manifest, manifest_total_size(manifest_path.parent, manifest)
