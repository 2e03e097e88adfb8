"""Media manifest schema (<base>.media.json in the cache directory).

A manifest lists the playable artifacts of one downloaded request: either a
single muxed container, or a separate video track plus an audio track.
"""

from typing import Literal

from pydantic import BaseModel, Field

ManifestEntryKind = Literal["container", "video", "audio", "thumbnail"]


class ManifestEntry(BaseModel):
    kind: ManifestEntryKind
    file: str
    mime_type: str | None = None


class MediaManifest(BaseModel):
    version: Literal[1] = 1
    request_id: str
    source_url: str
    created_at: int
    thumbnail: str | None = None
    entries: list[ManifestEntry] = Field(default_factory=list)
