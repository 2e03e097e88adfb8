"""Stock list file schema.

Stock lists are named buckets of requests kept outside the live queue and
persisted as JSON in <stock dir>/<name>.json:

    {"name": "bgm", "saved_at": 1718000000000, "items": [
        {"id": "req_...", "url": "https://youtu.be/...", "title": "...",
         "priority": 1, "status": "READY", "parsed": {...},
         "cache_file_path": "...", "file_name": "...", "duration_sec": 212.0}
    ]}
"""

from pydantic import BaseModel, Field

from mediaqueue.models import RequestStatus


class StockParsedUrl(BaseModel):
    site: str
    video_id: str
    normalized_url: str
    raw_url: str | None = None


class StockFileItem(BaseModel):
    id: str | None = None
    url: str
    title: str | None = None
    priority: int | None = None
    status: RequestStatus = RequestStatus.QUEUED
    parsed: StockParsedUrl | None = None
    cache_file_path: str | None = None
    file_name: str | None = None
    duration_sec: float | None = None


class StockFile(BaseModel):
    name: str
    saved_at: int
    items: list[StockFileItem] = Field(default_factory=list)
