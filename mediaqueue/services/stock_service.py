"""Stock lists: named non-live buckets backed by JSON files.

Stock buckets live in the same requests table as the live queue but are
never autoplayed and never take part in duplicate/cooldown checks. Their
contents are mirrored to <stock dir>/<name>.json on save and imported from
there the first time an empty bucket is loaded.
"""

import json
from collections.abc import Iterable
from pathlib import Path

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.exceptions import ConfigurationError, UrlNotFoundError
from mediaqueue.models import QUEUE_BUCKET, Request, RequestStatus, to_epoch_ms, utcnow
from mediaqueue.schemas.stock import StockFile, StockFileItem, StockParsedUrl
from mediaqueue.services import request_service
from mediaqueue.services.url_parser import parse_request_url
from mediaqueue.utils.ids import create_request_id

log = structlog.get_logger()

DEFAULT_STOCK_NAME = "default"
STOCK_LIST_LIMIT = 1000


def sanitize_stock_name(name: str | None) -> str:
    """Trim and drop a trailing ".json"; blank names map to "default"."""
    trimmed = (name or "").strip()
    if not trimmed:
        return DEFAULT_STOCK_NAME
    if trimmed.lower().endswith(".json"):
        trimmed = trimmed[: -len(".json")]
    return trimmed or DEFAULT_STOCK_NAME


class StockService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stock_dir: Path | str,
    ) -> None:
        self._session_factory = session_factory
        self._stock_dir = Path(stock_dir)

    # Files

    def _file_path(self, name: str) -> Path:
        return self._stock_dir / f"{sanitize_stock_name(name)}.json"

    def _write_file(self, stock: StockFile) -> Path:
        path = self._file_path(stock.name)
        try:
            self._stock_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(stock.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"cannot write stock file {path}: {e}") from e
        return path

    def _write_empty_file(self, name: str) -> None:
        if not self._file_path(name).exists():
            self._write_file(StockFile(name=name, saved_at=to_epoch_ms(utcnow())))

    def _read_file(self, name: str) -> StockFile | None:
        path = self._file_path(name)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                log.error("stock_file_invalid", file=str(path))
                return None
            raw_items = raw.get("items")
            items = []
            for entry in raw_items if isinstance(raw_items, list) else []:
                if isinstance(entry, dict) and isinstance(entry.get("url"), str):
                    items.append(StockFileItem.model_validate(entry))
            return StockFile(
                name=sanitize_stock_name(raw.get("name") or name),
                saved_at=raw.get("saved_at") or to_epoch_ms(utcnow()),
                items=items,
            )
        except (OSError, ValueError, ValidationError) as e:
            log.error("stock_file_unreadable", file=str(path), error=str(e))
            return None

    def list_stock_names(self) -> list[str]:
        """Names of all stock files; "default" is created and listed first."""
        self._stock_dir.mkdir(parents=True, exist_ok=True)
        names = sorted(path.stem for path in self._stock_dir.glob("*.json") if path.is_file())
        if DEFAULT_STOCK_NAME not in names:
            self._write_empty_file(DEFAULT_STOCK_NAME)
            names.insert(0, DEFAULT_STOCK_NAME)
        else:
            names.remove(DEFAULT_STOCK_NAME)
            names.insert(0, DEFAULT_STOCK_NAME)
        return names

    def create_stock(self, name: str) -> str:
        """Create an empty stock file, suffixing -1, -2, ... on collisions."""
        base = sanitize_stock_name(name)
        existing = set(self.list_stock_names())
        candidate = base
        suffix = 1
        while candidate in existing:
            candidate = f"{base}-{suffix}"
            suffix += 1
        self._write_empty_file(candidate)
        log.info("stock_created", name=candidate)
        return candidate

    # Buckets

    async def _list_bucket(self, session: AsyncSession, bucket: str) -> list[Request]:
        result = await session.execute(
            select(Request)
            .where(Request.bucket == bucket)
            .order_by(*request_service.queue_order_by())
            .limit(STOCK_LIST_LIMIT)
        )
        return list(result.scalars().all())

    async def load_stock(self, name: str) -> list[Request]:
        """Return the bucket's rows, importing from the file when it is empty."""
        bucket = sanitize_stock_name(name)
        async with self._session_factory() as session:
            rows = await self._list_bucket(session, bucket)
        if rows:
            return rows

        stock = self._read_file(bucket)
        if stock is None or not stock.items:
            self._write_empty_file(bucket)
            return []

        async with self._session_factory() as session, session.begin():
            await self._import_bucket(session, bucket, stock)
        async with self._session_factory() as session:
            return await self._list_bucket(session, bucket)

    async def _import_bucket(self, session: AsyncSession, bucket: str, stock: StockFile) -> None:
        for existing in await self._list_bucket(session, bucket):
            await request_service.delete_request(session, existing)

        now = utcnow()
        for item in stock.items:
            request_id = item.id
            if not request_id or await session.get(Request, request_id) is not None:
                request_id = create_request_id()
            parsed = item.parsed
            session.add(
                Request(
                    id=request_id,
                    bucket=bucket,
                    created_at=now,
                    platform="debug",
                    original_message=item.url,
                    url=item.url,
                    parsed_site=parsed.site if parsed else None,
                    parsed_video_id=parsed.video_id if parsed else None,
                    parsed_normalized_url=parsed.normalized_url if parsed else None,
                    status=item.status,
                    queue_position=item.priority,
                    title=item.title,
                    duration_sec=item.duration_sec,
                    cache_file_path=item.cache_file_path,
                    file_name=item.file_name,
                )
            )
        await session.flush()
        log.info("stock_imported", bucket=bucket, items=len(stock.items))

    async def save_stock(self, name: str) -> Path:
        """Export the bucket to its JSON file."""
        bucket = sanitize_stock_name(name)
        async with self._session_factory() as session:
            rows = await self._list_bucket(session, bucket)
        stock = StockFile(
            name=bucket,
            saved_at=to_epoch_ms(utcnow()),
            items=[
                StockFileItem(
                    id=row.id,
                    url=row.url,
                    title=row.title,
                    priority=row.queue_position,
                    status=row.status,
                    parsed=StockParsedUrl(**row.parsed.as_dict()) if row.parsed else None,
                    cache_file_path=row.cache_file_path,
                    file_name=row.file_name,
                    duration_sec=row.duration_sec,
                )
                for row in rows
            ],
        )
        path = self._write_file(stock)
        log.info("stock_saved", bucket=bucket, items=len(rows), file=str(path))
        return path

    async def add_stock_item(
        self, bucket: str, message: str, priority: int | None = None
    ) -> Request:
        """Parse a message and add it to a stock bucket as QUEUED.

        Raises:
            UrlNotFoundError: If no supported URL is found in the message.
        """
        parsed = parse_request_url(message)
        if parsed is None:
            raise UrlNotFoundError(message)
        request = Request(
            id=create_request_id(),
            bucket=sanitize_stock_name(bucket),
            platform="debug",
            original_message=message,
            url=parsed.raw_url,
            parsed_site=parsed.site,
            parsed_video_id=parsed.video_id,
            parsed_normalized_url=parsed.normalized_url,
            status=RequestStatus.QUEUED,
            queue_position=priority,
        )
        async with self._session_factory() as session, session.begin():
            session.add(request)
        log.info("stock_item_added", bucket=request.bucket, request_id=request.id)
        return request

    async def submit_stock_items(
        self, bucket: str, request_ids: Iterable[str], as_suspend: bool = False
    ) -> list[Request]:
        """Copy stock entries into the live queue.

        Copies are SUSPEND when as_suspend, READY when the source is READY,
        otherwise QUEUED; position, title, duration and cache fields carry
        over. Ids from other buckets are ignored.
        """
        bucket = sanitize_stock_name(bucket)
        copies: list[Request] = []
        async with self._session_factory() as session, session.begin():
            for request_id in request_ids:
                source = await session.get(Request, request_id)
                if source is None or source.bucket != bucket:
                    continue
                if as_suspend:
                    status = RequestStatus.SUSPEND
                elif source.status == RequestStatus.READY:
                    status = RequestStatus.READY
                else:
                    status = RequestStatus.QUEUED
                copy = Request(
                    id=create_request_id(),
                    bucket=QUEUE_BUCKET,
                    platform=source.platform,
                    user_id=source.user_id,
                    user_name=source.user_name,
                    original_message=source.original_message,
                    url=source.url,
                    parsed_site=source.parsed_site,
                    parsed_video_id=source.parsed_video_id,
                    parsed_normalized_url=source.parsed_normalized_url,
                    status=status,
                    queue_position=source.queue_position,
                    title=source.title,
                    duration_sec=source.duration_sec,
                    file_name=source.file_name,
                    cache_file_path=source.cache_file_path,
                    cache_file_size=source.cache_file_size,
                )
                session.add(copy)
                copies.append(copy)
        log.info("stock_items_submitted", bucket=bucket, count=len(copies), as_suspend=as_suspend)
        return copies
