"""Tests for stock lists (named non-live buckets backed by JSON files).

Test Coverage:
- Name sanitizing and stock file discovery
- Import from file on first load, export on save
- Adding items and submitting copies into the live queue
"""

import json

import pytest

from mediaqueue.exceptions import UrlNotFoundError
from mediaqueue.models import QUEUE_BUCKET, RequestStatus
from mediaqueue.services.stock_service import StockService, sanitize_stock_name


@pytest.fixture
def stock_dir(tmp_path):
    return tmp_path / "stock"


@pytest.fixture
def stock_service(test_session_factory, stock_dir) -> StockService:
    return StockService(test_session_factory, stock_dir)


class TestStockNames:
    @pytest.mark.parametrize(
        "raw,expected",
        [(None, "default"), ("", "default"), (" bgm.json ", "bgm"), (".json", "default")],
    )
    def test_p2_sanitize(self, raw, expected):
        assert sanitize_stock_name(raw) == expected

    def test_p1_default_is_created_and_listed_first(self, stock_service, stock_dir):
        stock_dir.mkdir()
        (stock_dir / "zzz.json").write_text("{}", encoding="utf-8")
        (stock_dir / "abc.json").write_text("{}", encoding="utf-8")

        names = stock_service.list_stock_names()

        assert names == ["default", "abc", "zzz"]
        assert (stock_dir / "default.json").exists()

    def test_p1_create_suffixes_collisions(self, stock_service):
        assert stock_service.create_stock("bgm") == "bgm"
        assert stock_service.create_stock("bgm.json") == "bgm-1"
        assert stock_service.create_stock("bgm") == "bgm-2"


class TestLoadAndSave:
    async def test_p0_first_load_imports_file(self, stock_service, stock_dir):
        """[P0] An empty bucket is filled from <name>.json, skipping bad entries."""
        # GIVEN: A stock file with two usable entries and two broken ones
        stock_dir.mkdir()
        payload = {
            "name": "bgm",
            "saved_at": 1718000000000,
            "items": [
                {"url": "https://youtu.be/aaaaaaaaaaa", "title": "A", "priority": 1,
                 "status": "READY", "file_name": "a.media.json"},
                "not an object",
                {"title": "no url"},
                {"url": "https://youtu.be/bbbbbbbbbbb", "priority": 2,
                 "parsed": {"site": "youtube", "video_id": "bbbbbbbbbbb",
                            "normalized_url": "https://www.youtube.com/watch?v=bbbbbbbbbbb"}},
            ],
        }
        (stock_dir / "bgm.json").write_text(json.dumps(payload), encoding="utf-8")

        # WHEN: Loading the bucket
        rows = await stock_service.load_stock("bgm")

        # THEN: Two rows in file order, statuses preserved
        assert [r.url for r in rows] == [
            "https://youtu.be/aaaaaaaaaaa",
            "https://youtu.be/bbbbbbbbbbb",
        ]
        assert rows[0].status == RequestStatus.READY
        assert rows[1].status == RequestStatus.QUEUED
        assert rows[1].parsed_video_id == "bbbbbbbbbbb"
        assert {r.bucket for r in rows} == {"bgm"}

    async def test_p1_second_load_uses_database(self, stock_service, stock_dir):
        stock_dir.mkdir()
        payload = {"name": "bgm", "saved_at": 1, "items": [{"url": "https://youtu.be/aaaaaaaaaaa"}]}
        (stock_dir / "bgm.json").write_text(json.dumps(payload), encoding="utf-8")
        first = await stock_service.load_stock("bgm")
        (stock_dir / "bgm.json").unlink()

        second = await stock_service.load_stock("bgm")

        assert [r.id for r in second] == [r.id for r in first]

    async def test_p1_missing_file_creates_empty_stock(self, stock_service, stock_dir):
        assert await stock_service.load_stock("fresh") == []
        assert json.loads((stock_dir / "fresh.json").read_text(encoding="utf-8"))["items"] == []

    async def test_p2_corrupt_file_loads_empty(self, stock_service, stock_dir):
        stock_dir.mkdir()
        (stock_dir / "bad.json").write_text("{not json", encoding="utf-8")

        assert await stock_service.load_stock("bad") == []

    async def test_p0_save_exports_bucket(self, stock_service, stock_dir):
        """[P0] save_stock writes the bucket with parsed identity."""
        await stock_service.add_stock_item("bgm", "https://youtu.be/dQw4w9WgXcQ", priority=3)

        path = await stock_service.save_stock("bgm")

        saved = json.loads(path.read_text(encoding="utf-8"))
        assert path == stock_dir / "bgm.json"
        assert saved["name"] == "bgm"
        assert len(saved["items"]) == 1
        item = saved["items"][0]
        assert item["priority"] == 3
        assert item["status"] == "QUEUED"
        assert item["parsed"]["video_id"] == "dQw4w9WgXcQ"


class TestStockItems:
    async def test_p1_add_rejects_message_without_url(self, stock_service):
        with pytest.raises(UrlNotFoundError):
            await stock_service.add_stock_item("bgm", "just chatting")

    async def test_p0_submit_copies_into_live_queue(
        self, stock_service, make_request, request_service
    ):
        """[P0] READY stays READY, others become QUEUED, sources stay in stock."""
        # GIVEN: One READY and one QUEUED stock entry, plus a foreign row
        ready = await make_request(
            video_id="aaaaaaaaaaa",
            status=RequestStatus.READY,
            bucket="bgm",
            file_name="a.media.json",
            title="A",
        )
        queued = await make_request(video_id="bbbbbbbbbbb", bucket="bgm", position=2)
        foreign = await make_request(video_id="ccccccccccc", bucket="other")

        # WHEN: Submitting all three ids to the "bgm" stock
        copies = await stock_service.submit_stock_items("bgm", [ready.id, queued.id, foreign.id])

        # THEN: Two copies in the live queue with fresh ids
        assert [c.status for c in copies] == [RequestStatus.READY, RequestStatus.QUEUED]
        assert {c.bucket for c in copies} == {QUEUE_BUCKET}
        assert copies[0].id != ready.id
        assert copies[0].file_name == "a.media.json"
        assert (await request_service.get(ready.id)).bucket == "bgm"

    async def test_p1_submit_as_suspend(self, stock_service, make_request):
        source = await make_request(status=RequestStatus.READY, bucket="bgm")

        copies = await stock_service.submit_stock_items("bgm", [source.id], as_suspend=True)

        assert copies[0].status == RequestStatus.SUSPEND
