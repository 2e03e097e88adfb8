"""Tests for FastAPI application endpoints.

Tests cover:
- Health check endpoint (/health) with and without the service graph
- Media file serving from the cache directory, including traversal attempts
- WebSocket endpoints refusing connections before startup
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException, status
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from mediaqueue.main import app, resolve_media_path


@pytest.fixture
def client() -> TestClient:
    """Create FastAPI test client.

    The client is not used as a context manager, so the lifespan (database,
    background loops) never runs.

    Returns:
        TestClient: Synchronous client for testing FastAPI endpoints.
    """
    return TestClient(app)


@pytest.fixture
def fake_services():
    """Install a stub service graph on app.state for the duration of a test."""
    services = MagicMock()
    services.playback.summary = AsyncMock(
        return_value={"total_items": 2, "current_playing_id": "req_1"}
    )
    app.state.services = services
    yield services
    del app.state.services


class TestHealthEndpoint:
    """Tests for /health endpoint (P0 - liveness probe)."""

    def test_health_endpoint_returns_200(self, client: TestClient) -> None:
        """[P0] Test health endpoint returns 200 OK status.

        GIVEN: FastAPI application is running
        WHEN: GET request to /health endpoint
        THEN: Returns 200 OK with the service name
        """
        # WHEN: Requesting health endpoint
        response = client.get("/health")

        # THEN: Returns 200 OK
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "healthy", "service": "mediaqueue"}

    def test_health_includes_queue_summary(self, client: TestClient, fake_services) -> None:
        """[P1] Test health endpoint embeds the playback summary once services exist."""
        response = client.get("/health")

        data = response.json()
        assert data["queue"]["current_playing_id"] == "req_1"
        fake_services.playback.summary.assert_awaited_once()


class TestMediaEndpoint:
    """Tests for /media/{file_name}."""

    def test_serves_cached_file(self, client: TestClient, tmp_path, monkeypatch) -> None:
        """[P1] Test a manifest inside the cache dir is served."""
        # GIVEN: A manifest in the cache directory
        monkeypatch.setenv("MEDIAQUEUE_CACHE_DIR", str(tmp_path))
        (tmp_path / "youtube_abc.media.json").write_text('{"files": []}', encoding="utf-8")

        # WHEN: Requesting it
        response = client.get("/media/youtube_abc.media.json")

        # THEN: The file content is returned
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"files": []}

    def test_missing_file_is_404(self, client: TestClient, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("MEDIAQUEUE_CACHE_DIR", str(tmp_path))

        response = client.get("/media/nothing.mp4")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.parametrize("file_name", ["../secret.txt", "sub/../../secret.txt", "/etc/passwd"])
    def test_traversal_is_rejected(self, tmp_path, file_name) -> None:
        """[P0] Test paths escaping the cache dir resolve to 404."""
        cache_dir = tmp_path / "cache"
        cache_dir.mkdir()
        (tmp_path / "secret.txt").write_text("secret", encoding="utf-8")

        with pytest.raises(HTTPException) as exc_info:
            resolve_media_path(cache_dir, file_name)

        assert exc_info.value.status_code == status.HTTP_404_NOT_FOUND

    def test_resolves_file_inside_cache(self, tmp_path) -> None:
        (tmp_path / "a.mp4").write_bytes(b"\x00")

        assert resolve_media_path(tmp_path, "a.mp4") == (tmp_path / "a.mp4").resolve()


class TestWebSockets:
    """Tests for WebSocket endpoints before the lifespan has started."""

    @pytest.mark.parametrize("path", ["/ws/overlay", "/ws/info"])
    def test_socket_refused_without_services(self, client: TestClient, path: str) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(path):
                pass

        assert exc_info.value.code == 1013
