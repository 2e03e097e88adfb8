"""FastAPI application for the chat media request queue.

This is the web service entry point. It wires the services together, runs
the background loops for the lifetime of the process and exposes the small
surface the overlays need:

- GET /health: liveness plus a queue summary
- WS /ws/overlay: playback command protocol (play/stop/pause/resume/seek out,
  ended/error in)
- WS /ws/info: notification stream, replaying recent history on connect
- GET /media/{file_name}: cached artifacts and manifests
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaqueue.config import (
    get_cache_dir,
    get_rules_path,
    get_stock_dir,
    is_download_worker_embedded,
)
from mediaqueue.database import dispose_engine, get_session_factory, init_models
from mediaqueue.services.comment_ingestion import CommentIngestionService, IntakeGate
from mediaqueue.services.notifications import Notification, NotificationBus
from mediaqueue.services.overlay_hub import OverlayHub
from mediaqueue.services.playback import PlaybackOrchestrator
from mediaqueue.services.policy_store import PolicyStore
from mediaqueue.services.poll import ContinuationPoll
from mediaqueue.services.request_service import RequestService
from mediaqueue.services.stock_service import StockService
from mediaqueue.workers.download_worker import DownloadWorker

log = structlog.get_logger()

SERVICE_NAME = "mediaqueue"


@dataclass
class Services:
    """Process-wide service graph (one instance per running app)."""

    notifications: NotificationBus
    policy_store: PolicyStore
    requests: RequestService
    intake_gate: IntakeGate
    poll: ContinuationPoll
    ingestion: CommentIngestionService
    overlay: OverlayHub
    playback: PlaybackOrchestrator
    stock: StockService
    worker: DownloadWorker


def build_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> Services:
    session_factory = session_factory or get_session_factory()
    notifications = NotificationBus()
    policy_store = PolicyStore(get_rules_path())
    requests = RequestService(session_factory, notifications)
    intake_gate = IntakeGate(notifications)
    poll = ContinuationPoll(notifications, policy_store.get_rules)
    ingestion = CommentIngestionService(
        session_factory, policy_store, notifications, intake_gate=intake_gate, poll=poll
    )
    overlay = OverlayHub()
    playback = PlaybackOrchestrator(
        requests, overlay, poll, intake_gate=intake_gate, ingestion=ingestion
    )
    return Services(
        notifications=notifications,
        policy_store=policy_store,
        requests=requests,
        intake_gate=intake_gate,
        poll=poll,
        ingestion=ingestion,
        overlay=overlay,
        playback=playback,
        stock=StockService(session_factory, get_stock_dir()),
        worker=DownloadWorker(requests, policy_store),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of background tasks.

    Startup:
    - Create missing tables and build the service graph
    - Demote stale PLAYING rows, re-queue interrupted downloads
    - Start the autoplay loop, the poll driver and (unless disabled) the
      download worker

    Shutdown:
    - Cancel background tasks
    - Dispose the database engine
    """
    await init_models()
    services = build_services()
    app.state.services = services
    await services.requests.recover_after_restart()

    tasks = [
        asyncio.create_task(services.playback.run_autoplay(), name="autoplay"),
        asyncio.create_task(services.playback.run_poll_driver(), name="poll-driver"),
    ]
    if is_download_worker_embedded():
        tasks.append(asyncio.create_task(services.worker.run(), name="download-worker"))
    else:
        log.info("download_worker_external", message="Run `python -m mediaqueue.worker`")

    yield  # Application runs here

    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            log.info("background_task_cancelled", task=task.get_name())
    await dispose_engine()


app = FastAPI(
    title="mediaqueue",
    description="Live-stream chat media request queue",
    version="0.1.0",
    lifespan=lifespan,
)


def _services(app: FastAPI) -> Services | None:
    return getattr(app.state, "services", None)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness probe; includes the queue summary once services are up."""
    services = _services(app)
    content = {"status": "healthy", "service": SERVICE_NAME}
    if services is not None:
        content["queue"] = await services.playback.summary()
    return JSONResponse(content=content)


@app.websocket("/ws/overlay")
async def overlay_socket(websocket: WebSocket) -> None:
    services = _services(websocket.app)
    if services is None:
        await websocket.close(code=1013)
        return
    await services.overlay.serve(websocket)


@app.websocket("/ws/info")
async def info_socket(websocket: WebSocket) -> None:
    services = _services(websocket.app)
    if services is None:
        await websocket.close(code=1013)
        return
    await websocket.accept()
    queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=100)

    def enqueue(notification: Notification) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(notification)

    for notification in services.notifications.history:
        enqueue(notification)
    unsubscribe = services.notifications.subscribe(enqueue)
    try:
        while True:
            notification = await queue.get()
            await websocket.send_json(notification.as_dict())
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()


def resolve_media_path(cache_dir: Path | str, file_name: str) -> Path:
    """Map a request path onto a file inside the cache directory.

    Raises:
        HTTPException: 404 for anything outside the cache dir or missing.
    """
    root = Path(cache_dir).resolve()
    candidate = (root / file_name).resolve()
    if candidate.parent != root or not candidate.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="media not found")
    return candidate


@app.get("/media/{file_name}")
async def media_file(file_name: str) -> FileResponse:
    return FileResponse(resolve_media_path(get_cache_dir(), file_name))


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional so the streaming PC can reach it
    uvicorn.run(
        "mediaqueue.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
