"""Standalone download worker process.

Runs the DownloadWorker loop outside the web process, e.g. when the web
service is started with DOWNLOAD_WORKER_EMBEDDED=false. Both processes share
the database; slot accounting is re-derived from DOWNLOADING rows on every
tick so they never double-claim beyond max_concurrent_downloads.

Architecture Pattern:
    - Separate Process: independent Python process, same database
    - Short Transactions: claim → close DB → download → reopen DB → update
    - Graceful Shutdown: SIGTERM/SIGINT finish the current tick, then exit

Usage:
    python -m mediaqueue.worker
"""

import asyncio
import signal
import sys

from mediaqueue.config import get_database_url, get_rules_path
from mediaqueue.database import dispose_engine, get_session_factory, init_models
from mediaqueue.services.notifications import NotificationBus
from mediaqueue.services.policy_store import PolicyStore
from mediaqueue.services.request_service import RequestService
from mediaqueue.utils.logging import get_logger
from mediaqueue.workers.download_worker import DownloadWorker

log = get_logger(__name__)

# Shutdown flag (set by the signal handler)
shutdown_requested = False

_stop_event: asyncio.Event | None = None
_loop: asyncio.AbstractEventLoop | None = None


def signal_handler(signum: int, frame: object) -> None:
    """Request a graceful stop; the worker exits after the current tick."""
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True
    if _loop is not None and _stop_event is not None:
        _loop.call_soon_threadsafe(_stop_event.set)


def build_worker() -> DownloadWorker:
    requests = RequestService(get_session_factory(), NotificationBus())
    return DownloadWorker(requests, PolicyStore(get_rules_path()))


async def worker_main_loop() -> None:
    global _stop_event, _loop

    _loop = asyncio.get_running_loop()
    _stop_event = asyncio.Event()
    if shutdown_requested:
        _stop_event.set()

    try:
        await init_models()
        await build_worker().run(_stop_event)
    except asyncio.CancelledError:
        log.info("worker_cancelled")
        raise
    except Exception as e:
        log.error(
            "worker_fatal_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        raise
    finally:
        log.info("closing_database_connections")
        await dispose_engine()
        _stop_event = None
        _loop = None


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Clean shutdown
        1: Fatal error
    """
    database_url = get_database_url()
    database_host = database_url.split("@")[-1].split("/")[0] if "@" in database_url else "local"
    log.info("worker_configuration_loaded", database_url_host=database_host)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(worker_main_loop())
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_exited_with_error", error=str(e))
        sys.exit(1)
    log.info("worker_exited_successfully")


if __name__ == "__main__":
    main()
