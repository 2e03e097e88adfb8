"""Cross-cutting utilities.

Modules:
    downloader: Async subprocess wrapper with a stall watchdog.
    ids: Request and comment id generation.
    logging: JSON StructuredLogger for process-level code paths.
"""

from mediaqueue.utils.downloader import (
    DownloaderError,
    DownloaderStalledError,
    ProcessResult,
    run_process,
)
from mediaqueue.utils.logging import get_logger

__all__ = [
    "DownloaderError",
    "DownloaderStalledError",
    "ProcessResult",
    "get_logger",
    "run_process",
]
