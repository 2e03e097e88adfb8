"""Live-stream chat media request queue.

This package turns chat comments into a moderated queue of media requests,
downloads them in the background with yt-dlp and drives a single playback
overlay, one item at a time.
"""

from mediaqueue.database import get_session, get_session_factory
from mediaqueue.models import Base, Comment, PlaybackLog, Request, RequestStatus

__all__ = [
    "Base",
    "Comment",
    "PlaybackLog",
    "Request",
    "RequestStatus",
    "get_session",
    "get_session_factory",
]
