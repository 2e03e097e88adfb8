"""Shared exceptions for the media queue.

This module contains exception classes used across multiple services
to avoid cross-domain dependencies between services.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mediaqueue.models import RequestStatus


class ConfigurationError(Exception):
    """Raised when required configuration is missing or unusable.

    Examples are an unreadable cache directory or a rules file that cannot
    be written back after an operator update.
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid Request status transition.

    Only transitions listed in Request.VALID_TRANSITIONS are allowed.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current RequestStatus before the attempted transition.
        to_status: The RequestStatus that was attempted but is not valid.

    Example:
        >>> request.status = RequestStatus.QUEUED
        >>> request.status = RequestStatus.PLAYING  # Invalid - never downloaded
        InvalidStateTransitionError: Invalid transition: QUEUED → PLAYING
    """

    def __init__(self, message: str, from_status: "RequestStatus", to_status: "RequestStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class RequestNotFoundError(LookupError):
    """Raised when a request id does not exist in the repository."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"request not found: {request_id}")


class InvalidCommentError(ValueError):
    """Raised for comments that cannot be ingested (e.g. empty message)."""

    pass


class UrlNotFoundError(ValueError):
    """Raised when no supported media URL can be extracted from a message."""

    def __init__(self, message: str) -> None:
        self.source_message = message
        super().__init__("url-not-found")


class PlaybackError(Exception):
    """Raised when a playback command cannot be carried out."""

    pass


class CacheMissingError(PlaybackError):
    """Raised when a request's cached media vanished and it was re-queued."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__("cache missing; re-download started")


class MetadataFetchError(Exception):
    """Raised when remote metadata cannot be fetched or parsed."""

    pass


class MediaManifestError(Exception):
    """Raised when a download produced no usable media artifacts."""

    pass
