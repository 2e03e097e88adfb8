"""Pydantic schemas for validation and serialization."""

from mediaqueue.schemas.manifest import ManifestEntry, MediaManifest
from mediaqueue.schemas.overlay import EndedEvent, ErrorEvent, OverlayInbound
from mediaqueue.schemas.policy import CustomSiteRule, PolicyRules
from mediaqueue.schemas.stock import StockFile, StockFileItem

__all__ = [
    "CustomSiteRule",
    "EndedEvent",
    "ErrorEvent",
    "ManifestEntry",
    "MediaManifest",
    "OverlayInbound",
    "PolicyRules",
    "StockFile",
    "StockFileItem",
]
