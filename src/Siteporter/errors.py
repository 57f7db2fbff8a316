"""Exception taxonomy for the WXR importer.

Only ``CannotOpenSource`` is fatal to a run. Every other error is scoped to a
single entity: the importer logs it, counts it and moves on to the next node.
"""

from __future__ import annotations

from typing import Any


class ImporterError(Exception):
    """Base exception for importer errors."""

    pass


class CannotOpenSource(ImporterError):
    """Raised when the export document cannot be opened for parsing."""

    pass


class MalformedEntity(ImporterError):
    """Raised when an entity node cannot be decoded into a record.

    Args:
        message: Human readable reason
        data: Partially parsed fields, logged at debug level for auditing
    """

    def __init__(self, message: str, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.data = data or {}


class UnsupportedEntityState(MalformedEntity):
    """Raised for entities the importer deliberately never imports (auto-drafts)."""

    pass


class StoreRejected(ImporterError):
    """Raised by a content store when it refuses a create or update."""

    pass


class AttachmentFetchFailed(ImporterError):
    """Raised when a remote attachment cannot be downloaded."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


__all__ = [
    "AttachmentFetchFailed",
    "CannotOpenSource",
    "ImporterError",
    "MalformedEntity",
    "StoreRejected",
    "UnsupportedEntityState",
]
