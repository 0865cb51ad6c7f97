"""Error taxonomy for the sync engine.

Task-level errors (``FetchError``, ``TransientFetchError``,
``LocalWriteError``) are absorbed by the session and turned into ``failed``
documents.  ``PlanningError`` is collected per book by the planner.
``AuthExpiredError`` and ``RepositoryError`` are systemic: they abort the
whole session and reach the caller.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync engine errors."""


class FetchError(SyncError):
    """The remote refused or failed a request in a non-retryable way."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Network failure or remote 5xx; worth retrying."""


class AuthExpiredError(SyncError):
    """The remote session is no longer valid.

    Never retried by the engine; the caller has to re-authenticate.
    """


class LocalWriteError(SyncError):
    """Writing a document into the local cache failed (disk full, permissions)."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class PlanningError(SyncError):
    """The remote listing of one book could not be fetched."""

    def __init__(self, book_id: str, message: str) -> None:
        super().__init__(f"Failed to list book {book_id}: {message}")
        self.book_id = book_id


class RepositoryError(SyncError):
    """The local metadata store cannot be read or written."""


class SessionActiveError(SyncError):
    """A sync session is already running for this cache root."""


class CheckpointNotFoundError(SyncError):
    """No interrupted session checkpoint matches the request."""
