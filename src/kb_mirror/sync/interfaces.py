"""Collaborator contracts consumed by the sync engine.

The planner and session only ever talk to these protocols.  The project
ships a JSON-file implementation of every store (``repository.py``,
``state.py``), a filesystem cache (``cache.py``) and an HTTP client
(``core/client.py``); tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from .models import (
    BookInfo,
    Document,
    FailedDocRecord,
    InterruptedSessionCheckpoint,
    RemoteDescriptor,
    SessionRecord,
    SyncStatus,
)


@runtime_checkable
class RemoteListing(Protocol):
    def list_books(self) -> list[BookInfo]: ...

    def fetch(self, book_id: str) -> list[RemoteDescriptor]:
        """Return the remote listing of *book_id* in listing order.

        Raises:
            AuthExpiredError: The remote session is no longer valid.
            FetchError: Any other failure to obtain the listing.
        """
        ...


@runtime_checkable
class ContentFetcher(Protocol):
    def fetch(self, descriptor: RemoteDescriptor) -> bytes: ...


@runtime_checkable
class CacheWriter(Protocol):
    def path_for(self, book_id: str, document_id: str) -> Path: ...

    def write(self, book_id: str, document_id: str, content: bytes) -> str: ...


class DocumentRepository(Protocol):
    def get(self, document_id: str) -> Document | None: ...

    def list(self, book_id: str | None = None) -> list[Document]: ...

    def list_by_status(self, status: SyncStatus) -> list[Document]: ...

    def upsert(self, document: Document) -> None: ...

    def upsert_many(self, documents: Sequence[Document]) -> None: ...

    def set_status(
        self, document_id: str, status: SyncStatus, **changes: object
    ) -> Document | None: ...

    def update_many(
        self, updates: Sequence[tuple[str, SyncStatus, dict[str, object]]]
    ) -> list[str]: ...

    def count_by_status(self) -> dict[SyncStatus, int]: ...

    def book_ids(self) -> list[str]: ...


class FailedDocRepository(Protocol):
    def upsert(self, record: FailedDocRecord) -> None: ...

    def get(self, document_id: str) -> FailedDocRecord | None: ...

    def list(self) -> list[FailedDocRecord]: ...

    def delete(self, document_id: str) -> bool: ...

    def delete_many(self, document_ids: Sequence[str]) -> int: ...


class SessionHistoryRepository(Protocol):
    def create(
        self,
        book_ids: Sequence[str],
        force: bool = False,
        resumed_from: int | None = None,
    ) -> SessionRecord: ...

    def update(self, record: SessionRecord) -> None: ...

    def get(self, session_id: int) -> SessionRecord | None: ...

    def recent(self, limit: int = 50) -> list[SessionRecord]: ...


class CheckpointRepository(Protocol):
    def save(self, checkpoint: InterruptedSessionCheckpoint) -> None: ...

    def load(self, session_id: int) -> InterruptedSessionCheckpoint | None: ...

    def clear(self, session_id: int) -> bool: ...

    def latest(self) -> InterruptedSessionCheckpoint | None: ...
