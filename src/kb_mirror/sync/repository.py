"""JSON-file implementations of the engine's record stores.

* ``DocumentStore``        -- ``documents.json``, one record per document.
* ``FailedDocStore``       -- ``failed_docs.json``, the failure ledger rows.
* ``SessionHistoryStore``  -- ``history.json``, one row per session run.

All three persist through ``AtomicJsonFile`` so display reads can run in
parallel with session writes and only ever see complete files.  Decoding
problems are reported as ``RepositoryError``; the session treats that as a
systemic failure.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from .errors import RepositoryError
from .models import (
    Document,
    FailedDocRecord,
    SessionRecord,
    SessionStatus,
    SyncStatus,
    utc_now,
)
from .state import AtomicJsonFile

logger = logging.getLogger(__name__)

DOCUMENTS_FILE = "documents.json"
FAILED_DOCS_FILE = "failed_docs.json"
HISTORY_FILE = "history.json"


def _decode(model: type[BaseModel], data: Any, source: Path) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise RepositoryError(f"Corrupt record in {source}: {exc}") from exc


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentStore:
    """Local document records, keyed by document id.

    Args:
        state_dir: Directory holding the engine state files.
    """

    def __init__(self, state_dir: Path) -> None:
        self._file = AtomicJsonFile(Path(state_dir) / DOCUMENTS_FILE)

    def _records(self) -> dict[str, Any]:
        return self._file.load({"documents": {}}).get("documents", {})

    def get(self, document_id: str) -> Document | None:
        data = self._records().get(document_id)
        if data is None:
            return None
        return _decode(Document, data, self._file.path)

    def list(self, book_id: str | None = None) -> list[Document]:
        """Return documents in insertion order, optionally for one book."""
        documents = [
            _decode(Document, data, self._file.path)
            for data in self._records().values()
        ]
        if book_id is not None:
            documents = [d for d in documents if d.book_id == book_id]
        return documents

    def list_by_status(self, status: SyncStatus) -> list[Document]:
        return [d for d in self.list() if d.sync_status == status]

    def upsert(self, document: Document) -> None:
        self.upsert_many([document])

    def upsert_many(self, documents: Sequence[Document]) -> None:
        if not documents:
            return
        with self._file.transaction({"documents": {}}) as data:
            records = data.setdefault("documents", {})
            for document in documents:
                records[document.id] = document.model_dump(mode="json")

    def set_status(
        self, document_id: str, status: SyncStatus, **changes: Any
    ) -> Document | None:
        """Change the status (and any other field) of one document.

        The result is re-validated, so ``synced`` without a ``local_path``
        is rejected.

        Returns:
            The updated document, or ``None`` if *document_id* is unknown.
        """
        with self._file.transaction({"documents": {}}) as data:
            records = data.setdefault("documents", {})
            return self._apply(records, document_id, status, changes)

    def update_many(
        self, updates: Sequence[tuple[str, SyncStatus, dict[str, Any]]]
    ) -> list[str]:
        """Apply several ``set_status`` changes with a single file rewrite.

        Returns:
            The ids among *updates* that are not in the store.
        """
        if not updates:
            return []
        missing: list[str] = []
        with self._file.transaction({"documents": {}}) as data:
            records = data.setdefault("documents", {})
            for document_id, status, changes in updates:
                if self._apply(records, document_id, status, changes) is None:
                    missing.append(document_id)
        return missing

    def _apply(
        self,
        records: dict[str, Any],
        document_id: str,
        status: SyncStatus,
        changes: dict[str, Any],
    ) -> Document | None:
        current = records.get(document_id)
        if current is None:
            return None
        current = _decode(Document, current, self._file.path)
        updated = Document.model_validate(
            {
                **current.model_dump(),
                **changes,
                "sync_status": status,
                "updated_at": utc_now(),
            }
        )
        records[document_id] = updated.model_dump(mode="json")
        return updated

    def count_by_status(self) -> dict[SyncStatus, int]:
        counts = Counter(d.sync_status for d in self.list())
        return {status: counts.get(status, 0) for status in SyncStatus}

    def book_ids(self) -> list[str]:
        return sorted({d.book_id for d in self.list()})


# ---------------------------------------------------------------------------
# Failed documents
# ---------------------------------------------------------------------------


class FailedDocStore:
    """Rows of the failed-document ledger, keyed by document id."""

    def __init__(self, state_dir: Path) -> None:
        self._file = AtomicJsonFile(Path(state_dir) / FAILED_DOCS_FILE)

    def upsert(self, record: FailedDocRecord) -> None:
        with self._file.transaction({"failed": {}}) as data:
            data.setdefault("failed", {})[record.document_id] = (
                record.model_dump(mode="json")
            )

    def get(self, document_id: str) -> FailedDocRecord | None:
        data = self._file.load({"failed": {}}).get("failed", {})
        if document_id not in data:
            return None
        return _decode(FailedDocRecord, data[document_id], self._file.path)

    def list(self) -> list[FailedDocRecord]:
        """Return all records, most recently updated first."""
        data = self._file.load({"failed": {}}).get("failed", {})
        records = [
            _decode(FailedDocRecord, item, self._file.path)
            for item in data.values()
        ]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def delete(self, document_id: str) -> bool:
        with self._file.transaction({"failed": {}}) as data:
            return data.setdefault("failed", {}).pop(document_id, None) is not None

    def delete_many(self, document_ids: Sequence[str]) -> int:
        """Remove every listed row in one write; return how many existed."""
        if not document_ids:
            return 0
        with self._file.transaction({"failed": {}}) as data:
            rows = data.setdefault("failed", {})
            return sum(rows.pop(i, None) is not None for i in document_ids)


# ---------------------------------------------------------------------------
# Session history
# ---------------------------------------------------------------------------


class SessionHistoryStore:
    """Append-mostly history of sync sessions.

    Session ids are allocated from a counter kept in the same file, so they
    stay unique across restarts and after pruning.
    """

    def __init__(self, state_dir: Path) -> None:
        self._file = AtomicJsonFile(Path(state_dir) / HISTORY_FILE)

    @staticmethod
    def _empty() -> dict[str, Any]:
        return {"next_id": 1, "sessions": []}

    def _all(self) -> list[SessionRecord]:
        data = self._file.load(self._empty())
        return [
            _decode(SessionRecord, item, self._file.path)
            for item in data.get("sessions", [])
        ]

    def create(
        self,
        book_ids: Sequence[str],
        force: bool = False,
        resumed_from: int | None = None,
    ) -> SessionRecord:
        with self._file.transaction(self._empty()) as data:
            session_id = int(data.get("next_id", 1))
            record = SessionRecord(
                id=session_id,
                book_ids=list(book_ids),
                force=force,
                resumed_from=resumed_from,
            )
            data["next_id"] = session_id + 1
            data.setdefault("sessions", []).append(record.model_dump(mode="json"))
        logger.debug("Created session %d for books %s", session_id, book_ids)
        return record

    def update(self, record: SessionRecord) -> None:
        """Replace the stored row with the same id.

        Raises:
            RepositoryError: No row with ``record.id`` exists.
        """
        with self._file.transaction(self._empty()) as data:
            sessions = data.setdefault("sessions", [])
            for index, item in enumerate(sessions):
                if item.get("id") == record.id:
                    sessions[index] = record.model_dump(mode="json")
                    return
            raise RepositoryError(f"Unknown session {record.id}")

    def get(self, session_id: int) -> SessionRecord | None:
        for record in self._all():
            if record.id == session_id:
                return record
        return None

    def recent(self, limit: int = 50) -> list[SessionRecord]:
        """Return up to *limit* sessions, newest first."""
        records = sorted(self._all(), key=lambda r: r.id, reverse=True)
        return records[: max(limit, 0)]

    def prune(self, keep: int) -> int:
        """Drop the oldest finished sessions beyond the newest *keep*.

        Running sessions are never pruned.

        Returns:
            Number of rows removed.
        """
        with self._file.transaction(self._empty()) as data:
            sessions = data.setdefault("sessions", [])
            newest = sorted(sessions, key=lambda s: s.get("id", 0), reverse=True)
            kept_ids = {s.get("id") for s in newest[: max(keep, 0)]}
            remaining = [
                s
                for s in sessions
                if s.get("id") in kept_ids
                or s.get("status") == SessionStatus.RUNNING.value
            ]
            removed = len(sessions) - len(remaining)
            data["sessions"] = remaining
        if removed:
            logger.debug("Pruned %d old sessions", removed)
        return removed

    def mark_running_interrupted(self) -> list[SessionRecord]:
        """Finalize rows left ``running`` by a process that died.

        Returns:
            The updated records.
        """
        updated: list[SessionRecord] = []
        with self._file.transaction(self._empty()) as data:
            sessions = data.setdefault("sessions", [])
            for index, item in enumerate(sessions):
                record = _decode(SessionRecord, item, self._file.path)
                if record.status != SessionStatus.RUNNING:
                    continue
                record = record.model_copy(
                    update={
                        "status": SessionStatus.CANCELLED,
                        "completed_at": utc_now(),
                        "error_message": "interrupted",
                    }
                )
                sessions[index] = record.model_dump(mode="json")
                updated.append(record)
        return updated

    def last_successful_sync(self) -> datetime | None:
        times = [
            r.completed_at
            for r in self._all()
            if r.status == SessionStatus.SUCCESS and r.completed_at is not None
        ]
        return max(times) if times else None

    def totals(self) -> dict[str, int]:
        records = self._all()
        return {
            "total_syncs": len(records),
            "successful_syncs": sum(
                1 for r in records if r.status == SessionStatus.SUCCESS
            ),
            "failed_syncs": sum(
                1 for r in records if r.status == SessionStatus.FAILED
            ),
            "total_docs_synced": sum(r.synced_docs for r in records),
        }
