"""Failed-item ledger.

Keeps one ``FailedDocRecord`` per document whose sync attempt gave up, and
offers the user-initiated transitions out of ``failed``:

* ``retry``   -- failed -> pending; the next plan emits a fetch task.
* ``clear``   -- failed -> deleted + ignored; no plan touches it again.
* ``restore`` -- ignored -> new; undoes a ``clear``.

All three are idempotent: on a document that is not in the required state
they change nothing and return ``False``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .interfaces import DocumentRepository, FailedDocRepository
from .models import Document, FailedDocRecord, SyncStatus, utc_now

logger = logging.getLogger(__name__)


class FailedItemLedger:
    def __init__(
        self, documents: DocumentRepository, failed: FailedDocRepository
    ) -> None:
        self._documents = documents
        self._failed = failed

    def list(self) -> list[FailedDocRecord]:
        return self._failed.list()

    def get(self, document_id: str) -> FailedDocRecord | None:
        return self._failed.get(document_id)

    def record_failure(
        self, document: Document, error: str, attempts: int = 1
    ) -> FailedDocRecord:
        """Mark *document* failed and store (or refresh) its ledger row.

        Attempts accumulate across sessions until the record is resolved,
        retried or cleared.
        """
        previous = self._failed.get(document.id)
        record = FailedDocRecord(
            document_id=document.id,
            book_id=document.book_id,
            title=document.title,
            slug=document.slug,
            error=error,
            attempts=attempts + (previous.attempts if previous else 0),
            updated_at=utc_now(),
        )
        updated = self._documents.set_status(document.id, SyncStatus.FAILED)
        if updated is None:
            self._documents.upsert(
                document.model_copy(
                    update={
                        "sync_status": SyncStatus.FAILED,
                        "updated_at": utc_now(),
                    }
                )
            )
        self._failed.upsert(record)
        logger.warning(
            "Document %s (%r) failed after %d attempt(s): %s",
            document.id,
            document.title,
            attempts,
            error,
        )
        return record

    def resolve(self, document_ids: Sequence[str]) -> int:
        """Drop the ledger rows of documents that later synced; return the count."""
        return self._failed.delete_many(document_ids)

    def retry(self, document_id: str) -> bool:
        document = self._documents.get(document_id)
        if document is None or document.sync_status != SyncStatus.FAILED:
            return False
        self._documents.set_status(document_id, SyncStatus.PENDING)
        self._failed.delete(document_id)
        logger.info("Document %s queued for retry", document_id)
        return True

    def clear(self, document_id: str) -> bool:
        document = self._documents.get(document_id)
        if document is None or document.sync_status != SyncStatus.FAILED:
            return False
        self._documents.set_status(
            document_id, SyncStatus.DELETED, ignored=True
        )
        self._failed.delete(document_id)
        logger.info("Document %s cleared from the failure ledger", document_id)
        return True

    def restore(self, document_id: str) -> bool:
        document = self._documents.get(document_id)
        if document is None or not document.ignored:
            return False
        self._documents.set_status(
            document_id,
            SyncStatus.NEW,
            ignored=False,
            local_path=None,
            local_synced_at=None,
        )
        logger.info("Document %s restored for syncing", document_id)
        return True
