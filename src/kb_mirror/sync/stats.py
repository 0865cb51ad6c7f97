"""Read-only statistics over documents, session history and the cache."""

from __future__ import annotations

from .cache import LocalCache
from .interfaces import DocumentRepository
from .models import SyncStatistics, SyncStatus
from .repository import SessionHistoryStore


def compute_statistics(
    documents: DocumentRepository,
    history: SessionHistoryStore,
    cache: LocalCache,
) -> SyncStatistics:
    """Aggregate the numbers shown on the statistics panel.

    Reads may race with a running session; the result is a best-effort
    snapshot.
    """
    counts = documents.count_by_status()
    totals = history.totals()
    return SyncStatistics(
        total_documents=sum(counts.values()),
        synced_documents=counts.get(SyncStatus.SYNCED, 0),
        failed_documents=counts.get(SyncStatus.FAILED, 0),
        pending_documents=counts.get(SyncStatus.PENDING, 0),
        new_documents=counts.get(SyncStatus.NEW, 0),
        modified_documents=counts.get(SyncStatus.MODIFIED, 0),
        deleted_documents=counts.get(SyncStatus.DELETED, 0),
        total_books=len(documents.book_ids()),
        total_storage_bytes=cache.size_bytes(),
        last_sync_time=history.last_successful_sync(),
        **totals,
    )
