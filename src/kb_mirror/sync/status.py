"""Derive a document's sync status from local and remote metadata.

``derive_status`` is a pure function: the same ``(local, remote)`` pair
always yields the same status.  It is the only place the comparison rules
live; the planner calls it for every listed document, and the session only
ever records attempt outcomes (``synced`` / ``failed``).
"""

from __future__ import annotations

from datetime import datetime

from .models import Document, RemoteDescriptor, SyncStatus

_FETCH_ELIGIBLE = frozenset(
    {SyncStatus.NEW, SyncStatus.MODIFIED, SyncStatus.PENDING}
)


def is_remote_newer(
    remote_updated_at: datetime | None,
    local_synced_at: datetime | None,
) -> bool:
    """Return ``True`` if the remote changed after the last local write.

    A document that was never written locally is always behind.  A remote
    entry without a timestamp is never considered newer.
    """
    if local_synced_at is None:
        return True
    if remote_updated_at is None:
        return False
    return remote_updated_at > local_synced_at


def _fingerprint_changed(local: Document, remote: RemoteDescriptor) -> bool:
    if local.content_hash is None or remote.content_hash is None:
        return False
    return local.content_hash != remote.content_hash


def derive_status(
    local: Document | None, remote: RemoteDescriptor | None
) -> SyncStatus:
    """Compare the local record against the remote descriptor.

    Rules, first match wins:

    1. No remote descriptor (no longer listed) -> ``deleted``.
    2. No local record -> ``new``.
    3. Cleared by the user (``ignored``) -> ``deleted``.
    4. Last attempt failed and was not retried or cleared -> ``failed``.
    5. Queued for retry (``pending``), or observed but never written
       (``new``) -> unchanged.
    6. Never written, cache path missing, remote timestamp newer, or the
       content fingerprint changed -> ``modified``.
    7. Otherwise -> ``synced``.
    """
    if remote is None:
        return SyncStatus.DELETED
    if local is None:
        return SyncStatus.NEW
    if local.ignored:
        return SyncStatus.DELETED
    if local.sync_status == SyncStatus.FAILED:
        return SyncStatus.FAILED
    if local.sync_status == SyncStatus.PENDING:
        return SyncStatus.PENDING
    if local.sync_status == SyncStatus.NEW and local.local_synced_at is None:
        return SyncStatus.NEW
    if (
        not local.local_path
        or is_remote_newer(remote.updated_at, local.local_synced_at)
        or _fingerprint_changed(local, remote)
    ):
        return SyncStatus.MODIFIED
    return SyncStatus.SYNCED


def is_fetch_eligible(status: SyncStatus, retry_failed: bool = False) -> bool:
    """Return ``True`` if a document in *status* needs a fetch task."""
    if status in _FETCH_ELIGIBLE:
        return True
    return retry_failed and status == SyncStatus.FAILED
