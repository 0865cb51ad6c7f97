"""Pydantic models for the knowledge-base sync engine.

Defines the core data contracts used across all sync modules:

- ``SyncStatus``: Per-document reconciliation state.
- ``Document`` / ``RemoteDescriptor``: Local record and remote listing entry.
- ``TreeNode``: Ephemeral hierarchy node built from documents.
- ``SyncTask`` / ``SyncPlan`` / ``ChangeSet``: Planner output.
- ``SessionRecord`` / ``InterruptedSessionCheckpoint``: Session bookkeeping.
- ``FailedDocRecord``: Ledger entry for a document that failed to sync.
- ``SyncProgress`` / ``SyncResult`` / ``EngineStatus``: Reporting surfaces.

All persisted models are frozen (immutable); use ``model_copy(update=...)``
to derive a changed copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, model_validator

FOLDER_DOC_TYPE = "TITLE"


def _as_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Timestamp = Annotated[datetime, AfterValidator(_as_utc)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    """Reconciliation state of a document relative to its remote counterpart."""

    NEW = "new"
    MODIFIED = "modified"
    SYNCED = "synced"
    FAILED = "failed"
    DELETED = "deleted"
    PENDING = "pending"


class TaskAction(str, Enum):
    """Operations the planner can ask a session to perform."""

    FETCH = "fetch"
    SKIP = "skip"
    MARK_DELETED = "mark_deleted"


class SessionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class Document(BaseModel):
    """A node (folder or leaf content) of a knowledge base.

    Attributes:
        id: Stable local identifier.
        book_id: Knowledge base the document belongs to.
        uuid: Remote-stable identifier, when the remote provides one.
        parent_uuid: Reference to the parent's ``uuid`` (or ``id``).
        sort_order: Position among siblings, ascending.
        doc_type: ``TITLE`` for folder-like containers, else a content type.
        depth: Stored depth hint; the real depth comes from the tree.
        sync_status: Current reconciliation state.
        local_path: Cache path, only meaningful while ``synced``.
        local_synced_at: Time of the last successful write.
        remote_updated_at: Remote modification time at last observation.
        content_hash: Remote content fingerprint at last sync.
        ignored: Set when the user cleared a failure; excluded from plans.
        updated_at: Time the record itself was last modified.
    """

    id: str
    book_id: str
    uuid: str | None = None
    parent_uuid: str | None = None
    sort_order: int = 0
    doc_type: str = "DOC"
    title: str = ""
    slug: str = ""
    depth: int = 0
    sync_status: SyncStatus = SyncStatus.NEW
    local_path: str | None = None
    local_synced_at: Timestamp | None = None
    remote_updated_at: Timestamp | None = None
    content_hash: str | None = None
    ignored: bool = False
    updated_at: Timestamp | None = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _synced_requires_path(self) -> Document:
        if self.sync_status == SyncStatus.SYNCED and not self.local_path:
            raise ValueError(
                f"Document {self.id} is synced but has no local_path"
            )
        return self

    @property
    def is_folder(self) -> bool:
        return self.doc_type == FOLDER_DOC_TYPE


class RemoteDescriptor(BaseModel):
    """One entry of a remote book listing."""

    id: str
    book_id: str
    uuid: str | None = None
    parent_uuid: str | None = None
    sort_order: int = 0
    doc_type: str = "DOC"
    title: str = ""
    slug: str = ""
    depth: int = 0
    updated_at: Timestamp | None = None
    content_hash: str | None = None

    model_config = {"frozen": True}

    def to_document(
        self, local: Document | None, status: SyncStatus
    ) -> Document:
        """Merge remote metadata into the local record (or a new one).

        Sync bookkeeping (``local_path``, ``local_synced_at``,
        ``content_hash``, ``ignored``) is kept from *local*.  A path kept on
        a non-synced document is stale and ignored by readers.
        """
        return Document(
            id=self.id,
            book_id=self.book_id,
            uuid=self.uuid or (local.uuid if local else None),
            parent_uuid=self.parent_uuid,
            sort_order=self.sort_order,
            doc_type=self.doc_type,
            title=self.title,
            slug=self.slug,
            depth=self.depth,
            sync_status=status,
            local_path=local.local_path if local else None,
            local_synced_at=local.local_synced_at if local else None,
            remote_updated_at=self.updated_at
            or (local.remote_updated_at if local else None),
            content_hash=local.content_hash if local else None,
            ignored=local.ignored if local else False,
            updated_at=utc_now(),
        )


@dataclass
class TreeNode:
    """A document placed in the hierarchy.

    Built fresh from the current document set on every render and owned by
    the caller; never persisted.
    """

    document: Document
    children: list[TreeNode] = field(default_factory=list)
    level: int = 0

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def title(self) -> str:
        return self.document.title

    @property
    def is_folder(self) -> bool:
        return self.document.is_folder or bool(self.children)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.document.id,
            "uuid": self.document.uuid,
            "title": self.document.title,
            "doc_type": self.document.doc_type,
            "sync_status": self.document.sync_status.value,
            "local_path": self.document.local_path,
            "level": self.level,
            "children": [child.to_dict() for child in self.children],
        }


class BookInfo(BaseModel):
    """A knowledge base as listed by the remote."""

    id: str
    slug: str = ""
    name: str = ""
    user_login: str = ""
    doc_count: int = 0

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class SyncTask(BaseModel):
    """A unit of work for a session.

    Attributes:
        document_id: Target document.
        book_id: Book of the target document.
        action: What to do with it.
        reason: Status that made the planner emit the task.
        title: Display title for progress reporting.
        descriptor: Remote metadata needed to fetch content.
    """

    document_id: str
    book_id: str
    action: TaskAction
    reason: SyncStatus
    title: str = ""
    descriptor: RemoteDescriptor | None = None

    model_config = {"frozen": True}


class PlanFailure(BaseModel):
    """A book whose remote listing could not be fetched."""

    book_id: str
    error: str
    error_type: str = "PlanningError"

    model_config = {"frozen": True}


class SyncPlan(BaseModel):
    """Ordered tasks needed to converge the local cache with the remote."""

    book_ids: list[str]
    force: bool = False
    tasks: list[SyncTask] = []
    observed: list[Document] = []
    failures: list[PlanFailure] = []
    created_at: Timestamp = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @property
    def fetch_tasks(self) -> list[SyncTask]:
        return [t for t in self.tasks if t.action == TaskAction.FETCH]

    @property
    def delete_tasks(self) -> list[SyncTask]:
        return [
            t for t in self.tasks if t.action == TaskAction.MARK_DELETED
        ]

    @property
    def document_ids(self) -> list[str]:
        return [t.document_id for t in self.tasks]

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)


class ChangeSet(BaseModel):
    """Documents grouped by the change the planner detected."""

    new: list[Document] = []
    modified: list[Document] = []
    deleted: list[Document] = []
    failed: list[Document] = []
    failures: list[PlanFailure] = []

    model_config = {"frozen": True}

    @property
    def total(self) -> int:
        return (
            len(self.new)
            + len(self.modified)
            + len(self.deleted)
            + len(self.failed)
        )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    """One run of the engine, as kept in the session history."""

    id: int
    book_ids: list[str] = []
    started_at: Timestamp = Field(default_factory=utc_now)
    completed_at: Timestamp | None = None
    status: SessionStatus = SessionStatus.RUNNING
    total_docs: int = 0
    synced_docs: int = 0
    failed_docs: int = 0
    error_message: str | None = None
    force: bool = False
    resumed_from: int | None = None

    model_config = {"frozen": True}

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None


class InterruptedSessionCheckpoint(BaseModel):
    """Remaining work of a session that stopped before finishing."""

    session_id: int
    book_ids: list[str]
    force: bool = False
    remaining_ids: list[str] = []
    completed_ids: list[str] = []
    total_docs: int = 0
    synced_docs: int = 0
    failed_docs: int = 0
    saved_at: Timestamp = Field(default_factory=utc_now)

    model_config = {"frozen": True}


class FailedDocRecord(BaseModel):
    """A document whose sync attempt exhausted its retries."""

    document_id: str
    book_id: str
    title: str = ""
    slug: str = ""
    error: str = ""
    attempts: int = 1
    updated_at: Timestamp = Field(default_factory=utc_now)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class SyncProgress(BaseModel):
    """Progress of the running session after the latest completed task."""

    session_id: int
    current: int
    total: int
    current_doc: str = ""
    stage: str = "downloading"

    model_config = {"frozen": True}


class SyncResult(BaseModel):
    """Summary returned when a session ends."""

    session_id: int | None = None
    success: bool
    status: SessionStatus
    total_docs: int = 0
    synced_docs: int = 0
    failed_docs: int = 0
    errors: list[str] = []
    plan_failures: list[PlanFailure] = []

    model_config = {"frozen": True}


class EngineStatus(BaseModel):
    """Whether a session is running, and how far it got."""

    is_running: bool
    session_id: int | None = None
    book_ids: list[str] = []
    progress: SyncProgress | None = None

    model_config = {"frozen": True}


class SyncStatistics(BaseModel):
    """Aggregate numbers for the statistics panel."""

    total_documents: int = 0
    synced_documents: int = 0
    failed_documents: int = 0
    pending_documents: int = 0
    new_documents: int = 0
    modified_documents: int = 0
    deleted_documents: int = 0
    total_books: int = 0
    total_storage_bytes: int = 0
    last_sync_time: Timestamp | None = None
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    total_docs_synced: int = 0

    model_config = {"frozen": True}
