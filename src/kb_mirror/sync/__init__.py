"""Knowledge-base mirror sync engine.

Public API for mirroring the documents of remote knowledge bases into a
local Markdown cache.

Architecture
------------
Sync is **one-way and plan-based**: the planner lists each book remotely,
derives a status for every document by comparing the remote descriptor
with the stored record, and emits a task list.  A session executes the
tasks with a bounded worker pool, records failures in the ledger and
checkpoints its progress so an interrupted run can be resumed.

Modules:

- ``service``    -- ``SyncService``: command surface used by the MCP tools.
- ``planner``    -- ``ReconciliationPlanner``: listings to ``SyncPlan``.
- ``status``     -- Status derivation rules.
- ``session``    -- ``SyncSession`` execution and the single-session
  ``SessionRegistry``.
- ``hierarchy``  -- Parent/child tree reconstruction.
- ``ledger``     -- ``FailedItemLedger``: retry, clear and restore.
- ``repository`` -- JSON-backed document, failure and history stores.
- ``state``      -- Atomic JSON files and interrupted-session checkpoints.
- ``cache``      -- ``LocalCache``: on-disk Markdown copies.
- ``events``     -- Non-blocking progress event stream.
- ``stats``      -- Aggregate statistics.
- ``reporter``   -- Human-readable and JSON formatting.

Usage example
-------------
::

    from pathlib import Path
    from kb_mirror.core.client import ClientContentFetcher, RemoteClient
    from kb_mirror.sync import LocalCache, SyncService, format_sync_result

    client = RemoteClient(config)
    service = SyncService(
        client,
        ClientContentFetcher(client),
        LocalCache(config.cache_path),
        config.state_path,
    )

    # Preview first
    plan = await service.preview_sync(["42"])

    # Execute the sync
    result = await service.start_sync(["42"])
    print(format_sync_result(result))
"""

from .cache import LocalCache
from .errors import (
    AuthExpiredError,
    CheckpointNotFoundError,
    FetchError,
    LocalWriteError,
    PlanningError,
    RepositoryError,
    SessionActiveError,
    SyncError,
    TransientFetchError,
)
from .hierarchy import build_tree, find_parent_cycles, flatten_tree
from .models import (
    ChangeSet,
    Document,
    RemoteDescriptor,
    SessionStatus,
    SyncPlan,
    SyncResult,
    SyncStatus,
    SyncTask,
    TaskAction,
    TreeNode,
)
from .planner import ReconciliationPlanner
from .reporter import (
    format_change_set,
    format_plan_preview,
    format_sync_result,
    format_tree,
    plan_to_json,
    result_to_json,
)
from .service import SyncService
from .session import SessionOptions
from .status import derive_status

__all__ = [
    "AuthExpiredError",
    "ChangeSet",
    "CheckpointNotFoundError",
    "Document",
    "FetchError",
    "LocalCache",
    "LocalWriteError",
    "PlanningError",
    "ReconciliationPlanner",
    "RemoteDescriptor",
    "RepositoryError",
    "SessionActiveError",
    "SessionOptions",
    "SessionStatus",
    "SyncError",
    "SyncPlan",
    "SyncResult",
    "SyncService",
    "SyncStatus",
    "SyncTask",
    "TaskAction",
    "TreeNode",
    "build_tree",
    "derive_status",
    "find_parent_cycles",
    "flatten_tree",
    "format_change_set",
    "format_plan_preview",
    "format_sync_result",
    "format_tree",
    "plan_to_json",
    "result_to_json",
]
