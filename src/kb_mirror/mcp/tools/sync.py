"""MCP tool handlers for the knowledge-base mirror.

Defines the ``kb_*`` tools:

- ``kb_sync_start`` / ``kb_sync_cancel`` / ``kb_sync_status`` -- run,
  stop and follow a sync session (with optional dry-run).
- ``kb_sync_changes`` / ``kb_sync_history`` -- pending changes and past
  sessions.
- ``kb_failed_list`` / ``kb_failed_retry`` / ``kb_failed_clear`` /
  ``kb_failed_restore`` -- the failed-document ledger.
- ``kb_interrupted_get`` / ``kb_interrupted_clear`` /
  ``kb_interrupted_resume`` -- checkpoints of interrupted sessions.
- ``kb_tree`` / ``kb_stats`` -- hierarchy and statistics.
"""

from __future__ import annotations

import logging
from typing import Any

import mcp.types as types

from ...core.async_utils import run_sync
from ...sync.reporter import (
    format_change_set,
    format_plan_preview,
    format_sync_result,
    format_tree,
    plan_to_json,
    result_to_json,
)
from ...sync.service import SyncService
from ...validators import (
    validate_identifier,
    validate_identifier_list,
    validate_limit,
)
from .errors import build_error_response, format_timestamp
from .registry import ToolSpec

logger = logging.getLogger(__name__)

_BOOK_IDS_SCHEMA = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Knowledge base ids. Omit to use every knowledge base of the account.",
}
_DOCUMENT_ID_SCHEMA = {
    "type": "string",
    "description": "Document id (see kb_failed_list or kb_tree)",
}
_WAIT_SCHEMA = {
    "type": "boolean",
    "default": False,
    "description": "Block until the session finishes and return its summary",
}


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


SYNC_TOOLS: list[types.Tool] = [
    types.Tool(
        name="kb_sync_start",
        description=(
            "Mirror knowledge-base documents into the local Markdown cache. "
            "Only new, modified and pending documents are fetched unless "
            "force is set. Runs in the background unless wait is set; "
            "use dry_run to preview the plan."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "book_ids": _BOOK_IDS_SCHEMA,
                "document_ids": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Restrict the session to these documents",
                },
                "force": {
                    "type": "boolean",
                    "default": False,
                    "description": "Re-fetch every document regardless of status",
                },
                "dry_run": {
                    "type": "boolean",
                    "default": False,
                    "description": "Preview the plan without executing it",
                },
                "wait": _WAIT_SCHEMA,
            },
            "required": [],
        },
    ),
    types.Tool(
        name="kb_sync_cancel",
        description="Request cancellation of the running sync session. In-flight downloads finish first.",
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="kb_sync_status",
        description="Show whether a sync session is running and its progress.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="kb_sync_changes",
        description=(
            "List documents that are new, modified, deleted or failed "
            "compared to the local mirror, without syncing."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {"book_ids": _BOOK_IDS_SCHEMA},
            "required": [],
        },
    ),
    types.Tool(
        name="kb_sync_history",
        description="List past sync sessions, newest first.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "default": 20,
                    "description": "Maximum number of sessions (1-500)",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="kb_failed_list",
        description="List documents whose last sync attempt failed, with the error and attempt count.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="kb_failed_retry",
        description="Queue a failed document for the next sync session.",
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {"document_id": _DOCUMENT_ID_SCHEMA},
            "required": ["document_id"],
        },
    ),
    types.Tool(
        name="kb_failed_clear",
        description=(
            "Give up on a failed document: it is marked deleted and ignored "
            "by future syncs until restored."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {"document_id": _DOCUMENT_ID_SCHEMA},
            "required": ["document_id"],
        },
    ),
    types.Tool(
        name="kb_failed_restore",
        description="Restore a cleared document so the next sync fetches it again.",
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {"document_id": _DOCUMENT_ID_SCHEMA},
            "required": ["document_id"],
        },
    ),
    types.Tool(
        name="kb_interrupted_get",
        description="Show the most recent interrupted sync session that can be resumed.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="kb_interrupted_clear",
        description="Discard the checkpoint of an interrupted session.",
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {
                    "type": "integer",
                    "description": "Session id from kb_interrupted_get",
                },
            },
            "required": ["session_id"],
        },
    ),
    types.Tool(
        name="kb_interrupted_resume",
        description=(
            "Resume an interrupted session: its remaining documents are "
            "compared against the remote again and synced."
        ),
        annotations=types.ToolAnnotations(
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {
                    "type": "integer",
                    "description": "Session to resume. Defaults to the most recent one.",
                },
                "wait": _WAIT_SCHEMA,
            },
            "required": [],
        },
    ),
    types.Tool(
        name="kb_tree",
        description="Show the mirrored document hierarchy with sync status markers.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "book_id": {
                    "type": "string",
                    "description": "Limit the tree to one knowledge base",
                },
                "include_deleted": {
                    "type": "boolean",
                    "default": False,
                    "description": "Include documents removed remotely",
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="kb_stats",
        description="Show document counts per status, cache size and session totals.",
        annotations=types.ToolAnnotations(
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
]


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _optional_ids(args: dict[str, Any], key: str) -> list[str] | None:
    values = args.get(key)
    if values is None:
        return None
    ok, error = validate_identifier_list(values, key)
    if not ok:
        raise ValueError(error)
    return [str(v) for v in values]


def _required_id(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    ok, error = validate_identifier(value, key)
    if not ok:
        raise ValueError(error)
    return str(value)


def _session_id(args: dict[str, Any], required: bool) -> int | None:
    value = args.get("session_id")
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError("session_id must be a positive integer")
    return value


def _text_result(
    text: str, structured: dict[str, Any] | None = None
) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def _handle_sync_start(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_sync_start`` tool."""
    book_ids = _optional_ids(args, "book_ids")
    document_ids = _optional_ids(args, "document_ids")
    force = bool(args.get("force", False))

    if args.get("dry_run", False):
        plan = await service.preview_sync(book_ids, force, document_ids)
        return _text_result(format_plan_preview(plan), plan_to_json(plan))

    if args.get("wait", False):
        result = await service.start_sync(book_ids, force, document_ids)
        return _text_result(format_sync_result(result), result_to_json(result))

    handle = await service.start_sync_background(book_ids, force, document_ids)
    plan = handle.session.plan
    text = (
        f"Sync started for {len(plan.book_ids)} knowledge base(s): "
        f"{len(plan.tasks)} task(s) queued.\n"
        "Use kb_sync_status to follow progress."
    )
    return _text_result(
        text,
        {
            "started": True,
            "book_ids": plan.book_ids,
            "total_tasks": len(plan.tasks),
        },
    )


async def _handle_sync_cancel(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_sync_cancel`` tool."""
    requested = service.cancel_sync()
    text = (
        "Cancellation requested; in-flight documents will finish first."
        if requested
        else "No sync session is running."
    )
    return _text_result(text, {"cancel_requested": requested})


async def _handle_sync_status(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_sync_status`` tool."""
    status = service.get_status()
    if not status.is_running:
        text = "No sync session is running."
    else:
        label = "Sync session"
        if status.session_id is not None:
            label += f" #{status.session_id}"
        lines = [f"{label} running for: {', '.join(status.book_ids)}"]
        progress = status.progress
        if progress is not None:
            lines.append(
                f"  Progress: {progress.current}/{progress.total} ({progress.stage})"
            )
            if progress.current_doc:
                lines.append(f"  Current:  {progress.current_doc}")
        text = "\n".join(lines)
    return _text_result(text, status.model_dump(mode="json"))


async def _handle_sync_changes(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_sync_changes`` tool."""
    changes = await service.get_changes(_optional_ids(args, "book_ids"))
    structured = {
        "total": changes.total,
        "new": [d.id for d in changes.new],
        "modified": [d.id for d in changes.modified],
        "deleted": [d.id for d in changes.deleted],
        "failed": [d.id for d in changes.failed],
        "failures": [f.model_dump(mode="json") for f in changes.failures],
    }
    return _text_result(format_change_set(changes), structured)


async def _handle_sync_history(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_sync_history`` tool."""
    limit = args.get("limit", 20)
    ok, error = validate_limit(limit)
    if not ok:
        raise ValueError(error)

    records = await run_sync(service.get_history, limit)
    if not records:
        return _text_result("No sync sessions yet.", {"sessions": []})

    lines = [f"Last {len(records)} sync session(s):"]
    for record in records:
        line = (
            f"  #{record.id} {format_timestamp(record.started_at)} "
            f"{record.status.value}: {record.synced_docs}/{record.total_docs} synced"
        )
        if record.failed_docs:
            line += f", {record.failed_docs} failed"
        if record.resumed_from is not None:
            line += f" (resumed #{record.resumed_from})"
        lines.append(line)
        if record.error_message:
            lines.append(f"      {record.error_message}")
    return _text_result(
        "\n".join(lines),
        {"sessions": [r.model_dump(mode="json") for r in records]},
    )


# ---------------------------------------------------------------------------
# Failed documents
# ---------------------------------------------------------------------------


async def _handle_failed_list(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_failed_list`` tool."""
    records = await run_sync(service.get_failed_docs)
    if not records:
        return _text_result("No failed documents.", {"failed": []})

    lines = [f"{len(records)} failed document(s):"]
    for record in records:
        lines.append(
            f"  {record.document_id} [{record.book_id}] {record.title or record.slug}"
            f" - {record.attempts} attempt(s), last {format_timestamp(record.updated_at)}"
        )
        lines.append(f"      {record.error}")
    return _text_result(
        "\n".join(lines),
        {"failed": [r.model_dump(mode="json") for r in records]},
    )


async def _handle_failed_retry(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_failed_retry`` tool."""
    document_id = _required_id(args, "document_id")
    if not await service.retry_failed_doc(document_id):
        return build_error_response(
            "not_found",
            f"Document {document_id} is not in the failed state.",
            "Use kb_failed_list to see failed documents.",
        )
    return _text_result(
        f"Document {document_id} queued; it will be fetched by the next sync.",
        {"document_id": document_id, "status": "pending"},
    )


async def _handle_failed_clear(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_failed_clear`` tool."""
    document_id = _required_id(args, "document_id")
    if not await service.clear_failed_doc(document_id):
        return build_error_response(
            "not_found",
            f"Document {document_id} is not in the failed state.",
            "Use kb_failed_list to see failed documents.",
        )
    return _text_result(
        f"Document {document_id} cleared; future syncs will skip it.",
        {"document_id": document_id, "status": "deleted", "ignored": True},
    )


async def _handle_failed_restore(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_failed_restore`` tool."""
    document_id = _required_id(args, "document_id")
    if not await service.restore_doc(document_id):
        return build_error_response(
            "not_found",
            f"Document {document_id} was not cleared.",
            "Only documents removed with kb_failed_clear can be restored.",
        )
    return _text_result(
        f"Document {document_id} restored; the next sync will fetch it.",
        {"document_id": document_id, "status": "new", "ignored": False},
    )


# ---------------------------------------------------------------------------
# Interrupted sessions
# ---------------------------------------------------------------------------


async def _handle_interrupted_get(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_interrupted_get`` tool."""
    checkpoint = await run_sync(service.get_interrupted_session)
    if checkpoint is None:
        return _text_result("No interrupted session.", {"checkpoint": None})

    text = "\n".join(
        [
            f"Interrupted session #{checkpoint.session_id} "
            f"(saved {format_timestamp(checkpoint.saved_at)})",
            f"  Knowledge bases: {', '.join(checkpoint.book_ids)}",
            f"  Completed: {len(checkpoint.completed_ids)}/{checkpoint.total_docs}",
            f"  Remaining: {len(checkpoint.remaining_ids)}",
            "Use kb_interrupted_resume to continue it.",
        ]
    )
    return _text_result(text, {"checkpoint": checkpoint.model_dump(mode="json")})


async def _handle_interrupted_clear(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_interrupted_clear`` tool."""
    session_id = _session_id(args, required=True)
    if not await run_sync(service.clear_interrupted_session, session_id):
        return build_error_response(
            "not_found",
            f"No checkpoint for session {session_id}.",
            "Use kb_interrupted_get to check for an interrupted session.",
        )
    return _text_result(
        f"Checkpoint of session {session_id} discarded.",
        {"session_id": session_id, "cleared": True},
    )


async def _handle_interrupted_resume(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_interrupted_resume`` tool."""
    session_id = _session_id(args, required=False)

    if args.get("wait", False):
        result = await service.resume_interrupted_session(session_id)
        return _text_result(format_sync_result(result), result_to_json(result))

    handle = await service.resume_interrupted_session_background(session_id)
    plan = handle.session.plan
    return _text_result(
        f"Resumed sync: {len(plan.tasks)} task(s) queued.\n"
        "Use kb_sync_status to follow progress.",
        {
            "started": True,
            "book_ids": plan.book_ids,
            "total_tasks": len(plan.tasks),
        },
    )


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


async def _handle_tree(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_tree`` tool."""
    book_id = args.get("book_id")
    if book_id is not None:
        book_id = _required_id(args, "book_id")
    include_deleted = bool(args.get("include_deleted", False))

    roots = await run_sync(service.get_tree, book_id, include_deleted)
    if not roots:
        return _text_result("No documents mirrored yet.", {"tree": []})

    text = format_tree(roots)
    cycles = await run_sync(service.get_parent_cycles, book_id, include_deleted)
    if cycles:
        text += "\n\nParent cycles (shown as roots):"
        for cycle in cycles:
            text += f"\n  {' -> '.join(cycle)}"
    return _text_result(
        text,
        {"tree": [root.to_dict() for root in roots], "cycles": cycles},
    )


async def _handle_stats(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    """Handle the ``kb_stats`` tool."""
    stats = await run_sync(service.get_statistics)
    text = "\n".join(
        [
            f"Documents: {stats.total_documents} in {stats.total_books} knowledge base(s)",
            f"  synced {stats.synced_documents}, new {stats.new_documents}, "
            f"modified {stats.modified_documents}, pending {stats.pending_documents}, "
            f"failed {stats.failed_documents}, deleted {stats.deleted_documents}",
            f"Cache size: {stats.total_storage_bytes} bytes",
            f"Last successful sync: {format_timestamp(stats.last_sync_time)}",
            f"Sessions: {stats.total_syncs} "
            f"({stats.successful_syncs} successful, {stats.failed_syncs} failed), "
            f"{stats.total_docs_synced} documents synced",
        ]
    )
    return _text_result(text, stats.model_dump(mode="json"))


# ToolSpec list for registry-based dispatch
SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(tool=SYNC_TOOLS[0], handler=_handle_sync_start, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[1], handler=_handle_sync_cancel, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[2], handler=_handle_sync_status),
    ToolSpec(tool=SYNC_TOOLS[3], handler=_handle_sync_changes),
    ToolSpec(tool=SYNC_TOOLS[4], handler=_handle_sync_history),
    ToolSpec(tool=SYNC_TOOLS[5], handler=_handle_failed_list),
    ToolSpec(tool=SYNC_TOOLS[6], handler=_handle_failed_retry, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[7], handler=_handle_failed_clear, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[8], handler=_handle_failed_restore, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[9], handler=_handle_interrupted_get),
    ToolSpec(tool=SYNC_TOOLS[10], handler=_handle_interrupted_clear, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[11], handler=_handle_interrupted_resume, read_only=False),
    ToolSpec(tool=SYNC_TOOLS[12], handler=_handle_tree),
    ToolSpec(tool=SYNC_TOOLS[13], handler=_handle_stats),
]
