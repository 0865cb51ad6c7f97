"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync operations:

- ``format_sync_result`` -- post-session summary.
- ``format_plan_preview`` -- dry-run preview grouped by action.
- ``format_change_set`` -- pending changes per category.
- ``format_tree`` -- indented document hierarchy.
- ``result_to_json`` / ``plan_to_json`` -- structured dicts for MCP tool output.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .hierarchy import walk_tree
from .models import SyncStatus, TaskAction

if TYPE_CHECKING:
    from .models import ChangeSet, SyncPlan, SyncResult, SyncTask, TreeNode

_STATUS_MARKERS = {
    SyncStatus.SYNCED: " ",
    SyncStatus.NEW: "+",
    SyncStatus.MODIFIED: "~",
    SyncStatus.PENDING: "?",
    SyncStatus.FAILED: "!",
    SyncStatus.DELETED: "-",
}

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_result(result: SyncResult) -> str:
    """Format a finished session as human-readable text.

    Args:
        result: Summary returned by the session.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    header = "Sync session"
    if result.session_id is not None:
        header += f" #{result.session_id}"
    lines.append(f"{header}: {result.status.value}")
    lines.append(
        f"Processed {result.total_docs} documents: "
        f"{result.synced_docs} synced, {result.failed_docs} failed"
    )
    lines.append("")

    if result.plan_failures:
        lines.append("Books that could not be listed:")
        for failure in result.plan_failures:
            lines.append(f"  {failure.book_id}: {failure.error}")
        lines.append("")

    if result.errors:
        lines.append("Errors:")
        for error in result.errors:
            lines.append(f"  {error}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_plan_preview(plan: SyncPlan) -> str:
    """Format a plan grouped by action, without executing it."""
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Books: {', '.join(plan.book_ids) or '(none)'}")
    if plan.force:
        lines.append("Mode: force (all documents re-fetched)")
    lines.append("")

    groups: dict[TaskAction, list[SyncTask]] = defaultdict(list)
    for task in plan.tasks:
        groups[task.action].append(task)

    for action in (TaskAction.FETCH, TaskAction.MARK_DELETED):
        if action not in groups:
            continue
        label = action.value.upper().replace("_", " ")
        lines.append(f"[{label}]")
        for task in groups[action]:
            lines.append(
                f"  {task.title or task.document_id} ({task.reason.value})"
            )
        lines.append("")

    for failure in plan.failures:
        lines.append(f"[LISTING FAILED] {failure.book_id}: {failure.error}")
    if plan.failures:
        lines.append("")

    if not plan.tasks:
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_change_set(changes: ChangeSet) -> str:
    lines = [f"{changes.total} change(s) detected"]
    for label, documents in (
        ("New", changes.new),
        ("Modified", changes.modified),
        ("Deleted", changes.deleted),
        ("Failed", changes.failed),
    ):
        if documents:
            lines.append(f"{label}:")
            lines.extend(f"  {d.title or d.id}" for d in documents)
    for failure in changes.failures:
        lines.append(f"Listing failed for {failure.book_id}: {failure.error}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Hierarchy
# ------------------------------------------------------------------


def format_tree(roots: Sequence[TreeNode]) -> str:
    """Render a document tree with two-space indentation per level.

    Each line starts with a one-character status marker
    (``+`` new, ``~`` modified, ``!`` failed, ``-`` deleted).
    """
    lines = []
    for node, level in walk_tree(roots):
        marker = _STATUS_MARKERS.get(node.document.sync_status, " ")
        suffix = "/" if node.is_folder else ""
        lines.append(f"{marker} {'  ' * level}{node.title or node.id}{suffix}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def result_to_json(result: SyncResult) -> dict:
    """Convert a session result to a dict for MCP ``structuredContent``."""
    return result.model_dump(mode="json")


def plan_to_json(plan: SyncPlan) -> dict:
    """Convert a plan to a dict, omitting descriptors and observed documents."""
    return {
        "book_ids": plan.book_ids,
        "force": plan.force,
        "counts": {
            "total": len(plan.tasks),
            "fetch": len(plan.fetch_tasks),
            "mark_deleted": len(plan.delete_tasks),
        },
        "tasks": [
            {
                "document_id": t.document_id,
                "book_id": t.book_id,
                "action": t.action.value,
                "reason": t.reason.value,
                "title": t.title,
            }
            for t in plan.tasks
        ],
        "failures": [f.model_dump(mode="json") for f in plan.failures],
    }
