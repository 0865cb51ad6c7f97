"""Error results for tool handlers and small display helpers.

Every error result carries a category and a next step an agent can take
on its own: ``Error (<type>): <message>`` followed by ``Action: ...``.
"""

from datetime import datetime, timezone
from typing import Any

import mcp.types as types

from ...sync.errors import (
    AuthExpiredError,
    CheckpointNotFoundError,
    FetchError,
    LocalWriteError,
    PlanningError,
    RepositoryError,
    SessionActiveError,
    SyncError,
)


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """
    Return an ``isError`` result with a single text block.

    >>> build_error_response("not_found", "No interrupted session", "Start a new sync.")
    CallToolResult(content=[TextContent(...)], isError=True)
    """
    text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=True,
    )


def format_timestamp(timestamp: Any) -> str:
    """``YYYY-MM-DD HH:MM`` for datetimes and UTC epoch seconds, ``-`` for None."""
    match timestamp:
        case None:
            return "-"
        case datetime() as dt:
            return dt.strftime("%Y-%m-%d %H:%M")
        case int() | float() as ts:
            return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
        case _:
            return str(timestamp)


# Checked in order; subclasses precede their bases
_SYNC_ERRORS: tuple[tuple[type[SyncError], str, str], ...] = (
    (
        SessionActiveError,
        "session_active",
        "Use kb_sync_status to follow the running session, or kb_sync_cancel to stop it.",
    ),
    (
        CheckpointNotFoundError,
        "not_found",
        "Use kb_interrupted_get to check for an interrupted session.",
    ),
    (
        AuthExpiredError,
        "auth_expired",
        "Log in to the knowledge base again, update KB_MIRROR_COOKIE and restart the server.",
    ),
    (
        RepositoryError,
        "repository_error",
        "Check that the state directory is writable and its JSON files are intact.",
    ),
    (
        LocalWriteError,
        "write_error",
        "Check free disk space and permissions of the cache root.",
    ),
    (
        PlanningError,
        "planning_error",
        "Verify the knowledge base id with kb_sync_changes, then retry.",
    ),
    (
        FetchError,
        "remote_error",
        "Check connectivity to the knowledge-base service and retry later.",
    ),
)


def translate_sync_error(error: SyncError) -> types.CallToolResult:
    """Map a sync engine exception onto its category and next step."""
    for cls, error_type, action in _SYNC_ERRORS:
        if isinstance(error, cls):
            return build_error_response(error_type, str(error), action)
    return build_error_response("sync_error", str(error), "Check the server log or retry later.")
