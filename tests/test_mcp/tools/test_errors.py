"""Tests for mcp/tools/errors.py: error response builders and utilities.

Covers:
- build_error_response() structure and format
- translate_sync_error() domain-specific error mapping
- format_timestamp() for various input types
"""

from datetime import datetime, timezone

import mcp.types as types
import pytest

from kb_mirror.mcp.tools.errors import (
    build_error_response,
    format_timestamp,
    translate_sync_error,
)
from kb_mirror.sync.errors import (
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


def _get_error_text(result: types.CallToolResult) -> str:
    """Extract text from first content item with type narrowing for Pyright."""
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


# ---------------------------------------------------------------------------
# build_error_response tests
# ---------------------------------------------------------------------------


class TestBuildErrorResponse:
    """Tests for build_error_response()."""

    def test_is_error_flag(self):
        result = build_error_response("not_found", "Not found", "Try again")
        assert isinstance(result, types.CallToolResult)
        assert result.isError is True

    def test_single_text_content(self):
        result = build_error_response("not_found", "Not found", "Try again")
        assert len(result.content) == 1
        assert result.content[0].type == "text"

    def test_format(self):
        result = build_error_response(
            "session_active", "Session 2 running", "Wait for it."
        )
        assert _get_error_text(result) == (
            "Error (session_active): Session 2 running\n\nAction: Wait for it."
        )


# ---------------------------------------------------------------------------
# translate_sync_error tests
# ---------------------------------------------------------------------------


class TestTranslateSyncError:
    """Tests for translate_sync_error()."""

    @pytest.mark.parametrize(
        ("error", "error_type"),
        [
            (SessionActiveError("busy"), "session_active"),
            (CheckpointNotFoundError("No interrupted session"), "not_found"),
            (AuthExpiredError("expired"), "auth_expired"),
            (RepositoryError("corrupt"), "repository_error"),
            (LocalWriteError("disk full"), "write_error"),
            (PlanningError("b1", "timeout"), "planning_error"),
            (FetchError("404", status_code=404), "remote_error"),
            (TransientFetchError("503"), "remote_error"),
            (SyncError("other"), "sync_error"),
        ],
    )
    def test_error_types(self, error, error_type):
        result = translate_sync_error(error)
        assert result.isError is True
        assert _get_error_text(result).startswith(f"Error ({error_type}): ")

    def test_message_included(self):
        text = _get_error_text(translate_sync_error(PlanningError("b1", "timeout")))
        assert "Failed to list book b1: timeout" in text

    def test_corrective_action_present(self):
        text = _get_error_text(translate_sync_error(AuthExpiredError("expired")))
        assert "Action:" in text
        assert "KB_MIRROR_COOKIE" in text


# ---------------------------------------------------------------------------
# format_timestamp tests
# ---------------------------------------------------------------------------


class TestFormatTimestamp:
    """Tests for format_timestamp()."""

    def test_none(self):
        assert format_timestamp(None) == "-"

    def test_datetime(self):
        dt = datetime(2026, 3, 4, 5, 6, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2026-03-04 05:06"

    def test_unix_timestamp(self):
        assert format_timestamp(0) == "1970-01-01 00:00"

    def test_other_values_stringified(self):
        assert format_timestamp("yesterday") == "yesterday"
