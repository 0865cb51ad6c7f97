"""Tests for the kb_* sync tool handlers.

Handlers are exercised through ToolRegistry.call_tool() against a real
SyncService backed by in-memory remote fakes and a temporary state dir.
"""

import threading

import mcp.types as types
import pytest
from conftest import FakeFetcher, FakeListing, descriptor

from kb_mirror.mcp.tools import ALL_SPECS, ToolRegistry
from kb_mirror.sync.errors import FetchError
from kb_mirror.sync.models import InterruptedSessionCheckpoint, SyncStatus
from kb_mirror.sync.service import SyncService
from kb_mirror.sync.session import SessionOptions


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


@pytest.fixture
def fetcher():
    return FakeFetcher(failures={"broken": [FetchError("HTTP 404")]})


@pytest.fixture
async def service(fetcher, cache, tmp_path):
    listing = FakeListing(
        {
            "b1": [
                descriptor("guide", uuid="u-guide", doc_type="TITLE", title="Guide"),
                descriptor("setup", parent_uuid="u-guide", title="Setup"),
                descriptor("broken", title="Broken"),
            ]
        }
    )
    svc = SyncService(
        listing,
        fetcher,
        cache,
        tmp_path / "state",
        options=SessionOptions(retry_backoff=0, task_timeout=5),
    )
    yield svc
    await svc.close()


@pytest.fixture
def registry():
    return ToolRegistry(ALL_SPECS)


async def _call(registry, service, name, **args):
    return await registry.call_tool(name, args, service)


class TestSyncStart:
    async def test_dry_run(self, registry, service, fetcher):
        result = await _call(registry, service, "kb_sync_start", dry_run=True)
        assert not result.isError
        assert _text(result).startswith("DRY RUN")
        assert result.structuredContent["counts"]["fetch"] == 3
        assert fetcher.calls == []

    async def test_wait(self, registry, service):
        result = await _call(
            registry, service, "kb_sync_start", book_ids=["b1"], wait=True
        )
        data = result.structuredContent
        assert data["status"] == "failed"
        assert (data["synced_docs"], data["failed_docs"]) == (2, 1)
        assert "Broken: HTTP 404" in _text(result)

    async def test_background(self, registry, service):
        result = await _call(registry, service, "kb_sync_start", book_ids=["b1"])
        assert result.structuredContent == {
            "started": True,
            "book_ids": ["b1"],
            "total_tasks": 3,
        }
        assert "kb_sync_status" in _text(result)
        active = service.registry.active
        if active is not None:
            await active.wait()
        assert service.get_history()[0].book_ids == ["b1"]

    async def test_invalid_book_ids(self, registry, service):
        result = await _call(registry, service, "kb_sync_start", book_ids=["../x"])
        assert result.isError
        assert "validation_error" in _text(result)

    async def test_empty_book_ids(self, registry, service):
        result = await _call(registry, service, "kb_sync_start", book_ids=[])
        assert result.isError
        assert "cannot be empty" in _text(result)


class TestStatusAndHistory:
    async def test_status_idle(self, registry, service):
        result = await _call(registry, service, "kb_sync_status")
        assert _text(result) == "No sync session is running."
        assert result.structuredContent["is_running"] is False

    async def test_cancel_idle(self, registry, service):
        result = await _call(registry, service, "kb_sync_cancel")
        assert result.structuredContent == {"cancel_requested": False}

    async def test_changes(self, registry, service):
        result = await _call(registry, service, "kb_sync_changes", book_ids=["b1"])
        assert result.structuredContent["new"] == ["guide", "setup", "broken"]
        assert result.structuredContent["total"] == 3

    async def test_history(self, registry, service):
        empty = await _call(registry, service, "kb_sync_history")
        assert empty.structuredContent == {"sessions": []}

        await service.start_sync(["b1"])
        result = await _call(registry, service, "kb_sync_history", limit=5)
        sessions = result.structuredContent["sessions"]
        assert len(sessions) == 1
        assert "#1" in _text(result)
        assert "1 failed" in _text(result)

    async def test_history_invalid_limit(self, registry, service):
        result = await _call(registry, service, "kb_sync_history", limit=0)
        assert result.isError
        assert "Limit must be between" in _text(result)


class TestFailedTools:
    async def test_list_retry_clear_restore(self, registry, service):
        await service.start_sync(["b1"])

        listed = await _call(registry, service, "kb_failed_list")
        assert [r["document_id"] for r in listed.structuredContent["failed"]] == [
            "broken"
        ]
        assert "HTTP 404" in _text(listed)

        cleared = await _call(
            registry, service, "kb_failed_clear", document_id="broken"
        )
        assert cleared.structuredContent["ignored"] is True
        assert service.documents.get("broken").sync_status == SyncStatus.DELETED

        again = await _call(registry, service, "kb_failed_clear", document_id="broken")
        assert again.isError
        assert "not_found" in _text(again)

        restored = await _call(
            registry, service, "kb_failed_restore", document_id="broken"
        )
        assert restored.structuredContent["status"] == "new"

    async def test_retry(self, registry, service):
        await service.start_sync(["b1"])
        result = await _call(registry, service, "kb_failed_retry", document_id="broken")
        assert result.structuredContent == {
            "document_id": "broken",
            "status": "pending",
        }
        assert service.documents.get("broken").sync_status == SyncStatus.PENDING

    async def test_retry_unknown(self, registry, service):
        result = await _call(registry, service, "kb_failed_retry", document_id="nope")
        assert result.isError
        assert "not in the failed state" in _text(result)

    async def test_missing_document_id(self, registry, service):
        result = await _call(registry, service, "kb_failed_retry")
        assert result.isError
        assert "validation_error" in _text(result)


class TestInterruptedTools:
    async def test_get_empty(self, registry, service):
        result = await _call(registry, service, "kb_interrupted_get")
        assert result.structuredContent == {"checkpoint": None}

    async def test_get_resume(self, registry, service, fetcher):
        service.checkpoints.save(
            InterruptedSessionCheckpoint(
                session_id=7, book_ids=["b1"], remaining_ids=["setup"], total_docs=3
            )
        )
        got = await _call(registry, service, "kb_interrupted_get")
        assert got.structuredContent["checkpoint"]["session_id"] == 7
        assert "Remaining: 1" in _text(got)

        resumed = await _call(
            registry, service, "kb_interrupted_resume", session_id=7, wait=True
        )
        assert resumed.structuredContent["synced_docs"] == 1
        assert fetcher.calls == ["setup"]

    async def test_resume_missing(self, registry, service):
        result = await _call(registry, service, "kb_interrupted_resume")
        assert result.isError
        assert "Error (not_found): No interrupted session" in _text(result)

    async def test_clear(self, registry, service):
        service.checkpoints.save(
            InterruptedSessionCheckpoint(session_id=7, book_ids=["b1"])
        )
        result = await _call(registry, service, "kb_interrupted_clear", session_id=7)
        assert result.structuredContent == {"session_id": 7, "cleared": True}

        missing = await _call(registry, service, "kb_interrupted_clear", session_id=7)
        assert missing.isError

    @pytest.mark.parametrize("value", [None, 0, -1, "7", True])
    async def test_clear_invalid_session_id(self, registry, service, value):
        args = {} if value is None else {"session_id": value}
        result = await registry.call_tool("kb_interrupted_clear", args, service)
        assert result.isError
        assert "session_id must be a positive integer" in _text(result)


class TestReportingTools:
    async def test_tree_empty(self, registry, service):
        result = await _call(registry, service, "kb_tree")
        assert _text(result) == "No documents mirrored yet."
        assert result.structuredContent == {"tree": []}

    async def test_tree(self, registry, service):
        await service.start_sync(["b1"])
        result = await _call(registry, service, "kb_tree", book_id="b1")
        tree = result.structuredContent["tree"]
        assert [node["id"] for node in tree] == ["guide", "broken"]
        assert tree[0]["children"][0]["id"] == "setup"
        assert tree[0]["children"][0]["level"] == 1
        assert result.structuredContent["cycles"] == []
        assert "  Setup" in _text(result)

    async def test_tree_reports_cycles(self, registry, service):
        from kb_mirror.sync.models import Document

        service.documents.upsert_many(
            [
                Document(id="x", book_id="b9", uuid="ux", parent_uuid="uy"),
                Document(id="y", book_id="b9", uuid="uy", parent_uuid="ux"),
            ]
        )
        result = await _call(registry, service, "kb_tree", book_id="b9")
        assert result.structuredContent["cycles"] == [["x", "y"]]
        assert "Parent cycles" in _text(result)

    async def test_stats(self, registry, service):
        await service.start_sync(["b1"])
        result = await _call(registry, service, "kb_stats")
        data = result.structuredContent
        assert data["synced_documents"] == 2
        assert data["failed_documents"] == 1
        assert "Cache size:" in _text(result)


class TestStoreReadsOffLoop:
    @pytest.mark.parametrize(
        ("tool", "method", "args"),
        [
            ("kb_sync_history", "get_history", {}),
            ("kb_failed_list", "get_failed_docs", {}),
            ("kb_interrupted_get", "get_interrupted_session", {}),
            ("kb_tree", "get_tree", {"book_id": "b1"}),
            ("kb_stats", "get_statistics", {}),
        ],
    )
    async def test_runs_in_worker_thread(
        self, registry, service, monkeypatch, tool, method, args
    ):
        original = getattr(service, method)
        threads = []

        def _recording(*a, **kw):
            threads.append(threading.get_ident())
            return original(*a, **kw)

        monkeypatch.setattr(service, method, _recording)
        result = await _call(registry, service, tool, **args)
        assert not result.isError
        assert threads
        assert threading.get_ident() not in threads
