"""Tests for JSON persistence primitives and the checkpoint store.

Covers:
- AtomicJsonFile read defaults, write/read, corrupt files, no temp leftovers
- transaction() writes only when the body succeeds
- CheckpointStore save/load/clear/list/latest
- Corrupt checkpoints are skipped by list()
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import ts

from kb_mirror.sync.errors import RepositoryError
from kb_mirror.sync.models import InterruptedSessionCheckpoint
from kb_mirror.sync.state import AtomicJsonFile, CheckpointStore

# ---------------------------------------------------------------------------
# AtomicJsonFile
# ---------------------------------------------------------------------------


class TestAtomicJsonFile:
    """Tests for AtomicJsonFile."""

    def test_missing_file_returns_default(self, tmp_path: Path):
        f = AtomicJsonFile(tmp_path / "nope.json")
        assert f.read({"x": 1}) == {"x": 1}
        assert f.load() is None

    def test_write_creates_parent_dirs(self, tmp_path: Path):
        path = tmp_path / "deep" / "state" / "data.json"
        AtomicJsonFile(path).write({"a": [1, 2]})
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": [1, 2]}

    def test_write_leaves_no_temp_files(self, tmp_path: Path):
        f = AtomicJsonFile(tmp_path / "data.json")
        f.write({"a": 1})
        f.write({"a": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
        assert f.read() == {"a": 2}

    def test_corrupt_file_raises_repository_error(self, tmp_path: Path):
        path = tmp_path / "data.json"
        path.write_text("{broken", encoding="utf-8")
        with pytest.raises(RepositoryError, match="Cannot read"):
            AtomicJsonFile(path).read()

    def test_unicode_preserved(self, tmp_path: Path):
        f = AtomicJsonFile(tmp_path / "data.json")
        f.write({"title": "Заметки о синхронизации"})
        assert f.read()["title"] == "Заметки о синхронизации"

    def test_transaction_persists_mutation(self, tmp_path: Path):
        f = AtomicJsonFile(tmp_path / "data.json")
        with f.transaction({"items": []}) as data:
            data["items"].append("one")
        with f.transaction({"items": []}) as data:
            data["items"].append("two")
        assert f.read() == {"items": ["one", "two"]}

    def test_transaction_discards_on_error(self, tmp_path: Path):
        f = AtomicJsonFile(tmp_path / "data.json")
        f.write({"items": ["keep"]})
        with pytest.raises(RuntimeError):
            with f.transaction({"items": []}) as data:
                data["items"].append("lost")
                raise RuntimeError("abort")
        assert f.read() == {"items": ["keep"]}

    def test_delete(self, tmp_path: Path):
        f = AtomicJsonFile(tmp_path / "data.json")
        assert not f.delete()
        f.write({})
        assert f.delete()
        assert not f.path.exists()


# ---------------------------------------------------------------------------
# CheckpointStore
# ---------------------------------------------------------------------------


def _checkpoint(session_id: int, **fields) -> InterruptedSessionCheckpoint:
    fields.setdefault("book_ids", ["b1"])
    fields.setdefault("remaining_ids", ["d2", "d3"])
    return InterruptedSessionCheckpoint(session_id=session_id, **fields)


class TestCheckpointStore:
    """Tests for CheckpointStore."""

    def test_load_missing_returns_none(self, tmp_path: Path):
        assert CheckpointStore(tmp_path).load(1) is None

    def test_save_and_load(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        checkpoint = _checkpoint(7, completed_ids=["d1"], force=True, synced_docs=1)
        store.save(checkpoint)

        assert (tmp_path / "checkpoints" / "session_7.json").exists()
        assert store.load(7) == checkpoint

    def test_save_overwrites(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        store.save(_checkpoint(1))
        store.save(_checkpoint(1, remaining_ids=["d3"]))
        assert store.load(1).remaining_ids == ["d3"]

    def test_clear(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        store.save(_checkpoint(1))
        assert store.clear(1)
        assert store.load(1) is None
        assert not store.clear(1)

    def test_list_oldest_first(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        store.save(_checkpoint(3, saved_at=ts(100)))
        store.save(_checkpoint(10, saved_at=ts(200)))
        store.save(_checkpoint(2, saved_at=ts(300)))
        assert [cp.session_id for cp in store.list()] == [3, 10, 2]
        assert store.latest().session_id == 2

    def test_list_empty(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        assert store.list() == []
        assert store.latest() is None

    def test_corrupt_checkpoint_skipped(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        store.save(_checkpoint(1))
        (tmp_path / "checkpoints" / "session_2.json").write_text(
            "{bad", encoding="utf-8"
        )
        (tmp_path / "checkpoints" / "session_x.json").write_text(
            "{}", encoding="utf-8"
        )
        assert [cp.session_id for cp in store.list()] == [1]

    def test_invalid_checkpoint_raises_on_load(self, tmp_path: Path):
        store = CheckpointStore(tmp_path)
        path = tmp_path / "checkpoints" / "session_4.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"session_id": "x"}), encoding="utf-8")
        with pytest.raises(RepositoryError, match="Corrupt checkpoint"):
            store.load(4)
