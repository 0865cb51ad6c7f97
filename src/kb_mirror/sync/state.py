"""JSON persistence primitives and the interrupted-session checkpoint store.

Every store of the engine keeps its data in JSON files under a state
directory (by default ``<cache_root>/.kb_mirror/``).

Key design choices:

* **Atomic writes** -- ``AtomicJsonFile.write()`` writes to a temp file in
  the same directory then calls ``os.replace()`` so readers never see
  partial data, even while a session is writing.
* **Per-file lock** -- read-modify-write cycles go through
  ``transaction()``, which holds a ``threading.Lock`` because store calls
  run in worker threads.
* **One checkpoint per session** -- ``checkpoints/session_{id}.json``;
  clearing a checkpoint deletes its file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import RepositoryError
from .models import InterruptedSessionCheckpoint

logger = logging.getLogger(__name__)


class AtomicJsonFile:
    """A JSON document on disk with atomic replacement.

    Args:
        path: Location of the JSON file.  Parent directories are created
            on first write.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def read(self, default: Any = None) -> Any:
        """Return the decoded file content, or *default* if it is missing.

        Raises:
            RepositoryError: The file exists but cannot be read or decoded.
        """
        if not self.path.exists():
            return default
        try:
            with open(self.path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise RepositoryError(f"Cannot read {self.path}: {exc}") from exc

    def write(self, data: Any) -> None:
        """Persist *data* atomically.

        Raises:
            RepositoryError: The state directory is not writable.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp"
            )
        except OSError as exc:
            raise RepositoryError(f"Cannot write {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException as exc:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise RepositoryError(
                    f"Cannot write {self.path}: {exc}"
                ) from exc
            raise

    def delete(self) -> bool:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise RepositoryError(
                    f"Cannot delete {self.path}: {exc}"
                ) from exc
            return True

    def load(self, default: Any = None) -> Any:
        """Locked variant of ``read()``."""
        with self._lock:
            return self.read(default)

    @contextmanager
    def transaction(self, default: Any) -> Iterator[Any]:
        """Yield the decoded content for in-place mutation, then persist it.

        Nothing is written if the body raises.
        """
        with self._lock:
            data = self.read(default)
            yield data
            self.write(data)


class CheckpointStore:
    """Save, load and clear interrupted-session checkpoints.

    Args:
        state_dir: Directory holding the engine state; checkpoints live in
            its ``checkpoints/`` subdirectory.
    """

    def __init__(self, state_dir: Path) -> None:
        self._dir = Path(state_dir) / "checkpoints"
        self._files: dict[int, AtomicJsonFile] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, checkpoint: InterruptedSessionCheckpoint) -> None:
        self._file(checkpoint.session_id).write(
            checkpoint.model_dump(mode="json")
        )
        logger.debug(
            "Saved checkpoint for session %d (%d remaining)",
            checkpoint.session_id,
            len(checkpoint.remaining_ids),
        )

    def load(self, session_id: int) -> InterruptedSessionCheckpoint | None:
        """Return the checkpoint of *session_id*, or ``None`` if absent.

        Raises:
            RepositoryError: The checkpoint file is corrupt.
        """
        data = self._file(session_id).load()
        if data is None:
            return None
        try:
            return InterruptedSessionCheckpoint.model_validate(data)
        except ValidationError as exc:
            raise RepositoryError(
                f"Corrupt checkpoint for session {session_id}: {exc}"
            ) from exc

    def clear(self, session_id: int) -> bool:
        """Delete the checkpoint of *session_id*.

        Returns:
            ``True`` if a checkpoint was removed.
        """
        removed = self._file(session_id).delete()
        if removed:
            logger.debug("Cleared checkpoint for session %d", session_id)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[InterruptedSessionCheckpoint]:
        """Return all readable checkpoints, oldest first.

        Corrupt files are logged and skipped so one bad file cannot hide
        the others.
        """
        if not self._dir.exists():
            return []
        checkpoints = []
        for path in sorted(self._dir.glob("session_*.json")):
            try:
                session_id = int(path.stem.removeprefix("session_"))
                checkpoint = self.load(session_id)
            except (ValueError, RepositoryError) as exc:
                logger.warning("Skipping unreadable checkpoint %s: %s", path, exc)
                continue
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        checkpoints.sort(key=lambda cp: (cp.saved_at, cp.session_id))
        return checkpoints

    def latest(self) -> InterruptedSessionCheckpoint | None:
        checkpoints = self.list()
        return checkpoints[-1] if checkpoints else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _file(self, session_id: int) -> AtomicJsonFile:
        with self._lock:
            if session_id not in self._files:
                self._files[session_id] = AtomicJsonFile(
                    self._dir / f"session_{session_id}.json"
                )
            return self._files[session_id]
