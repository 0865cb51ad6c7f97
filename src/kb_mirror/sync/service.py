"""Command surface of the sync engine.

``SyncService`` wires the planner, session registry, ledger and stores for
one cache root and exposes the operations the presentation layer (the MCP
tools) calls.  Coroutine methods move their blocking store and remote
calls off the event loop with ``run_sync``; the plain query methods block,
and async callers run them with ``run_sync`` themselves.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from ..core.async_utils import run_sync
from .cache import LocalCache
from .errors import CheckpointNotFoundError, SessionActiveError
from .events import EventStream
from .hierarchy import build_tree, find_parent_cycles
from .interfaces import ContentFetcher, RemoteListing
from .ledger import FailedItemLedger
from .models import (
    ChangeSet,
    Document,
    EngineStatus,
    FailedDocRecord,
    InterruptedSessionCheckpoint,
    SessionRecord,
    SyncPlan,
    SyncResult,
    SyncStatistics,
    SyncStatus,
    TreeNode,
)
from .planner import ReconciliationPlanner
from .repository import DocumentStore, FailedDocStore, SessionHistoryStore
from .session import SessionHandle, SessionOptions, SessionRegistry, SyncSession
from .state import CheckpointStore
from .stats import compute_statistics

logger = logging.getLogger(__name__)


class SyncService:
    """Sync engine for one cache root.

    Args:
        listing: Remote listing collaborator.
        fetcher: Remote content collaborator.
        cache: Local document cache.
        state_dir: Directory for the JSON stores.
        options: Session execution limits.
        retry_failed: Let plans re-fetch failed documents automatically.
        history_limit: Number of sessions kept in the history.
        events: Event stream shared by all sessions of this service.
    """

    def __init__(
        self,
        listing: RemoteListing,
        fetcher: ContentFetcher,
        cache: LocalCache,
        state_dir: Path,
        *,
        options: SessionOptions | None = None,
        retry_failed: bool = False,
        history_limit: int = 50,
        events: EventStream | None = None,
    ) -> None:
        self.listing = listing
        self.fetcher = fetcher
        self.cache = cache
        self.options = options or SessionOptions()
        self.history_limit = history_limit

        state_dir = Path(state_dir)
        self.documents = DocumentStore(state_dir)
        self.failed_docs = FailedDocStore(state_dir)
        self.history = SessionHistoryStore(state_dir)
        self.checkpoints = CheckpointStore(state_dir)
        self.ledger = FailedItemLedger(self.documents, self.failed_docs)
        self.planner = ReconciliationPlanner(
            listing, self.documents, retry_failed=retry_failed
        )
        self.events = events or EventStream()
        self.registry = SessionRegistry()
        self._start_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_sync(
        self,
        book_ids: Sequence[str] | None = None,
        force: bool = False,
        document_ids: Iterable[str] | None = None,
    ) -> SyncResult:
        """Plan and run a session, returning its summary.

        Args:
            book_ids: Books to sync; ``None`` means every listed book.
            force: Re-fetch every document regardless of status.
            document_ids: Restrict the session to these documents.

        Raises:
            ValueError: *book_ids* is an empty list.
            SessionActiveError: Another session is running.
            AuthExpiredError: The remote rejected the credentials.
            RepositoryError: Local state could not be read or written.
        """
        handle = await self.start_sync_background(book_ids, force, document_ids)
        return await self._wait(handle)

    async def start_sync_background(
        self,
        book_ids: Sequence[str] | None = None,
        force: bool = False,
        document_ids: Iterable[str] | None = None,
    ) -> SessionHandle:
        """Like ``start_sync`` but return as soon as the session is running."""
        async with self._start_lock:
            self.registry.ensure_idle()
            books = await self._resolve_books(book_ids)
            plan = await run_sync(self.planner.plan, books, force, document_ids)
            return await self._launch(plan)

    async def preview_sync(
        self,
        book_ids: Sequence[str] | None = None,
        force: bool = False,
        document_ids: Iterable[str] | None = None,
    ) -> SyncPlan:
        """Return the plan a ``start_sync`` call would execute."""
        books = await self._resolve_books(book_ids)
        return await run_sync(self.planner.plan, books, force, document_ids)

    def cancel_sync(self) -> bool:
        """Request cancellation of the running session, if any."""
        return self.registry.cancel_active()

    def get_status(self) -> EngineStatus:
        active = self.registry.active
        if active is None:
            return EngineStatus(is_running=False)
        return EngineStatus(
            is_running=True,
            session_id=active.session_id,
            book_ids=active.session.plan.book_ids,
            progress=active.session.progress,
        )

    async def get_changes(
        self, book_ids: Sequence[str] | None = None
    ) -> ChangeSet:
        books = await self._resolve_books(book_ids)
        return await run_sync(self.planner.detect_changes, books)

    def get_history(self, limit: int = 50) -> list[SessionRecord]:
        return self.history.recent(limit)

    def recover(self) -> list[SessionRecord]:
        """Finalize sessions left ``running`` by a previous process.

        Their checkpoints stay in place for ``resume_interrupted_session``.
        """
        recovered = self.history.mark_running_interrupted()
        for record in recovered:
            logger.warning(
                "Session %d was interrupted; marked cancelled", record.id
            )
        return recovered

    async def close(self) -> None:
        """Cancel a running session, wait for it and stop the event stream."""
        active = self.registry.active
        if active is not None:
            active.cancel()
            try:
                await active.wait()
            except Exception as e:
                logger.warning("Session ended with error during shutdown: %s", e)
        await self.events.stop()

    # ------------------------------------------------------------------
    # Failed documents
    # ------------------------------------------------------------------

    def get_failed_docs(self) -> list[FailedDocRecord]:
        return self.ledger.list()

    async def retry_failed_doc(self, document_id: str) -> bool:
        return await self._ledger_command(self.ledger.retry, document_id)

    async def clear_failed_doc(self, document_id: str) -> bool:
        return await self._ledger_command(self.ledger.clear, document_id)

    async def restore_doc(self, document_id: str) -> bool:
        return await self._ledger_command(self.ledger.restore, document_id)

    async def _ledger_command(
        self, action: Callable[[str], bool], document_id: str
    ) -> bool:
        """Run a ledger change while no session is starting or running.

        A starting session persists the documents its planner observed, so a
        change made between planning and launch would be overwritten.
        """
        if self._start_lock.locked():
            raise SessionActiveError("A sync session is starting; retry when it ends")
        async with self._start_lock:
            self.registry.ensure_idle()
            return await run_sync(action, document_id)

    # ------------------------------------------------------------------
    # Interrupted sessions
    # ------------------------------------------------------------------

    def get_interrupted_session(self) -> InterruptedSessionCheckpoint | None:
        """Return the newest checkpoint not owned by the running session."""
        active_id = self._active_session_id()
        checkpoints = [
            cp for cp in self.checkpoints.list() if cp.session_id != active_id
        ]
        return checkpoints[-1] if checkpoints else None

    def clear_interrupted_session(self, session_id: int) -> bool:
        if session_id == self._active_session_id():
            raise SessionActiveError(
                f"Session {session_id} is running; cancel it first"
            )
        return self.checkpoints.clear(session_id)

    async def resume_interrupted_session(
        self, session_id: int | None = None
    ) -> SyncResult:
        """Re-plan and run the remaining work of an interrupted session.

        The checkpoint is consumed once the new session is planned; the
        remaining documents are compared against the current remote state
        instead of replaying the stored task list.

        Raises:
            CheckpointNotFoundError: No matching checkpoint exists.
        """
        handle = await self.resume_interrupted_session_background(session_id)
        return await self._wait(handle)

    async def resume_interrupted_session_background(
        self, session_id: int | None = None
    ) -> SessionHandle:
        async with self._start_lock:
            self.registry.ensure_idle()
            if session_id is None:
                checkpoint = self.get_interrupted_session()
            else:
                checkpoint = self.checkpoints.load(session_id)
            if checkpoint is None:
                raise CheckpointNotFoundError(
                    "No interrupted session"
                    if session_id is None
                    else f"No checkpoint for session {session_id}"
                )
            plan = await run_sync(
                self.planner.plan,
                checkpoint.book_ids,
                checkpoint.force,
                checkpoint.remaining_ids,
            )
            self.checkpoints.clear(checkpoint.session_id)
            logger.info(
                "Resuming session %d: %d of %d documents still need work",
                checkpoint.session_id,
                len(plan.tasks),
                len(checkpoint.remaining_ids),
            )
            return await self._launch(plan, resumed_from=checkpoint.session_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_tree(
        self, book_id: str | None = None, include_deleted: bool = False
    ) -> list[TreeNode]:
        return build_tree(self._tree_documents(book_id, include_deleted))

    def get_parent_cycles(
        self, book_id: str | None = None, include_deleted: bool = False
    ) -> list[list[str]]:
        """Parent cycles among the documents ``get_tree`` would render."""
        return find_parent_cycles(self._tree_documents(book_id, include_deleted))

    def _tree_documents(
        self, book_id: str | None, include_deleted: bool
    ) -> list[Document]:
        documents = self.documents.list(book_id)
        if include_deleted:
            return documents
        return [d for d in documents if d.sync_status != SyncStatus.DELETED]

    def get_statistics(self) -> SyncStatistics:
        return compute_statistics(self.documents, self.history, self.cache)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _resolve_books(
        self, book_ids: Sequence[str] | None
    ) -> list[str]:
        if book_ids is None:
            books = await run_sync(self.listing.list_books)
            return [book.id for book in books]
        if not book_ids:
            raise ValueError("No knowledge base specified")
        return list(book_ids)

    async def _launch(
        self, plan: SyncPlan, resumed_from: int | None = None
    ) -> SessionHandle:
        session = SyncSession(
            plan,
            fetcher=self.fetcher,
            cache=self.cache,
            documents=self.documents,
            ledger=self.ledger,
            history=self.history,
            checkpoints=self.checkpoints,
            events=self.events,
            options=self.options,
            resumed_from=resumed_from,
        )
        self.events.start()
        handle = await self.registry.start(session)
        handle.task.add_done_callback(lambda _task: self._prune_history())
        return handle

    async def _wait(self, handle: SessionHandle) -> SyncResult:
        result = await handle.wait()
        await self.events.flush()
        return result

    def _prune_history(self) -> None:
        try:
            self.history.prune(self.history_limit)
        except Exception as e:
            logger.warning("Failed to prune session history: %s", e)

    def _active_session_id(self) -> int | None:
        active = self.registry.active
        return active.session_id if active is not None else None
