"""Sync session: execute a reconciliation plan with a bounded worker pool.

A ``SyncSession`` runs the tasks of one ``SyncPlan``.  It:

1. Creates a ``running`` history record and persists the observed documents.
2. Saves an initial checkpoint and emits a ``comparing`` progress event.
3. Starts ``concurrency`` worker tasks pulling from a shared queue.
4. Fetches content (retrying transient errors and timeouts), writes it to
   the cache and queues the ``synced`` status change; any other error marks
   the document ``failed`` and records it in the ledger.
5. Emits progress after every completed task.  Every ``checkpoint_interval``
   completions it writes the queued status changes in one transaction and
   then saves a checkpoint, so the two files agree.
6. Finalizes the history record and emits a completion event.

Error handling is per-task: a single document failure does not abort the
run.  ``AuthExpiredError`` and ``RepositoryError`` are systemic; they stop
the pool, finalize the record as ``failed`` and propagate.

Only one session may run per cache root; ``SessionRegistry`` enforces this.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from ..core.async_utils import run_sync, run_sync_timeout
from .errors import (
    AuthExpiredError,
    FetchError,
    RepositoryError,
    SessionActiveError,
    TransientFetchError,
)
from .events import CompleteEvent, ErrorEvent, EventStream, ProgressEvent
from .interfaces import (
    CacheWriter,
    CheckpointRepository,
    ContentFetcher,
    DocumentRepository,
    SessionHistoryRepository,
)
from .ledger import FailedItemLedger
from .models import (
    Document,
    InterruptedSessionCheckpoint,
    SessionRecord,
    SessionStatus,
    SyncPlan,
    SyncProgress,
    SyncResult,
    SyncStatus,
    SyncTask,
    TaskAction,
    utc_now,
)

logger = logging.getLogger(__name__)

_SYSTEMIC_ERRORS = (AuthExpiredError, RepositoryError)


@dataclass(frozen=True)
class SessionOptions:
    """Execution limits of a session.

    Attributes:
        concurrency: Number of worker tasks.
        max_retries: Extra attempts for transient fetch failures.
        retry_backoff: Base delay in seconds; attempt *n* waits ``n * base``.
        task_timeout: Seconds allowed per blocking call, ``None`` for no limit.
        checkpoint_interval: Completed tasks between checkpoint saves.
    """

    concurrency: int = 3
    max_retries: int = 2
    retry_backoff: float = 0.5
    task_timeout: float | None = 120.0
    checkpoint_interval: int = 5

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be at least 1")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Timed out"
    return str(exc) or type(exc).__name__


class SyncSession:
    """Execute one plan against the local cache.

    Args:
        plan: Tasks and observed documents from the planner.
        fetcher: Source of document content.
        cache: Destination of document content.
        documents: Local document repository.
        ledger: Failure ledger.
        history: Session history store.
        checkpoints: Interrupted-session checkpoint store.
        events: Stream receiving progress, completion and error events.
        options: Execution limits.
        resumed_from: Id of the interrupted session this run resumes.
    """

    def __init__(
        self,
        plan: SyncPlan,
        *,
        fetcher: ContentFetcher,
        cache: CacheWriter,
        documents: DocumentRepository,
        ledger: FailedItemLedger,
        history: SessionHistoryRepository,
        checkpoints: CheckpointRepository,
        events: EventStream | None = None,
        options: SessionOptions | None = None,
        resumed_from: int | None = None,
    ) -> None:
        self.plan = plan
        self._fetcher = fetcher
        self._cache = cache
        self._documents = documents
        self._ledger = ledger
        self._history = history
        self._checkpoints = checkpoints
        self._events = events if events is not None else EventStream()
        self._options = options or SessionOptions()
        self._resumed_from = resumed_from

        self._cancel_event = asyncio.Event()
        self._remaining: dict[int, SyncTask] = dict(enumerate(plan.tasks))
        self._completed_ids: list[str] = []
        # Status changes not yet written to the document store
        self._pending: list[tuple[SyncTask, SyncStatus, dict[str, Any]]] = []
        self._persist_lock = asyncio.Lock()
        self._synced = 0
        self._failed = 0
        self._errors: list[str] = []
        self._fatal: BaseException | None = None
        self._record: SessionRecord | None = None
        self._progress: SyncProgress | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def total(self) -> int:
        return len(self.plan.tasks)

    @property
    def record(self) -> SessionRecord | None:
        return self._record

    @property
    def session_id(self) -> int | None:
        return self._record.id if self._record else None

    @property
    def progress(self) -> SyncProgress | None:
        return self._progress

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop dequeuing tasks; in-flight tasks run to completion."""
        if not self._cancel_event.is_set():
            logger.info("Cancellation requested for session %s", self.session_id)
            self._cancel_event.set()

    async def run(self) -> SyncResult:
        """Execute the plan.

        Returns:
            The session summary.

        Raises:
            AuthExpiredError: The remote rejected the credentials.
            RepositoryError: Local state could not be read or written.
        """
        await self._start()

        queue: asyncio.Queue[tuple[int, SyncTask]] = asyncio.Queue()
        for item in self._remaining.items():
            queue.put_nowait(item)

        worker_count = max(1, min(self._options.concurrency, self.total))
        workers = [
            asyncio.create_task(self._worker(queue), name=f"kb-mirror-worker-{i}")
            for i in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            self._cancel_event.set()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self._finish()
            raise

        if self._fatal is not None:
            await self._abort(self._fatal)
            raise self._fatal
        return await self._finish()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _start(self) -> None:
        record = await run_sync(
            self._history.create,
            self.plan.book_ids,
            self.plan.force,
            self._resumed_from,
        )
        self._record = record.model_copy(update={"total_docs": self.total})
        logger.info(
            "Session %d started: %d tasks for books %s",
            self._record.id,
            self.total,
            self.plan.book_ids,
        )
        try:
            await run_sync(self._history.update, self._record)
            if self.plan.observed:
                await run_sync(self._documents.upsert_many, self.plan.observed)
            await self._save_checkpoint()
        except _SYSTEMIC_ERRORS as exc:
            await self._abort(exc)
            raise
        self._emit_progress(current_doc="", stage="comparing")

    async def _finish(self) -> SyncResult:
        assert self._record is not None
        cancelled = self._cancel_event.is_set()
        if cancelled:
            status = SessionStatus.CANCELLED
            message = "Cancelled by user"
        elif self._failed:
            status = SessionStatus.FAILED
            message = f"{self._failed} document(s) failed to sync"
        else:
            status = SessionStatus.SUCCESS
            message = None
        if self.plan.failures and status != SessionStatus.CANCELLED:
            books = ", ".join(f.book_id for f in self.plan.failures)
            listing = f"Listing failed for books: {books}"
            message = f"{message}; {listing}" if message else listing

        if self._remaining:
            await self._save_checkpoint()
        else:
            await self._flush_pending()
            await run_sync(self._checkpoints.clear, self._record.id)

        self._record = self._record.model_copy(
            update={
                "status": status,
                "completed_at": utc_now(),
                "synced_docs": self._synced,
                "failed_docs": self._failed,
                "error_message": message,
            }
        )
        await run_sync(self._history.update, self._record)

        result = SyncResult(
            session_id=self._record.id,
            success=self._failed == 0 and not cancelled,
            status=status,
            total_docs=self.total,
            synced_docs=self._synced,
            failed_docs=self._failed,
            errors=list(self._errors),
            plan_failures=list(self.plan.failures),
        )
        self._emit_progress(
            current_doc="", stage="done", current=self.total - len(self._remaining)
        )
        self._events.publish(CompleteEvent(result=result))
        logger.info(
            "Session %d %s: %d synced, %d failed, %d remaining",
            self._record.id,
            status.value,
            self._synced,
            self._failed,
            len(self._remaining),
        )
        return result

    async def _abort(self, exc: BaseException) -> None:
        """Finalize the record after a systemic error; keep the checkpoint."""
        message = _describe(exc)
        code = (
            "auth_expired"
            if isinstance(exc, AuthExpiredError)
            else "repository_error"
        )
        logger.error("Session %s aborted: %s", self.session_id, message)
        if self._record is not None:
            self._record = self._record.model_copy(
                update={
                    "status": SessionStatus.FAILED,
                    "completed_at": utc_now(),
                    "synced_docs": self._synced,
                    "failed_docs": self._failed,
                    "error_message": message,
                }
            )
            try:
                await self._save_checkpoint()
                await run_sync(self._history.update, self._record)
            except RepositoryError as persist_exc:
                logger.error(
                    "Could not persist aborted session %d: %s",
                    self._record.id,
                    persist_exc,
                )
        self._events.publish(
            ErrorEvent(session_id=self.session_id, message=message, code=code)
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, queue: asyncio.Queue[tuple[int, SyncTask]]) -> None:
        while not self._cancel_event.is_set() and self._fatal is None:
            try:
                index, task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                ok = await self._execute(task)
            except _SYSTEMIC_ERRORS as exc:
                if self._fatal is None:
                    self._fatal = exc
                return
            await self._complete(index, task, ok)

    async def _execute(self, task: SyncTask) -> bool:
        match task.action:
            case TaskAction.FETCH:
                return await self._fetch_and_store(task)
            case TaskAction.MARK_DELETED:
                self._pending.append((task, SyncStatus.DELETED, {}))
                logger.debug("Document %s marked deleted", task.document_id)
                return True
            case _:
                return True

    async def _fetch_and_store(self, task: SyncTask) -> bool:
        timeout = self._options.task_timeout
        attempts = 0
        try:
            if task.descriptor is None:
                raise FetchError(f"No remote descriptor for {task.document_id}")
            while True:
                attempts += 1
                try:
                    content = await run_sync_timeout(
                        timeout, self._fetcher.fetch, task.descriptor
                    )
                    break
                except (TransientFetchError, asyncio.TimeoutError) as exc:
                    # A timed-out fetch keeps its thread; the retry reads again
                    if (
                        attempts > self._options.max_retries
                        or self._cancel_event.is_set()
                    ):
                        raise
                    delay = self._options.retry_backoff * attempts
                    logger.info(
                        "Transient error fetching %s (attempt %d): %s; retrying in %.1fs",
                        task.document_id,
                        attempts,
                        _describe(exc),
                        delay,
                    )
                    await asyncio.sleep(delay)

            # No timeout: an abandoned write could land after the failure mark
            path = await run_sync(
                self._cache.write, task.book_id, task.document_id, content
            )
            changes = self._synced_changes(task, path)
            self._pending.append((task, SyncStatus.SYNCED, changes))
            return True
        except _SYSTEMIC_ERRORS:
            raise
        except Exception as exc:
            message = _describe(exc)
            self._errors.append(f"{task.title or task.document_id}: {message}")
            await run_sync(self._mark_failed, task, message, max(attempts, 1))
            return False

    @staticmethod
    def _synced_changes(task: SyncTask, path: str) -> dict[str, Any]:
        descriptor = task.descriptor
        assert descriptor is not None
        return {
            "local_path": path,
            "local_synced_at": utc_now(),
            "remote_updated_at": descriptor.updated_at,
            "content_hash": descriptor.content_hash,
            "ignored": False,
        }

    def _write_pending(
        self, batch: list[tuple[SyncTask, SyncStatus, dict[str, Any]]]
    ) -> None:
        updates = [(task.document_id, status, changes) for task, status, changes in batch]
        missing = set(self._documents.update_many(updates))
        synced = [
            (task, changes)
            for task, status, changes in batch
            if status == SyncStatus.SYNCED
        ]
        # Synced documents missing from the store are inserted; deletions of
        # unknown ids are dropped
        inserts = [
            Document.model_validate(
                {
                    **task.descriptor.to_document(None, SyncStatus.NEW).model_dump(),
                    **changes,
                    "sync_status": SyncStatus.SYNCED,
                }
            )
            for task, changes in synced
            if task.document_id in missing and task.descriptor is not None
        ]
        if inserts:
            self._documents.upsert_many(inserts)
        self._ledger.resolve([task.document_id for task, _ in synced])

    async def _flush_pending(self) -> None:
        batch, self._pending = self._pending, []
        if not batch:
            return
        try:
            await run_sync(self._write_pending, batch)
        except BaseException:
            self._pending[:0] = batch
            raise
        logger.debug("Wrote %d status change(s)", len(batch))

    def _mark_failed(self, task: SyncTask, message: str, attempts: int) -> None:
        document = self._documents.get(task.document_id)
        if document is None:
            if task.descriptor is not None:
                document = task.descriptor.to_document(None, SyncStatus.NEW)
            else:
                document = Document(
                    id=task.document_id, book_id=task.book_id, title=task.title
                )
        self._ledger.record_failure(document, message, attempts)

    async def _complete(self, index: int, task: SyncTask, ok: bool) -> None:
        self._remaining.pop(index, None)
        self._completed_ids.append(task.document_id)
        if ok:
            self._synced += 1
        else:
            self._failed += 1
        self._emit_progress(current_doc=task.title or task.document_id)
        if len(self._completed_ids) % self._options.checkpoint_interval == 0:
            try:
                await self._save_checkpoint()
            except RepositoryError as exc:
                if self._fatal is None:
                    self._fatal = exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit_progress(
        self,
        current_doc: str,
        stage: str = "downloading",
        current: int | None = None,
    ) -> None:
        if self._record is None:
            return
        done = len(self._completed_ids) if current is None else current
        self._progress = SyncProgress(
            session_id=self._record.id,
            current=min(done, self.total),
            total=self.total,
            current_doc=current_doc,
            stage=stage,
        )
        self._events.publish(ProgressEvent(**self._progress.model_dump()))

    async def _save_checkpoint(self) -> None:
        """Write the queued status changes, then the checkpoint they belong to."""
        assert self._record is not None
        async with self._persist_lock:
            checkpoint = InterruptedSessionCheckpoint(
                session_id=self._record.id,
                book_ids=self.plan.book_ids,
                force=self.plan.force,
                remaining_ids=[t.document_id for t in self._remaining.values()],
                completed_ids=list(self._completed_ids),
                total_docs=self.total,
                synced_docs=self._synced,
                failed_docs=self._failed,
            )
            await self._flush_pending()
            await run_sync(self._checkpoints.save, checkpoint)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SessionHandle:
    """A running (or finished) session and the task executing it."""

    def __init__(self, session: SyncSession, task: asyncio.Task) -> None:
        self.session = session
        self.task = task

    @property
    def session_id(self) -> int | None:
        return self.session.session_id

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> None:
        self.session.cancel()

    async def wait(self) -> SyncResult:
        return await asyncio.shield(self.task)


class SessionRegistry:
    """Single active-session slot for one cache root."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._active: SessionHandle | None = None

    @property
    def active(self) -> SessionHandle | None:
        if self._active is not None and self._active.done:
            self._active = None
        return self._active

    @property
    def is_running(self) -> bool:
        return self.active is not None

    def ensure_idle(self) -> None:
        """Raise ``SessionActiveError`` if a session is running."""
        active = self.active
        if active is not None:
            raise SessionActiveError(
                f"Sync session {active.session_id} is already running"
            )

    async def start(self, session: SyncSession) -> SessionHandle:
        """Run *session* in a new task and occupy the slot.

        Raises:
            SessionActiveError: Another session is still running.
        """
        async with self._lock:
            self.ensure_idle()
            task = asyncio.get_running_loop().create_task(
                session.run(), name="kb-mirror-session"
            )
            handle = SessionHandle(session, task)
            self._active = handle
            task.add_done_callback(self._on_done)
            return handle

    def cancel_active(self) -> bool:
        active = self.active
        if active is None:
            return False
        active.cancel()
        return True

    def _on_done(self, task: asyncio.Task) -> None:
        if self._active is not None and self._active.task is task:
            self._active = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync session ended with error: %s", exc)
