"""Reconciliation planner: diff remote listings against local records.

The planner is synchronous and read-only.  It fetches one remote listing
per book, derives a status for every listed document and returns the
tasks a ``SyncSession`` has to execute.  The documents it observed travel
with the plan (``SyncPlan.observed``) and are persisted by the session, so
``plan()`` itself can be called freely for previews.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .errors import AuthExpiredError, PlanningError, RepositoryError
from .interfaces import DocumentRepository, RemoteListing
from .models import (
    ChangeSet,
    Document,
    PlanFailure,
    RemoteDescriptor,
    SyncPlan,
    SyncStatus,
    SyncTask,
    TaskAction,
)
from .status import derive_status, is_fetch_eligible

logger = logging.getLogger(__name__)


@dataclass
class _BookComparison:
    """Per-book outcome of comparing a listing with the local records."""

    book_id: str
    listed: list[tuple[RemoteDescriptor, Document | None, Document]] = field(
        default_factory=list
    )
    vanished: list[Document] = field(default_factory=list)


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class ReconciliationPlanner:
    """Compute the tasks needed to converge the local cache with the remote.

    Args:
        listing: Source of remote book listings.
        documents: Local document repository (read-only here).
        retry_failed: Emit fetch tasks for documents whose last attempt
            failed.  Off by default; failures stay in the ledger until the
            user retries them.
    """

    def __init__(
        self,
        listing: RemoteListing,
        documents: DocumentRepository,
        retry_failed: bool = False,
    ) -> None:
        self._listing = listing
        self._documents = documents
        self._retry_failed = retry_failed

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(
        self,
        book_ids: Sequence[str],
        force: bool = False,
        document_ids: Iterable[str] | None = None,
    ) -> SyncPlan:
        """Build a plan for *book_ids*.

        Args:
            book_ids: Target books, planned in the given order.
            force: Re-fetch every document that is not ignored, whatever
                its derived status.
            document_ids: Restrict emitted tasks to these documents.

        Returns:
            A ``SyncPlan``; books whose listing failed appear in
            ``plan.failures`` and contribute no tasks.

        Raises:
            AuthExpiredError: The remote rejected the credentials.
            RepositoryError: Local records could not be read.
        """
        wanted = set(document_ids) if document_ids is not None else None
        books = _unique(book_ids)
        tasks: list[SyncTask] = []
        observed: list[Document] = []
        failures: list[PlanFailure] = []

        for comparison in self._compare(books, failures):
            book_tasks: list[SyncTask] = []
            for descriptor, local, document in comparison.listed:
                observed.append(document)
                task = self._fetch_task(descriptor, local, document, force)
                if task is not None:
                    book_tasks.append(task)
            for local in comparison.vanished:
                book_tasks.append(
                    SyncTask(
                        document_id=local.id,
                        book_id=local.book_id,
                        action=TaskAction.MARK_DELETED,
                        reason=SyncStatus.DELETED,
                        title=local.title,
                    )
                )
            if wanted is not None:
                book_tasks = [t for t in book_tasks if t.document_id in wanted]
            tasks.extend(book_tasks)

        plan = SyncPlan(
            book_ids=books,
            force=force,
            tasks=tasks,
            observed=observed,
            failures=failures,
        )
        logger.info(
            "Planned %d tasks (%d fetch, %d delete) for %d books, %d failed",
            len(plan.tasks),
            len(plan.fetch_tasks),
            len(plan.delete_tasks),
            len(books),
            len(failures),
        )
        return plan

    def detect_changes(self, book_ids: Sequence[str]) -> ChangeSet:
        """Group documents of *book_ids* by the change that was detected.

        Synced and ignored documents are not reported.
        """
        failures: list[PlanFailure] = []
        new: list[Document] = []
        modified: list[Document] = []
        failed: list[Document] = []
        deleted: list[Document] = []

        for comparison in self._compare(_unique(book_ids), failures):
            for _descriptor, _local, document in comparison.listed:
                if document.ignored:
                    continue
                match document.sync_status:
                    case SyncStatus.NEW | SyncStatus.PENDING:
                        new.append(document)
                    case SyncStatus.MODIFIED:
                        modified.append(document)
                    case SyncStatus.FAILED:
                        failed.append(document)
            deleted.extend(
                doc.model_copy(update={"sync_status": SyncStatus.DELETED})
                for doc in comparison.vanished
            )

        return ChangeSet(
            new=new,
            modified=modified,
            deleted=deleted,
            failed=failed,
            failures=failures,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _compare(
        self, book_ids: list[str], failures: list[PlanFailure]
    ) -> Iterable[_BookComparison]:
        for book_id in book_ids:
            try:
                remote = self._list_book(book_id)
            except PlanningError as exc:
                logger.warning("%s", exc)
                failures.append(PlanFailure(book_id=book_id, error=str(exc)))
                continue
            yield self._compare_book(book_id, remote)

    def _list_book(self, book_id: str) -> list[RemoteDescriptor]:
        try:
            return list(self._listing.fetch(book_id))
        except (AuthExpiredError, RepositoryError):
            raise
        except Exception as exc:
            raise PlanningError(book_id, str(exc)) from exc

    def _compare_book(
        self, book_id: str, remote: list[RemoteDescriptor]
    ) -> _BookComparison:
        try:
            local_docs = {d.id: d for d in self._documents.list(book_id)}
        except RepositoryError:
            raise
        except Exception as exc:
            raise RepositoryError(
                f"Cannot read local documents of book {book_id}: {exc}"
            ) from exc

        comparison = _BookComparison(book_id=book_id)
        seen: set[str] = set()
        for descriptor in remote:
            if descriptor.id in seen:
                logger.warning(
                    "Book %s lists document %s twice; keeping the first",
                    book_id,
                    descriptor.id,
                )
                continue
            seen.add(descriptor.id)
            local = local_docs.get(descriptor.id)
            status = derive_status(local, descriptor)
            comparison.listed.append(
                (descriptor, local, descriptor.to_document(local, status))
            )

        comparison.vanished = [
            doc
            for doc in local_docs.values()
            if doc.id not in seen and doc.sync_status != SyncStatus.DELETED
        ]
        return comparison

    def _fetch_task(
        self,
        descriptor: RemoteDescriptor,
        local: Document | None,
        document: Document,
        force: bool,
    ) -> SyncTask | None:
        status = document.sync_status
        if document.ignored:
            return None
        if force:
            reason = SyncStatus.NEW if local is None else SyncStatus.MODIFIED
        elif is_fetch_eligible(status, self._retry_failed):
            reason = status
        else:
            return None
        return SyncTask(
            document_id=document.id,
            book_id=document.book_id,
            action=TaskAction.FETCH,
            reason=reason,
            title=document.title,
            descriptor=descriptor,
        )
