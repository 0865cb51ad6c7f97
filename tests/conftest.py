"""Shared pytest fixtures for kb-mirror tests."""

import threading
from collections.abc import Callable
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from dotenv import load_dotenv

from kb_mirror.config import Config
from kb_mirror.sync.cache import LocalCache
from kb_mirror.sync.errors import FetchError
from kb_mirror.sync.ledger import FailedItemLedger
from kb_mirror.sync.models import BookInfo, RemoteDescriptor
from kb_mirror.sync.repository import (
    DocumentStore,
    FailedDocStore,
    SessionHistoryStore,
)
from kb_mirror.sync.state import CheckpointStore

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live knowledge-base account",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live knowledge-base account"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        # --run-live given: do not skip live tests
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def ts(seconds: int) -> datetime:
    """UTC datetime for a Unix timestamp."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def descriptor(doc_id: str, book_id: str = "b1", **fields) -> RemoteDescriptor:
    """Create a RemoteDescriptor with sensible defaults."""
    fields.setdefault("title", f"Doc {doc_id}")
    fields.setdefault("slug", f"slug-{doc_id}")
    fields.setdefault("updated_at", ts(1_000))
    return RemoteDescriptor(id=doc_id, book_id=book_id, **fields)


class FakeListing:
    """In-memory RemoteListing.

    ``books`` maps book id to its listing; ``errors`` maps book id to the
    exception ``fetch`` raises.
    """

    def __init__(self, books=None, errors=None):
        self.books: dict[str, list[RemoteDescriptor]] = dict(books or {})
        self.errors: dict[str, Exception] = dict(errors or {})
        self.fetch_calls: list[str] = []

    def list_books(self) -> list[BookInfo]:
        return [
            BookInfo(id=book_id, slug=f"book-{book_id}", name=book_id)
            for book_id in self.books
        ]

    def fetch(self, book_id: str) -> list[RemoteDescriptor]:
        self.fetch_calls.append(book_id)
        if book_id in self.errors:
            raise self.errors[book_id]
        if book_id not in self.books:
            raise FetchError(f"Book {book_id} not found", status_code=404)
        return list(self.books[book_id])


class FakeFetcher:
    """In-memory ContentFetcher.

    ``failures`` maps a document id to a list of exceptions raised on
    successive calls; once exhausted, content is returned.  ``hook`` runs
    (in the worker thread) before every fetch.
    """

    def __init__(self, failures=None, hook: Callable | None = None):
        self.failures: dict[str, list[Exception]] = {
            k: list(v) for k, v in (failures or {}).items()
        }
        self.hook = hook
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, descriptor: RemoteDescriptor) -> bytes:
        with self._lock:
            self.calls.append(descriptor.id)
            pending = self.failures.get(descriptor.id)
            error = pending.pop(0) if pending else None
        if self.hook is not None:
            self.hook(descriptor)
        if error is not None:
            raise error
        return f"# {descriptor.title}\n\nBody of {descriptor.id}\n".encode()


class Stores:
    """All JSON stores of one state directory."""

    def __init__(self, state_dir):
        self.documents = DocumentStore(state_dir)
        self.failed = FailedDocStore(state_dir)
        self.history = SessionHistoryStore(state_dir)
        self.checkpoints = CheckpointStore(state_dir)
        self.ledger = FailedItemLedger(self.documents, self.failed)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores(tmp_path):
    """JSON stores rooted in a temporary state directory."""
    return Stores(tmp_path / "state")


@pytest.fixture
def cache(tmp_path):
    """LocalCache rooted in a temporary directory."""
    return LocalCache(tmp_path / "cache")


@pytest.fixture
def mock_config(tmp_path):
    """Create a Config instance for testing."""
    return Config(
        url="https://kb.example.com",
        cookie="session=abc123",
        cache_root=str(tmp_path / "cache"),
        insecure=False,
    )


@pytest.fixture
def mock_remote_client(mock_config):
    """Create a mock RemoteClient instance for testing."""
    from kb_mirror.core.client import RemoteClient

    client = MagicMock(spec=RemoteClient)
    client.config = mock_config
    return client
