import logging
import threading
from typing import Any

import requests

from ..config import Config
from ..sync.errors import AuthExpiredError, FetchError, TransientFetchError
from ..sync.models import BookInfo, RemoteDescriptor

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) kb-mirror/1.0"
)
CONNECT_TIMEOUT = 10

BOOK_STACKS_PATH = "/api/mine/book_stacks"
COLLAB_BOOKS_PATH = "/api/mine/raw_collab_books"
DOCS_PATH = "/api/docs"
ACCOUNT_PATH = "/api/mine"


class RemoteClient:
    """HTTP client of the remote knowledge-base service.

    Implements the ``RemoteListing`` protocol (``list_books`` / ``fetch``)
    and provides ``fetch_content`` for ``ClientContentFetcher``.  Each
    worker thread gets its own ``requests.Session``.
    """

    def __init__(self, config: Config):
        self.config = config
        self.base_url = config.url.rstrip("/")
        self._thread_local = threading.local()
        self._books: dict[str, BookInfo] = {}
        self._books_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """Return the current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "content-type": "application/json",
                "x-requested-with": "XMLHttpRequest",
                "user-agent": USER_AGENT,
                "cookie": self.config.cookie,
            }
        )
        session.verify = not self.config.insecure
        return session

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self, path: str, params: dict[str, Any] | None = None
    ) -> requests.Response:
        """
        GET *path* and map transport failures onto the sync error taxonomy.

        Raises:
            AuthExpiredError: HTTP 401/403.
            TransientFetchError: Connection errors, timeouts and HTTP 5xx.
            FetchError: Any other HTTP error.
        """
        url = f"{self.base_url}{path}"
        try:
            response = self._get_session().get(
                url,
                params=params,
                timeout=(CONNECT_TIMEOUT, self.config.timeout),
            )
        except requests.Timeout as e:
            raise TransientFetchError(f"Request to {path} timed out") from e
        except requests.ConnectionError as e:
            raise TransientFetchError(
                f"Connection to {self.base_url} failed: {e}"
            ) from e
        except requests.RequestException as e:
            raise FetchError(f"Request to {path} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthExpiredError(
                f"Remote rejected the session cookie (HTTP {status}). "
                "Log in again and update KB_MIRROR_COOKIE."
            )
        if status >= 500:
            raise TransientFetchError(
                f"Remote error HTTP {status} for {path}", status_code=status
            )
        if status >= 400:
            raise FetchError(f"HTTP {status} for {path}", status_code=status)
        return response

    def _get_json(
        self, path: str, params: dict[str, Any] | None = None
    ) -> Any:
        response = self._request(path, params)
        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {path}") from e
        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected response shape from {path}")
        return payload.get("data")

    # ------------------------------------------------------------------
    # Books and listings
    # ------------------------------------------------------------------

    def list_books(self) -> list[BookInfo]:
        """
        Return personal and collaborative knowledge bases, deduplicated by id.

        A failing collaborative listing is logged and skipped; the
        personal listing must succeed.
        """
        books: list[BookInfo] = []
        for stack in self._get_json(BOOK_STACKS_PATH) or []:
            books.extend(_parse_book(item) for item in stack.get("books", []))

        try:
            collab = self._get_json(COLLAB_BOOKS_PATH) or []
        except AuthExpiredError:
            raise
        except FetchError as e:
            logger.warning("Failed to fetch collaborative books: %s", e)
            collab = []
        books.extend(_parse_book(item) for item in collab)

        unique: dict[str, BookInfo] = {}
        for book in books:
            unique.setdefault(book.id, book)
        with self._books_lock:
            self._books.update(unique)
        logger.info("Listed %d knowledge bases", len(unique))
        return list(unique.values())

    def fetch(self, book_id: str) -> list[RemoteDescriptor]:
        """
        Return the documents of *book_id* in remote listing order.
        """
        items = self._get_json(DOCS_PATH, {"book_id": book_id}) or []
        return [
            _parse_descriptor(book_id, item, index)
            for index, item in enumerate(items)
        ]

    def fetch_content(self, descriptor: RemoteDescriptor) -> bytes:
        """
        Download the markdown export of one document.
        """
        book = self._book(descriptor.book_id)
        path = f"/{book.user_login}/{book.slug}/{descriptor.slug}/markdown"
        params = {
            "attachment": "true",
            "latexcode": str(self.config.latexcode).lower(),
            "anchor": "false",
            "linebreak": str(self.config.linebreak).lower(),
        }
        return self._request(path, params).content

    def validate_connection(self) -> str:
        """
        Validate the session cookie; returns the account login.
        """
        data = self._get_json(ACCOUNT_PATH) or {}
        return str(data.get("login", ""))

    def _book(self, book_id: str) -> BookInfo:
        with self._books_lock:
            book = self._books.get(book_id)
        if book is None:
            self.list_books()
            with self._books_lock:
                book = self._books.get(book_id)
        if book is None:
            raise FetchError(f"Unknown knowledge base {book_id}")
        return book


class ClientContentFetcher:
    """Expose ``RemoteClient.fetch_content`` as a ``ContentFetcher``."""

    def __init__(self, client: RemoteClient):
        self._client = client

    def fetch(self, descriptor: RemoteDescriptor) -> bytes:
        return self._client.fetch_content(descriptor)


def _parse_book(item: dict[str, Any]) -> BookInfo:
    user = item.get("user") or {}
    return BookInfo(
        id=str(item["id"]),
        slug=item.get("slug", ""),
        name=item.get("name", ""),
        user_login=user.get("login", ""),
        doc_count=int(item.get("items_count") or 0),
    )


def _parse_descriptor(
    book_id: str, item: dict[str, Any], index: int
) -> RemoteDescriptor:
    if "id" not in item:
        raise FetchError(f"Listing entry of book {book_id} has no id")
    return RemoteDescriptor(
        id=str(item["id"]),
        book_id=str(book_id),
        uuid=item.get("uuid") or None,
        parent_uuid=item.get("parent_uuid") or None,
        sort_order=int(item.get("sort_order", index)),
        doc_type=item.get("type") or "DOC",
        title=item.get("title") or "",
        slug=item.get("slug") or "",
        depth=int(item.get("depth") or 0),
        updated_at=item.get("content_updated_at") or item.get("updated_at"),
        content_hash=item.get("content_hash"),
    )
