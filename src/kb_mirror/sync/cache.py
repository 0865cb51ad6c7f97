"""Local file cache of downloaded documents.

Layout: ``<root>/<book_id>/<document_id>.md``.  Paths depend only on
document identity, so a renamed document keeps its file and two documents
with the same title never collide.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..file_handler import (
    directory_size,
    read_file_with_encoding,
    sanitize_filename,
    validate_output_path,
    write_bytes_atomic,
)
from .errors import LocalWriteError

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".md"


class LocalCache:
    """Filesystem implementation of the ``CacheWriter`` protocol.

    Args:
        root: Cache root directory; created on first write.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, book_id: str, document_id: str) -> Path:
        return (
            self.root
            / sanitize_filename(book_id)
            / f"{sanitize_filename(document_id)}{DOCUMENT_SUFFIX}"
        )

    def write(self, book_id: str, document_id: str, content: bytes) -> str:
        """Store *content* for a document and return its path.

        Raises:
            LocalWriteError: The file could not be written (disk full,
                permissions, path escaping the cache root).
        """
        path = self.path_for(book_id, document_id)
        try:
            resolved = validate_output_path(path, self.root)
            write_bytes_atomic(resolved, content)
        except (OSError, ValueError) as exc:
            raise LocalWriteError(
                f"Cannot write document {document_id}: {exc}", path=str(path)
            ) from exc
        logger.debug("Wrote %d bytes to %s", len(content), resolved)
        return str(resolved)

    def read(self, path: str | Path) -> str:
        """Return the text of a cached document, decoding it as detected."""
        content, _encoding = read_file_with_encoding(Path(path))
        return content

    def size_bytes(self) -> int:
        return directory_size(self.root)
