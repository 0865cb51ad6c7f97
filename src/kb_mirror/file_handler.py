"""File handler module: filename sanitising, atomic writes, encoding-aware reads.

Provides the file I/O infrastructure of the local document cache.
All functions are synchronous; the sync session calls them from worker
threads via run_sync().
"""

import os
import re
import tempfile
from pathlib import Path

from charset_normalizer import from_bytes

# =============================================================================
# Path Handling
# =============================================================================

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
_MAX_NAME_LENGTH = 200


def sanitize_filename(name: str) -> str:
    """Make *name* safe to use as a single path component.

    Characters that are invalid on common filesystems are replaced with
    ``_``.  Trailing dots and spaces (rejected on Windows) are removed and
    the result is never empty, ``.`` or ``..``.

    Args:
        name: Raw name, e.g. a document id or title.

    Returns:
        Sanitised file name component.
    """
    cleaned = _UNSAFE_CHARS.sub("_", name).strip().rstrip(". ")
    cleaned = cleaned[:_MAX_NAME_LENGTH]
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def validate_output_path(path: Path, base_dir: Path) -> Path:
    """Resolve *path* and make sure it stays inside *base_dir*.

    Args:
        path: Output file path (need not exist).
        base_dir: Directory the output must live under.

    Returns:
        Resolved Path object for the output file.

    Raises:
        ValueError: If the resolved path is outside base_dir.
    """
    resolved = path.resolve()
    base_resolved = base_dir.resolve()
    if not resolved.is_relative_to(base_resolved):
        raise ValueError(
            f"Output path is outside base directory: {resolved} not under {base_resolved}"
        )
    return resolved


# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    Defaults to UTF-8 for empty files or when detection fails.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        # Detection failed, fall back to utf-8
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        # Normalize ascii to utf-8 (ascii is a strict subset of utf-8)
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content, encoding)


def write_bytes_atomic(path: Path, content: bytes) -> int:
    """Write *content* to *path* via a temp file and ``os.replace``.

    Parent directories are created as needed.  Readers see either the old
    file or the complete new one.

    Args:
        path: Path to the output file.
        content: Raw bytes to write.

    Returns:
        Number of bytes written.

    Raises:
        OSError: The directory or file cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".part")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(content)


def directory_size(root: Path) -> int:
    """Return the total size in bytes of regular files below *root*."""
    if not root.exists():
        return 0
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, filename))
            except OSError:
                # File vanished between listing and stat.
                continue
    return total
