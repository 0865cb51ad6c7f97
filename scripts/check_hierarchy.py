#!/usr/bin/env python3
"""Print the mirrored document tree of a cache root and report parent cycles."""

import argparse
import sys
from pathlib import Path

from kb_mirror.config import STATE_DIR_NAME
from kb_mirror.sync.errors import RepositoryError
from kb_mirror.sync.hierarchy import build_tree, find_parent_cycles
from kb_mirror.sync.reporter import format_tree
from kb_mirror.sync.repository import DocumentStore


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("cache_root", help="Cache root directory of the mirror")
    parser.add_argument("--book-id", help="Only show one knowledge base")
    parser.add_argument(
        "--state-dir",
        help=f"State directory (default: <cache_root>/{STATE_DIR_NAME})",
    )
    args = parser.parse_args()

    state_dir = (
        Path(args.state_dir).expanduser()
        if args.state_dir
        else Path(args.cache_root).expanduser() / STATE_DIR_NAME
    )
    try:
        documents = DocumentStore(state_dir).list(args.book_id)
    except RepositoryError as e:
        print(f"Cannot read documents: {e}", file=sys.stderr)
        return 1

    if not documents:
        print("No documents.")
        return 0

    print(format_tree(build_tree(documents)))

    cycles = find_parent_cycles(documents)
    if cycles:
        print(f"\n{len(cycles)} parent cycle(s):")
        for cycle in cycles:
            print(f"  {' -> '.join(cycle)}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
