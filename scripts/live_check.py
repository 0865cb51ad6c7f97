#!/usr/bin/env python3
"""
MCP Tool Live Check

Runs the kb_* tools against a live knowledge-base account, mirroring into a
throwaway cache directory, and prints a pass/fail line per check.

Features:
- Connectivity (ping) and listing of knowledge bases
- Change detection and dry-run planning
- A real sync of one knowledge base, then tree, stats and history
- Error handling for unknown documents and missing checkpoints
"""

import argparse
import asyncio
import logging
import sys
import tempfile
from dataclasses import dataclass, field

import mcp.types as types
from dotenv import load_dotenv

from kb_mirror import __version__ as PACKAGE_VERSION
from kb_mirror.config import Config, load_config
from kb_mirror.core.client import RemoteClient
from kb_mirror.mcp.lifespan import build_service
from kb_mirror.mcp.server import PING_SPEC
from kb_mirror.mcp.tools import ALL_SPECS
from kb_mirror.mcp.tools.registry import ToolRegistry


@dataclass
class CheckResult:
    """Result of a single check"""

    tool: str
    test_name: str
    passed: bool
    response: str = ""
    structured_content: dict | None = None


@dataclass
class CheckReport:
    results: list[CheckResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.passed)


class LiveChecker:
    """Exercise the MCP tools against a live remote"""

    def __init__(self, config: Config, book_id: str | None, verbose: bool = False):
        self.config = config
        self.client = RemoteClient(config)
        self.service = build_service(self.client, config)
        self.registry = ToolRegistry([PING_SPEC] + ALL_SPECS)
        self.book_id = book_id
        self.verbose = verbose
        self.report = CheckReport()

    async def _call_tool(
        self, tool_name: str, arguments: dict | None = None
    ) -> types.CallToolResult:
        return await self.registry.call_tool(
            tool_name, arguments or {}, self.service
        )

    def _record(
        self, tool: str, test_name: str, result: types.CallToolResult, passed: bool
    ) -> None:
        text = "\n".join(
            c.text for c in result.content if isinstance(c, types.TextContent)
        )
        check = CheckResult(
            tool=tool,
            test_name=test_name,
            passed=passed,
            response=text,
            structured_content=result.structuredContent,
        )
        self.report.results.append(check)
        print(f"  [{'PASS' if passed else 'FAIL'}] {tool}.{test_name}")
        if self.verbose or not passed:
            for line in text.splitlines()[:10]:
                print(f"         {line}")

    async def check_connectivity(self):
        print("\n=== Phase 1: Connectivity ===")
        result = await self._call_tool("ping")
        self._record("ping", "connectivity", result, not result.isError)
        books = (result.structuredContent or {}).get("books", [])
        if self.book_id is None and books:
            self.book_id = books[0]["id"]

    async def check_planning(self):
        print("\n=== Phase 2: Planning ===")
        args = {"book_ids": [self.book_id]}
        result = await self._call_tool("kb_sync_changes", args)
        self._record("kb_sync_changes", "detect", result, not result.isError)

        result = await self._call_tool("kb_sync_start", {**args, "dry_run": True})
        self._record("kb_sync_start", "dry_run", result, not result.isError)

    async def check_sync(self):
        print("\n=== Phase 3: Sync ===")
        result = await self._call_tool(
            "kb_sync_start", {"book_ids": [self.book_id], "wait": True}
        )
        self._record("kb_sync_start", "wait", result, not result.isError)

        for tool in ("kb_tree", "kb_stats", "kb_sync_history", "kb_failed_list"):
            result = await self._call_tool(tool)
            self._record(tool, "after_sync", result, not result.isError)

    async def check_errors(self):
        print("\n=== Phase 4: Error handling ===")
        result = await self._call_tool(
            "kb_failed_retry", {"document_id": "no-such-document"}
        )
        self._record("kb_failed_retry", "unknown_document", result, bool(result.isError))

        result = await self._call_tool("kb_interrupted_resume", {"session_id": 999999})
        self._record("kb_interrupted_resume", "missing_checkpoint", result, bool(result.isError))

        result = await self._call_tool("kb_sync_start", {"book_ids": []})
        self._record("kb_sync_start", "empty_book_list", result, bool(result.isError))

    async def run_all(self) -> bool:
        await self.check_connectivity()
        if self.book_id is None:
            print("No knowledge base visible; skipping sync checks.")
        else:
            await self.check_planning()
            await self.check_sync()
        await self.check_errors()
        await self.service.close()
        return self.report.failed == 0


async def async_main(args) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s - %(name)s - %(message)s",
    )

    print(f"\n{'=' * 70}")
    print(f"{'MCP Tool Live Check':^70}")
    print(f"{'kb-mirror ' + PACKAGE_VERSION:^70}")
    print(f"{'=' * 70}")

    load_dotenv()
    with tempfile.TemporaryDirectory(prefix="kb-mirror-live-") as cache_root:
        try:
            config = load_config(
                url=args.url,
                cookie=args.cookie,
                cache_root=args.cache_root or cache_root,
                insecure=args.insecure,
            )
        except ValueError as e:
            print(f"\nConfiguration error: {e}")
            return 1

        checker = LiveChecker(config, args.book_id, verbose=args.verbose)
        success = await checker.run_all()

    print(f"\n{'=' * 70}")
    print(f"Total: {checker.report.total} | Failed: {checker.report.failed}")
    return 0 if success else 1


def main():
    parser = argparse.ArgumentParser(
        description="Run the kb_* MCP tools against a live knowledge-base account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                         # Use KB_MIRROR_URL / KB_MIRROR_COOKIE
  %(prog)s --book-id 42 --verbose  # Sync one specific knowledge base
        """,
    )
    parser.add_argument("--url", help="Override remote URL")
    parser.add_argument("--cookie", help="Override session cookie")
    parser.add_argument("--book-id", help="Knowledge base to sync (default: first listed)")
    parser.add_argument("--cache-root", help="Keep the mirror in this directory")
    parser.add_argument("--insecure", action="store_true", help="Skip SSL verification")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()
    sys.exit(asyncio.run(async_main(args)))


if __name__ == "__main__":
    main()
