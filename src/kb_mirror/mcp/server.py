"""stdio entry point of ``kb-mirror-server``.

Registers the ``ping`` tool plus the sync tools, reads CLI flags and runs
the MCP session until the client disconnects.  stdout belongs to the
JSON-RPC stream; every human-readable message goes to stderr or the log.
"""

import argparse
import asyncio
import logging
import os
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config_loader import (
    discover_config_files,
    ensure_config,
    load_hierarchical_config,
)
from ..config_schema import LoggingConfig, build_config
from ..core.async_utils import run_sync
from ..core.client import RemoteClient
from ..logger import DEFAULT_LOG_FILE, setup_logging
from ..sync.service import SyncService
from .lifespan import server_lifespan
from .tools import ALL_SPECS, ToolRegistry, build_error_response
from .tools.registry import ToolSpec

logger = logging.getLogger(__name__)

SERVER_NAME = "kb-mirror-server"

server = Server(SERVER_NAME)

# Set by main() for the lifetime of the server process
_client: RemoteClient | None = None
_service: SyncService | None = None
_registry: ToolRegistry | None = None


async def _handle_ping(service: SyncService, args: dict) -> types.CallToolResult:
    try:
        books = await run_sync(service.listing.list_books)
    except Exception as e:
        message = (
            f"Remote connection failed: {e}. "
            "Check KB_MIRROR_URL and KB_MIRROR_COOKIE."
        )
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=message)],
            isError=True,
        )
    summary = f"kb-mirror is connected. {len(books)} knowledge base(s) visible."
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=summary)],
        structuredContent={"books": [b.model_dump(mode="json") for b in books]},
    )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Check the remote session and list the visible knowledge bases",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    handler=_handle_ping,
)


def _require(value, what: str):
    if value is None:
        raise RuntimeError(f"{what} not initialized; the server is not running.")
    return value


def get_client() -> RemoteClient:
    return _require(_client, "RemoteClient")


def set_client(client: RemoteClient | None) -> None:
    global _client
    _client = client


def get_service() -> SyncService:
    return _require(_service, "SyncService")


def set_service(service: SyncService | None) -> None:
    global _service
    _service = service


def get_registry() -> ToolRegistry:
    return _require(_registry, "ToolRegistry")


def set_registry(registry: ToolRegistry | None) -> None:
    global _registry
    _registry = registry


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(name: str, arguments: dict | None) -> types.CallToolResult:
    """Dispatch through the registry; unregistered names become ``unknown_tool``."""
    service = get_service()
    try:
        return await get_registry().call_tool(name, arguments, service)
    except ValueError as e:
        return build_error_response(
            "unknown_tool", str(e), "Use list_tools to see available tools."
        )


def _file_logging_config() -> LoggingConfig:
    """``logging`` section of the config files, or defaults.

    Errors only produce a note here; the lifespan reports them as fatal.
    """
    if not discover_config_files():
        return LoggingConfig()
    try:
        return build_config(load_hierarchical_config()).logging
    except Exception as e:
        print(f"Ignoring logging section of config file: {e}", file=sys.stderr)
        return LoggingConfig()


async def main(config_overrides: dict | None = None):
    """
    Serve one MCP session over stdio.

    Args:
        config_overrides: Values from the command line: ``url``, ``cookie``,
            ``cache_root``, ``insecure``, ``debug``, ``log_file`` and
            ``read_only``.
    """
    overrides = config_overrides or {}
    log_settings = _file_logging_config()

    # Must run before stdio_server() takes over stdout
    setup_logging(
        mode="mcp",
        debug=overrides.get("debug", False),
        log_file=overrides.get("log_file") or os.getenv("LOG_FILE") or log_settings.file,
        debug_format="json" if log_settings.json_format else "text",
        level=log_settings.level,
    )

    specs = [PING_SPEC, *ALL_SPECS]
    read_only = overrides.get("read_only", False)
    registry = ToolRegistry(specs, read_only=read_only)
    logger.info("%d of %d tools enabled", registry.tool_count(), len(specs))
    if read_only:
        print(
            f"Read-only mode: {registry.tool_count()} of {len(specs)} tools enabled",
            file=sys.stderr,
        )
    set_registry(registry)

    # The globals are set here and not in the lifespan: under ``python -m``
    # this module is __main__, a different object from kb_mirror.mcp.server.
    async with server_lifespan(config_overrides=overrides) as ctx:
        set_client(ctx["client"])
        set_service(ctx["service"])
        options = InitializationOptions(
            server_name=SERVER_NAME,
            server_version=__version__,
            capabilities=server.get_capabilities(
                notification_options=NotificationOptions(),
                experimental_capabilities={},
            ),
        )
        try:
            async with mcp.server.stdio.stdio_server() as (reader, writer):
                await server.run(reader, writer, options)
        finally:
            set_service(None)
            set_client(None)
            set_registry(None)


_EPILOG = """
Settings are read from the command line, then KB_MIRROR_* environment
variables (a .env file is loaded), then .kb_mirror/config.yml or
~/.config/kb_mirror/config.yml.

  kb-mirror-server
  kb-mirror-server --url https://kb.example.com --cache-root ~/notes/kb
  kb-mirror-server --read-only --log-file /var/log/kb-mirror.log

stdin and stdout carry the MCP protocol; messages for people go to stderr.
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="MCP server that mirrors remote knowledge bases as local Markdown",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_EPILOG,
    )
    parser.add_argument("--url", help="Remote base URL (overrides KB_MIRROR_URL)")
    parser.add_argument(
        "--cookie",
        help="Session cookie (overrides KB_MIRROR_COOKIE; shows up in the process list)",
    )
    parser.add_argument(
        "--cache-root", help="Directory the documents are mirrored into (default: ~/kb_mirror)"
    )
    parser.add_argument(
        "--insecure", action="store_true", help="Do not verify TLS certificates"
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Hide tools that start syncs or change the failure ledger",
    )
    parser.add_argument(
        "--log-file",
        help=f"Log file (default: LOG_FILE, the config file, then {DEFAULT_LOG_FILE})",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a starter .kb_mirror/config.yml unless a config file exists, then exit",
    )
    parser.add_argument(
        "--version", action="version", version=f"{SERVER_NAME} {__version__}"
    )
    return parser


def _cli_overrides(args: argparse.Namespace) -> dict:
    values = {
        "url": args.url,
        "cookie": args.cookie,
        "cache_root": args.cache_root,
        "log_file": args.log_file,
    }
    overrides = {key: value for key, value in values.items() if value}
    for flag in ("insecure", "debug", "read_only"):
        if getattr(args, flag):
            overrides[flag] = True
    return overrides


def run() -> None:
    """Console script: parse the command line and serve until EOF."""
    args = _build_parser().parse_args()

    if args.init_config:
        print(f"Config file: {ensure_config()}", file=sys.stderr)
        return

    overrides = _cli_overrides(args)
    if overrides:
        shown = sorted(key for key in overrides if key != "cookie")
        print(f"Command-line overrides: {', '.join(shown)}", file=sys.stderr)

    try:
        asyncio.run(main(config_overrides=overrides or None))
    except RuntimeError:
        # The lifespan has already explained the failure on stderr
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
