"""Tool table shared by ``list_tools`` and ``call_tool``.

With ``--read-only`` the server only registers tools that never write to
the mirror, its state directory or the failure ledger.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import mcp.types as types

from ...sync.errors import SyncError
from ...sync.service import SyncService
from .errors import build_error_response, translate_sync_error

logger = logging.getLogger(__name__)

Handler = Callable[[SyncService, dict], Awaitable[types.CallToolResult]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """A tool definition, the coroutine serving it and whether it only reads."""

    tool: types.Tool
    handler: Handler
    read_only: bool = True


class ToolRegistry:
    """Name-keyed ToolSpecs; mutating ones are dropped when *read_only*."""

    def __init__(self, specs: list[ToolSpec], read_only: bool = False):
        self._specs: dict[str, ToolSpec] = {
            spec.tool.name: spec for spec in specs if spec.read_only or not read_only
        }

    def list_tools(self) -> list[types.Tool]:
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        service: SyncService,
    ) -> types.CallToolResult:
        """Run the handler for *name* and turn its failures into error results.

        SyncError subclasses map to their own error types, ValueError to
        ``validation_error`` and anything else to ``server_error``.  A name
        that is not registered (including one hidden by read-only mode)
        raises ValueError for the caller to report.
        """
        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        try:
            return await spec.handler(service, arguments or {})
        except SyncError as e:
            logger.warning("Sync error in %s: %s", name, e)
            return translate_sync_error(e)
        except ValueError as e:
            return build_error_response(
                "validation_error", str(e), "Check parameter values and retry."
            )
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return build_error_response(
                "server_error", str(e), "Check the server log or retry later."
            )
