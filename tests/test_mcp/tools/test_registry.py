"""Tests for ToolSpec and ToolRegistry.

Covers:
- ToolSpec creation and immutability
- ToolRegistry read-only filtering
- ToolRegistry list_tools, tool_count, call_tool
- call_tool error translation (sync, validation, unexpected)
"""

import asyncio
import unittest
from unittest.mock import MagicMock

import mcp.types as types

from kb_mirror.mcp.tools import ALL_SPECS
from kb_mirror.mcp.tools.registry import ToolRegistry, ToolSpec
from kb_mirror.sync.errors import SessionActiveError


def _make_spec(name: str, read_only: bool = True, handler=None) -> ToolSpec:
    """Helper to create a ToolSpec for testing."""
    if handler is None:

        async def handler(service, args):
            return types.CallToolResult(
                content=[types.TextContent(type="text", text=f"ok:{name}")]
            )

    return ToolSpec(
        tool=types.Tool(
            name=name,
            description=f"Test tool {name}",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        handler=handler,
        read_only=read_only,
    )


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


class TestToolSpec(unittest.TestCase):
    """Test ToolSpec dataclass."""

    def test_creation(self):
        spec = _make_spec("test_tool")
        self.assertEqual(spec.tool.name, "test_tool")
        self.assertTrue(spec.read_only)
        self.assertIsNotNone(spec.handler)

    def test_frozen(self):
        """ToolSpec is immutable (frozen dataclass)."""
        spec = _make_spec("test_tool")
        with self.assertRaises(AttributeError):
            spec.read_only = False


class TestToolRegistry(unittest.TestCase):
    """Test ToolRegistry class."""

    def setUp(self):
        self.specs = [
            _make_spec("ping"),
            _make_spec("kb_sync_status"),
            _make_spec("kb_sync_start", read_only=False),
            _make_spec("kb_failed_clear", read_only=False),
            _make_spec("kb_tree"),
        ]

    def test_no_filter_all_tools_registered(self):
        registry = ToolRegistry(self.specs)
        self.assertEqual(registry.tool_count(), 5)

    def test_read_only_hides_mutating_tools(self):
        registry = ToolRegistry(self.specs, read_only=True)
        names = [t.name for t in registry.list_tools()]
        self.assertEqual(names, ["ping", "kb_sync_status", "kb_tree"])

    def test_list_tools_returns_tool_objects(self):
        for tool in ToolRegistry(self.specs).list_tools():
            self.assertIsInstance(tool, types.Tool)

    def test_call_tool_dispatches_to_handler(self):
        """call_tool() invokes the ToolSpec handler with (service, args)."""
        calls = []

        async def mock_handler(service, args):
            calls.append((service, args))
            return types.CallToolResult(
                content=[types.TextContent(type="text", text="dispatched")]
            )

        registry = ToolRegistry([_make_spec("test_dispatch", handler=mock_handler)])
        mock_service = MagicMock()

        result = asyncio.run(
            registry.call_tool("test_dispatch", {"key": "val"}, mock_service)
        )

        self.assertEqual(calls, [(mock_service, {"key": "val"})])
        self.assertEqual(_text(result), "dispatched")

    def test_call_tool_none_arguments(self):
        calls = []

        async def mock_handler(service, args):
            calls.append(args)
            return types.CallToolResult(
                content=[types.TextContent(type="text", text="ok")]
            )

        registry = ToolRegistry([_make_spec("none_args", handler=mock_handler)])
        asyncio.run(registry.call_tool("none_args", None, MagicMock()))
        self.assertEqual(calls, [{}])

    def test_call_tool_unknown_raises(self):
        registry = ToolRegistry(self.specs)
        with self.assertRaises(ValueError):
            asyncio.run(registry.call_tool("nope", {}, MagicMock()))

    def test_call_tool_filtered_out_raises(self):
        registry = ToolRegistry(self.specs, read_only=True)
        with self.assertRaises(ValueError):
            asyncio.run(registry.call_tool("kb_sync_start", {}, MagicMock()))

    def test_sync_error_translated(self):
        async def handler(service, args):
            raise SessionActiveError("Sync session 3 is already running")

        registry = ToolRegistry([_make_spec("busy", handler=handler)])
        result = asyncio.run(registry.call_tool("busy", {}, MagicMock()))
        self.assertTrue(result.isError)
        self.assertIn("Error (session_active)", _text(result))

    def test_value_error_is_validation_error(self):
        async def handler(service, args):
            raise ValueError("Limit must be an integer")

        registry = ToolRegistry([_make_spec("bad", handler=handler)])
        result = asyncio.run(registry.call_tool("bad", {}, MagicMock()))
        self.assertTrue(result.isError)
        self.assertIn("Error (validation_error): Limit must be an integer", _text(result))

    def test_unexpected_error_is_server_error(self):
        async def handler(service, args):
            raise RuntimeError("kaboom")

        registry = ToolRegistry([_make_spec("boom", handler=handler)])
        with self.assertLogs("kb_mirror.mcp.tools.registry", level="ERROR"):
            result = asyncio.run(registry.call_tool("boom", {}, MagicMock()))
        self.assertIn("Error (server_error): kaboom", _text(result))


class TestAllSpecs(unittest.TestCase):
    """The shipped tool set."""

    def test_names_unique(self):
        names = [spec.tool.name for spec in ALL_SPECS]
        self.assertEqual(len(names), len(set(names)))
        self.assertEqual(len(names), 14)

    def test_read_only_subset(self):
        registry = ToolRegistry(ALL_SPECS, read_only=True)
        names = {t.name for t in registry.list_tools()}
        self.assertEqual(
            names,
            {
                "kb_sync_status",
                "kb_sync_changes",
                "kb_sync_history",
                "kb_failed_list",
                "kb_interrupted_get",
                "kb_tree",
                "kb_stats",
            },
        )
