"""Local mirror of remote knowledge bases, exposed as an MCP server."""

__version__ = "0.1.0"
