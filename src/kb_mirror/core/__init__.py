"""Core remote client functionality shared between the sync engine and MCP server."""

from .async_utils import run_sync, run_sync_timeout
from .client import ClientContentFetcher, RemoteClient

__all__ = ["ClientContentFetcher", "RemoteClient", "run_sync", "run_sync_timeout"]
