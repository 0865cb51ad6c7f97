"""Startup and shutdown of the sync service around one MCP session."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from ..config import Config, load_config
from ..config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from ..config_schema import build_config, to_fallbacks
from ..core.async_utils import run_sync
from ..core.client import ClientContentFetcher, RemoteClient
from ..sync.cache import LocalCache
from ..sync.service import SyncService
from ..sync.session import SessionOptions

logger = logging.getLogger(__name__)

_CREDENTIALS_HINT = "Check KB_MIRROR_URL and KB_MIRROR_COOKIE."


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def build_service(client: RemoteClient, config: Config) -> SyncService:
    """Wire a SyncService for the configured cache root."""
    options = SessionOptions(
        concurrency=config.max_concurrency,
        max_retries=config.max_retries,
        retry_backoff=config.retry_backoff,
        task_timeout=config.task_timeout,
        checkpoint_interval=config.checkpoint_interval,
    )
    return SyncService(
        client,
        ClientContentFetcher(client),
        LocalCache(config.cache_path),
        config.state_path,
        options=options,
        retry_failed=config.retry_failed,
        history_limit=config.history_limit,
    )


def _load_settings(overrides: dict[str, Any]) -> tuple[Config, list[str]]:
    """Resolve the Config and describe where its values came from."""
    # .env first so config files can reference its variables
    load_dotenv()

    sources: list[str] = []
    yaml_fallbacks: dict[str, Any] | None = None
    config_files = discover_config_files()
    if config_files:
        yaml_fallbacks = to_fallbacks(build_config(load_hierarchical_config()))
        sources.append(f"config file: {config_files[0]}")

    config = load_config(
        url=overrides.get("url"),
        cookie=overrides.get("cookie"),
        cache_root=overrides.get("cache_root"),
        insecure=overrides.get("insecure", False),
        debug=overrides.get("debug", False),
        yaml_fallbacks=yaml_fallbacks,
    )
    if overrides:
        sources.append("CLI arguments")
    sources.append("environment variables")
    return config, sources


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Bring the service up, yield it, and close it afterwards.

    Startup resolves settings (command line, then environment and ``.env``,
    then config files, then defaults), checks the session cookie against
    the remote, and recovers sessions a previous process left marked as
    running.  Shutdown cancels any active session and waits for its last
    checkpoint.

    Yields:
        ``{"client": RemoteClient, "service": SyncService}``

    Raises:
        RuntimeError: Bad settings, a rejected connection, or an unreadable
            state directory.  The details are printed to stderr first.
    """
    logger.info("Server starting")
    _stderr_print("kb-mirror server starting...")

    try:
        config, sources = _load_settings(config_overrides or {})
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print("  Set KB_MIRROR_URL and KB_MIRROR_COOKIE, or add them to a config file.")
        raise RuntimeError(f"Configuration error: {e}. {_CREDENTIALS_HINT}") from e

    described = ", ".join(sources)
    logger.info("Settings from %s; remote %s", described, config.url)
    _stderr_print(f"  Configuration loaded from: {described}")
    _stderr_print(f"  Remote URL: {config.url}")
    _stderr_print(f"  Cache root: {config.cache_path}")

    _stderr_print("  Checking the remote session...")
    try:
        client = RemoteClient(config)
        login = await run_sync(client.validate_connection)
    except Exception as e:
        logger.error("Remote connection failed: %s", e)
        _stderr_print(f"ERROR: Remote connection failed: {e}")
        _stderr_print(f"  {_CREDENTIALS_HINT}")
        raise RuntimeError(f"Remote connection failed: {e}. {_CREDENTIALS_HINT}") from e
    logger.info("Connected to %s as %s", config.url, login)
    _stderr_print(f"  Connected as {login or 'unknown user'}")

    try:
        service = build_service(client, config)
        recovered = service.recover()
    except Exception as e:
        logger.error("Cannot open sync state in %s: %s", config.state_path, e)
        _stderr_print(f"ERROR: Cannot open sync state in {config.state_path}: {e}")
        raise RuntimeError(f"Cannot open sync state: {e}") from e

    if recovered:
        _stderr_print(
            f"  Recovered {len(recovered)} interrupted session(s); "
            "kb_interrupted_resume continues the latest."
        )
    _stderr_print(f"  Concurrency: {config.max_concurrency}")
    _stderr_print("Ready; waiting for the MCP client.")

    try:
        yield {"client": client, "service": service}
    finally:
        logger.info("Server shutting down")
        await service.close()
        _stderr_print("kb-mirror server shutting down.")
