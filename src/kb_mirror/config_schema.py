"""pydantic models for the ``remote``, ``sync`` and ``logging`` sections of
config.yml, and the conversions from them to the runtime ``Config``.

    settings = build_config(load_hierarchical_config())
    fallbacks = to_fallbacks(settings)   # for config.load_config()
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .config import DEFAULT_CACHE_ROOT, Config


class RemoteConfig(BaseModel):
    """``remote:``. Every field may be left out; the environment or the
    command line can provide url and cookie instead."""

    url: str | None = Field(default=None, description="Remote host URL")
    cookie: str | None = Field(
        default=None, description="Session cookie header value"
    )
    insecure: bool = Field(
        default=False,
        description="Skip TLS certificate checks",
    )
    debug: bool = Field(default=False, description="Log at DEBUG level")
    linebreak: bool = Field(
        default=False, description="Keep soft line breaks in markdown export"
    )
    latexcode: bool = Field(
        default=False, description="Export formulas as LaTeX source"
    )
    timeout: float = Field(
        default=30.0, gt=0, description="HTTP timeout in seconds"
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """``sync:``"""

    cache_root: str | None = Field(
        default=None, description="Directory receiving downloaded documents"
    )
    state_dir: str | None = Field(
        default=None, description="Directory holding engine state files"
    )
    max_concurrency: int = Field(
        default=3, ge=1, le=16, description="Worker tasks per session (1-16)"
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for transient fetch errors (0-10)",
    )
    retry_backoff: float = Field(default=0.5, ge=0)
    task_timeout: float = Field(default=120.0, gt=0)
    checkpoint_interval: int = Field(default=5, ge=1)
    history_limit: int = Field(default=50, ge=1)
    retry_failed: bool = Field(
        default=False,
        description="Re-fetch failed documents without an explicit retry",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """``logging:``; LOG_LEVEL and LOG_FILE in the environment take precedence."""

    level: str = Field(default="INFO", description="Level name such as DEBUG or ERROR")
    file: str | None = Field(default=None, description="Server log file")
    json_format: bool = Field(default=False, description="JSON log lines")

    model_config = {"frozen": True}


class UnifiedConfig(BaseModel):
    """Whole config file. ``UnifiedConfig()`` is valid; unknown sections are ignored."""

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Validate the merged dict from ``load_hierarchical_config()``."""
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the ``remote`` and ``sync`` sections into the fallback dict
    accepted by ``config.load_config()``; unset (``None``) values are dropped.
    """
    merged = {**unified.remote.model_dump(), **unified.sync.model_dump()}
    return {k: v for k, v in merged.items() if v is not None}


def to_runtime_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """
    Build a ``Config`` from the file settings alone, without the environment.

    Keys of *cli_overrides* (url, cookie, cache_root, insecure, debug) win
    over the file.  The result is not validated; see ``validate_config()``.
    """
    overrides = cli_overrides or {}
    remote = unified.remote
    sync = unified.sync

    return Config(
        url=overrides.get("url") or remote.url or "",
        cookie=overrides.get("cookie") or remote.cookie or "",
        cache_root=overrides.get("cache_root")
        or sync.cache_root
        or DEFAULT_CACHE_ROOT,
        state_dir=sync.state_dir or "",
        insecure=overrides.get("insecure", False) or remote.insecure,
        debug=overrides.get("debug", False) or remote.debug,
        timeout=remote.timeout,
        linebreak=remote.linebreak,
        latexcode=remote.latexcode,
        max_concurrency=sync.max_concurrency,
        max_retries=sync.max_retries,
        retry_backoff=sync.retry_backoff,
        task_timeout=sync.task_timeout,
        checkpoint_interval=sync.checkpoint_interval,
        history_limit=sync.history_limit,
        retry_failed=sync.retry_failed,
    )
