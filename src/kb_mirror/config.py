"""Runtime configuration for the mirror server.

Reads remote connection and sync settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    KB_MIRROR_URL: Remote knowledge-base host URL (required)
    KB_MIRROR_COOKIE: Session cookie sent with every request (required)
    KB_MIRROR_CACHE_ROOT: Directory receiving downloaded documents
        (optional, default: ~/kb_mirror)
    KB_MIRROR_STATE_DIR: Directory holding engine state
        (optional, default: <cache_root>/.kb_mirror)
    KB_MIRROR_MAX_CONCURRENCY: Worker tasks per sync session (optional, default: 3)
    KB_MIRROR_MAX_RETRIES: Retries for transient fetch errors (optional, default: 2)
    KB_MIRROR_INSECURE: Skip SSL verification (optional, default: false)
    KB_MIRROR_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_CACHE_ROOT = "~/kb_mirror"
STATE_DIR_NAME = ".kb_mirror"


@dataclass
class Config:
    url: str
    cookie: str
    cache_root: str = DEFAULT_CACHE_ROOT
    state_dir: str = ""
    insecure: bool = False
    debug: bool = False
    timeout: float = 30.0
    linebreak: bool = False
    latexcode: bool = False
    max_concurrency: int = 3
    max_retries: int = 2
    retry_backoff: float = 0.5
    task_timeout: float = 120.0
    checkpoint_interval: int = 5
    history_limit: int = 50
    retry_failed: bool = False

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_root).expanduser()

    @property
    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return self.cache_path / STATE_DIR_NAME


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the URL is malformed, the cookie is empty, or a
            numeric setting is out of range.
    """
    config.url = config.url.strip()

    if not config.url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid remote URL '{config.url}': must start with http:// or https://"
        )

    parsed = urlparse(config.url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid remote URL '{config.url}': URL must include a hostname"
        )

    # Strip trailing slash after validation (safe now that scheme/host are verified)
    config.url = config.url.removesuffix("/")

    if not config.cookie.strip():
        raise ValueError(
            "Session cookie cannot be empty. Set KB_MIRROR_COOKIE environment variable."
        )

    if not config.cache_root.strip():
        raise ValueError("Cache root cannot be empty.")

    if not (1 <= config.max_concurrency <= 16):
        raise ValueError(
            f"Invalid max_concurrency {config.max_concurrency}: must be between 1 and 16"
        )
    if not (0 <= config.max_retries <= 10):
        raise ValueError(
            f"Invalid max_retries {config.max_retries}: must be between 0 and 10"
        )
    if config.timeout <= 0 or config.task_timeout <= 0:
        raise ValueError("Timeouts must be positive")

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _int_env(key: str, low: int, high: int) -> int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    url: str | None = None,
    cookie: str | None = None,
    cache_root: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override remote URL (takes precedence over env var and YAML).
        cookie: Override session cookie.
        cache_root: Override cache root directory.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of values from the YAML ``remote`` and
            ``sync`` sections (see ``config_schema.to_fallbacks``).  Used
            when CLI arg and env var are both unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If URL or cookie is missing after checking all sources,
            or a value is out of range.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > error/default ---

    final_url = url or os.getenv("KB_MIRROR_URL") or fb.get("url")
    if not final_url:
        raise ValueError(
            "Remote URL not found. Set KB_MIRROR_URL environment variable, "
            "pass --url CLI argument, or add 'url' to config.yml."
        )

    final_cookie = cookie or os.getenv("KB_MIRROR_COOKIE") or fb.get("cookie")
    if not final_cookie:
        raise ValueError(
            "Session cookie not found. Set KB_MIRROR_COOKIE environment variable, "
            "pass --cookie CLI argument, or add 'cookie' to config.yml."
        )

    final_cache_root = (
        cache_root
        or os.getenv("KB_MIRROR_CACHE_ROOT")
        or fb.get("cache_root")
        or DEFAULT_CACHE_ROOT
    )
    final_state_dir = os.getenv("KB_MIRROR_STATE_DIR") or fb.get("state_dir") or ""

    # --- Boolean fields: CLI > env > YAML > default ---

    if insecure:
        final_insecure = True
    else:
        env_insecure = get_bool_env("KB_MIRROR_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("KB_MIRROR_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    final_concurrency = _int_env("KB_MIRROR_MAX_CONCURRENCY", 1, 16)
    if final_concurrency is None:
        final_concurrency = int(fb.get("max_concurrency", 3))

    final_retries = _int_env("KB_MIRROR_MAX_RETRIES", 0, 10)
    if final_retries is None:
        final_retries = int(fb.get("max_retries", 2))

    config = Config(
        url=final_url.strip(),
        cookie=final_cookie.strip(),
        cache_root=final_cache_root,
        state_dir=final_state_dir,
        insecure=final_insecure,
        debug=final_debug,
        timeout=float(fb.get("timeout", 30.0)),
        linebreak=bool(fb.get("linebreak", False)),
        latexcode=bool(fb.get("latexcode", False)),
        max_concurrency=final_concurrency,
        max_retries=final_retries,
        retry_backoff=float(fb.get("retry_backoff", 0.5)),
        task_timeout=float(fb.get("task_timeout", 120.0)),
        checkpoint_interval=int(fb.get("checkpoint_interval", 5)),
        history_limit=int(fb.get("history_limit", 50)),
        retry_failed=bool(fb.get("retry_failed", False)),
    )

    validate_config(config)

    return config
