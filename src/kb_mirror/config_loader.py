"""
YAML config files for kb_mirror.

Config files are found by convention, may pull fragments in with
``!include`` and may reference environment variables as ``${VAR}`` or
``${VAR:-default}``.  When several files exist they are merged section by
section, the more specific file winning.

Usage:
    from kb_mirror.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()   # {} without any config file
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".kb_mirror"
CONFIG_ENV_VAR = "KB_MIRROR_CONFIG"
PROJECT_CONFIG_NAMES = ("config.yml", "config.yaml")
GLOBAL_CONFIG = Path(".config") / "kb_mirror" / "config.yml"

_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


# ---------------------------------------------------------------------------
# ${VAR} references
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` references in *value*.

    An unset or empty variable expands to its default, or to ``""`` when
    there is none.  A ``${`` without a closing brace stays as written.

    A shared config can then name the session cookie indirectly, e.g.
    ``cookie: ${KB_SESSION_COOKIE}``.
    """

    def _expand(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        return os.environ.get(name) or (default or "")

    return _ENV_REF.sub(_expand, value)


def _interpolate_recursive(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, list):
        return [_interpolate_recursive(item) for item in node]
    if isinstance(node, dict):
        return {key: _interpolate_recursive(item) for key, item in node.items()}
    return node


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!include <path>``.

    The tag is registered on this subclass only; ``yaml.safe_load`` keeps
    rejecting it.
    """

    include_chain: tuple[Path, ...] = ()


def _include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    current = Path(loader.name).resolve()
    target = Path(loader.construct_scalar(node))
    if not target.is_absolute():
        target = current.parent / target
    target = target.resolve()

    if target in loader.include_chain:
        chain = " -> ".join(str(p) for p in (*loader.include_chain, target))
        raise ValueError(f"Circular include detected: {chain}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {current})"
        )
    return _load_yaml_with_includes(target, _chain=(*loader.include_chain, target))


ConfigLoader.add_constructor("!include", _include)


def _load_yaml_with_includes(path: Path, *, _chain: tuple[Path, ...] = ()) -> Any:
    """Parse one YAML file, resolving ``!include`` tags relative to it."""
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_chain = _chain or (path,)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing config files, most specific first.

    1. the file named by ``KB_MIRROR_CONFIG``
    2. ``./.kb_mirror/config.yml`` then ``./.kb_mirror/config.yaml``
    3. ``~/.config/kb_mirror/config.yml``
    """
    candidates: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    project_dir = Path.cwd() / CONFIG_DIR_NAME
    candidates.extend(project_dir / name for name in PROJECT_CONFIG_NAMES)
    candidates.append(Path.home() / GLOBAL_CONFIG)
    return [path for path in candidates if path.exists()]


_STARTER_CONFIG = """\
# kb-mirror configuration
#
# Environment variables take precedence over this file:
#   KB_MIRROR_URL, KB_MIRROR_COOKIE, KB_MIRROR_CACHE_ROOT, KB_MIRROR_INSECURE
#
# remote:
#   url: https://www.yuque.com
#   cookie: ${KB_SESSION_COOKIE}
#   linebreak: false
#   latexcode: false
#   timeout: 30
#
# sync:
#   cache_root: ~/kb_mirror
#   max_concurrency: 3
#   max_retries: 2
#   task_timeout: 120
#   history_limit: 50
#   retry_failed: false
#
# logging:
#   level: INFO
#   file: null
#   json_format: false
"""


def resolve_config_path() -> Path:
    """The config file in effect, or ``./.kb_mirror/config.yml`` if none exists."""
    found = discover_config_files()
    return found[0] if found else Path.cwd() / CONFIG_DIR_NAME / PROJECT_CONFIG_NAMES[0]


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in effect, writing a commented starter if none exists.

    Args:
        target: Where to write the starter file; defaults to
            ``resolve_config_path()``.
    """
    found = discover_config_files()
    if found:
        logger.debug("Using existing config file %s", found[0])
        return found[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Wrote starter config %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Merge every discovered config file into one dict.

    Files are applied from least to most specific; a top-level section in a
    more specific file replaces the whole section from a less specific one.
    ``${VAR}`` references are expanded after merging.  Returns ``{}`` when
    no file exists.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config file found")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Reading config %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except Exception:
            logger.exception("Cannot read config file %s", path)
            raise
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Ignoring config file %s: top level is %s, not a mapping",
                path,
                type(data).__name__,
            )
    return _interpolate_recursive(merged)
