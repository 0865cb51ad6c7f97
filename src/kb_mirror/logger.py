"""Logging setup for the server and the helper scripts.

In ``mcp`` mode stdout carries JSON-RPC, so records go to a file only.
"""

import json
import logging
import os
import sys

DEFAULT_LOG_FILE = "/tmp/kb-mirror-server.log"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUIET_LOGGERS = ("urllib3", "requests", "charset_normalizer")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``msg``
    and, for exceptions, ``exc``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def _formatter(debug_format: str, with_name: bool) -> logging.Formatter:
    if debug_format == "json":
        return JsonFormatter(datefmt=_DATEFMT)
    fmt = "[%(asctime)s] [%(levelname)s] "
    fmt += "%(name)s %(message)s" if with_name else "%(message)s"
    return logging.Formatter(fmt, datefmt=_DATEFMT)


def _file_handler(path: str, debug_format: str) -> logging.Handler:
    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(_formatter(debug_format, with_name=True))
    return handler


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Install the root handlers for *mode*.

    Args:
        mode: ``"mcp"`` logs to a file only; ``"cli"`` logs to stderr and,
            with *log_file*, to that file as well.
        debug: Force DEBUG regardless of any other setting.
        log_file: Log file path; in ``mcp`` mode falls back to ``LOG_FILE``
            and then ``DEFAULT_LOG_FILE``.
        debug_format: ``"text"`` or ``"json"``.
        level: Level name from the config file; LOG_LEVEL still wins.

    Without *debug*, the level is ``LOG_LEVEL``, then *level*, then WARNING
    in ``mcp`` mode or INFO in ``cli`` mode.  Unknown names mean INFO.
    """
    default_level = "WARNING" if mode == "mcp" else "INFO"
    env_level = (os.getenv("LOG_LEVEL") or level or default_level).upper()
    log_level = logging.DEBUG if debug else getattr(logging, env_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if mode == "mcp":
        path = log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
        handlers.append(_file_handler(path, debug_format))
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(_formatter(debug_format, with_name=False))
        handlers.append(stderr_handler)
        if log_file:
            handlers.append(_file_handler(log_file, debug_format))

    logging.basicConfig(level=log_level, handlers=handlers)

    if log_level != logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
