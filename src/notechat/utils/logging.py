"""Logging setup for NoteChat delivery services.

Everything goes to ``~/.notechat/logs/notechat.log`` (or ``$NOTECHAT_LOG_DIR``)
through a size-rotated handler, with a console mirror for interactive runs.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "level_for", "get_log_path"]

_DEFAULT_LOG_DIR = Path.home() / ".notechat" / "logs"
_LOG_FILE_NAME = "notechat.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# Transport and SDK loggers are held at WARNING even when the app logs DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def level_for(debug: bool) -> int:
    """Map the ``debug_logging`` setting to a root level."""

    return logging.DEBUG if debug else logging.INFO


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the root handlers and return the log file path.

    Only the first call takes effect; pass ``force`` to reconfigure, for
    example after settings switch on debug logging.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and _LOG_PATH is not None and not force:
        return _LOG_PATH

    directory = Path(log_dir or os.environ.get("NOTECHAT_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _LOG_FILE_NAME

    handlers = [
        _prepare(
            logging.handlers.RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            ),
            level,
        )
    ]
    if console:
        handlers.append(_prepare(logging.StreamHandler(), level))

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def _prepare(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
    return handler
