"""Process-wide logging for the relay.

`setup_logging` is called once, after the configuration is loaded, with the
configured level name.  Records go to stderr and, when a log directory is
given, to a rotating ``psrelay.log`` written by a background listener thread
so webhook handlers never wait on disk I/O.  Both sinks carry the task's
``[op:delivery]`` prefix from `ContextFilter`.
"""

from __future__ import annotations

import atexit
import copy
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import TYPE_CHECKING

from psrelay.log_context import ContextFilter

if TYPE_CHECKING:
    from pathlib import Path

LOG_FILE_NAME = "psrelay.log"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(ctx)s%(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(ctx)s%(message)s"

# Access lines and websocket frames; never more verbose than WARNING.
_AIOHTTP_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.websocket")

_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[2m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[1;31m",
}
_RESET = "\x1b[0m"

logger = logging.getLogger(__name__)

_file_listener: QueueListener | None = None


def resolve_level(level: int | str) -> int:
    """Turn ``"warning"``, ``"DEBUG"`` or a number into a logging level.

    Raises `ValueError` for names the logging module does not know.
    """
    if isinstance(level, int):
        return level
    try:
        return logging.getLevelNamesMapping()[level.strip().upper()]
    except KeyError:
        msg = f"unknown log level {level!r}"
        raise ValueError(msg) from None


class ConsoleFormatter(logging.Formatter):
    """Colours the level name on a terminal; leaves the record untouched."""

    def __init__(self, *, color: bool) -> None:
        super().__init__(CONSOLE_FORMAT, datefmt="%H:%M:%S")
        self.color = color

    def formatMessage(self, record: logging.LogRecord) -> str:  # noqa: N802
        code = _LEVEL_COLORS.get(record.levelno) if self.color else None
        if code:
            record = copy.copy(record)
            record.levelname = f"{code}{record.levelname:<8}{_RESET}"
        return super().formatMessage(record)


def _file_sink(log_dir: Path, context: ContextFilter) -> QueueHandler:
    global _file_listener  # noqa: PLW0603
    log_dir.mkdir(parents=True, exist_ok=True)
    target = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    target.setFormatter(logging.Formatter(FILE_FORMAT))
    records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    _file_listener = QueueListener(records, target)
    _file_listener.start()
    # The prefix is computed here, on the emitting task, not on the listener thread.
    sink = QueueHandler(records)
    sink.addFilter(context)
    return sink


def shutdown_logging() -> None:
    """Flush and close the file sink.  Safe to call more than once."""
    global _file_listener  # noqa: PLW0603
    listener, _file_listener = _file_listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()


atexit.register(shutdown_logging)


def setup_logging(
    level: int | str = "INFO",
    *,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> int:
    """Replace the root logger's handlers and return the effective level.

    *level* is usually ``RelayConfig.log_level``.  ``verbose`` forces DEBUG.
    """
    effective = logging.DEBUG if verbose else resolve_level(level)
    shutdown_logging()

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(effective)

    context = ContextFilter()
    console = logging.StreamHandler(sys.stderr)
    console.addFilter(context)
    console.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
    root.addHandler(console)
    if log_dir is not None:
        root.addHandler(_file_sink(log_dir, context))

    for name in _AIOHTTP_LOGGERS:
        logging.getLogger(name).setLevel(max(effective, logging.WARNING))

    logger.debug(
        "Logging to stderr%s at %s",
        f" and {log_dir / LOG_FILE_NAME}" if log_dir is not None else "",
        logging.getLevelName(effective),
    )
    return effective
