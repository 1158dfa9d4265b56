"""Operator log: every attempted and completed step lands here.

Entries are appended to the log file and echoed to stderr so they stay
separate from command output printed on stdout.
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_PACKAGE_LOGGER = "traccar_tools"


def configure_logging(log_file: Path, *, level: int = logging.INFO) -> logging.Logger:
    """Attach file and stderr handlers to the package logger.

    Safe to call repeatedly; previously installed handlers are replaced.
    """
    logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def tail_log(log_file: Path, lines: int = 50) -> list[str]:
    """Return the last *lines* lines of *log_file* (empty if missing)."""
    if not log_file.is_file():
        return []
    with log_file.open("r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
