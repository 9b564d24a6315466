"""Loguru sink configuration for the indexer processes."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
)


def configure_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    """Replace the default sink with stderr (and optionally a daily file) at ``level``."""

    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT, backtrace=False, diagnose=False)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / "indexer_{time:YYYY-MM-DD}.log",
            level=level,
            format=_FORMAT,
            rotation="00:00",
            retention="14 days",
            encoding="utf-8",
            enqueue=True,
        )
