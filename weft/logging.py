"""Loguru sink configuration for processes embedding the engine."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from weft.config.schema import LoggingConfig

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Replace loguru's default sink with a stderr sink and an optional rotating file."""
    config = config or LoggingConfig()
    logger.remove()
    logger.add(sys.stderr, level=config.level, format=_FORMAT)
    if config.file:
        path = Path(config.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            level=config.level,
            rotation=config.rotation,
            retention=config.retention,
            enqueue=True,
        )
    logger.debug("Logging configured (level={}, file={})", config.level, config.file)
