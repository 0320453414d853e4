"""
Loguru setup for livesync
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from loguru import logger

from ..config.settings import LoggingSettings, LogLevel


class LoggingManager:
    """Install and track the loguru sinks used by livesync."""

    _initialized = False
    _sink_ids: list[int] = []

    @classmethod
    def setup_logging(
        cls, settings: LoggingSettings | None = None, verbose: bool = False
    ) -> None:
        settings = settings or LoggingSettings()
        level = LogLevel.DEBUG.value if verbose else _level_value(settings.level)

        cls.reset()
        logger.remove()

        cls._sink_ids.append(
            logger.add(
                sys.stderr,
                level=level,
                format=settings.format,
                serialize=settings.structured_logging,
                colorize=not settings.structured_logging,
            )
        )

        if settings.log_to_file:
            log_path = Path(settings.log_file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            cls._sink_ids.append(
                logger.add(
                    str(log_path),
                    level=level,
                    format=settings.format,
                    rotation=settings.log_rotation,
                    retention=settings.log_retention,
                    compression=settings.log_compression,
                    serialize=settings.structured_logging,
                    enqueue=True,
                )
            )

        cls._initialized = True
        logger.debug("Logging configured at level {}", level)

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._initialized

    @classmethod
    def reset(cls) -> None:
        """Remove sinks previously installed by :meth:`setup_logging`."""

        for sink_id in cls._sink_ids:
            try:
                logger.remove(sink_id)
            except ValueError:
                continue
        cls._sink_ids = []
        cls._initialized = False


def _level_value(level: Any) -> str:
    if isinstance(level, LogLevel):
        return level.value
    return str(level).upper()


def get_logger(component: str):
    """Return a loguru logger bound to ``component``."""

    return logger.bind(component=component)
