"""
Utils package for livesync - errors and logging helpers
"""

from .exceptions import (
    ConfigurationError,
    ConnectionError,
    ExceptionHandler,
    FetchError,
    LiveSyncError,
    MalformedEventError,
)
from .logging import LoggingManager, get_logger

__all__ = [
    # Exceptions
    "LiveSyncError",
    "ConnectionError",
    "FetchError",
    "MalformedEventError",
    "ConfigurationError",
    "ExceptionHandler",
    # Logging
    "LoggingManager",
    "get_logger",
]
