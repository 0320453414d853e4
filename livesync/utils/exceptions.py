"""
Exception taxonomy for livesync.

Every error the running engine encounters is captured and exposed through
``SubscriptionState.last_error``; only :class:`ConfigurationError` is raised to
callers, and only while wiring things together.
"""

from __future__ import annotations

from typing import Any

from loguru import logger as _default_logger


class LiveSyncError(Exception):
    """Base class for livesync errors carrying a code and structured context."""

    default_code = "LIVESYNC_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.context:
            data["context"] = dict(self.context)
        cause = self.__cause__
        if cause is not None:
            data["cause"] = f"{type(cause).__name__}: {cause}"
        return data

    def __str__(self) -> str:
        return self.message


class ConnectionError(LiveSyncError):
    """The change feed failed to open or closed unexpectedly."""

    default_code = "CONNECTION_ERROR"


class FetchError(LiveSyncError):
    """A full fetch (initial, polling or manual refresh) failed."""

    default_code = "FETCH_ERROR"


class MalformedEventError(LiveSyncError, ValueError):
    """A change-feed payload or fetched row could not be parsed."""

    default_code = "MALFORMED_EVENT"


class ConfigurationError(LiveSyncError):
    """Invalid settings or an adapter that cannot be constructed."""

    default_code = "CONFIGURATION_ERROR"


class ExceptionHandler:
    """Helpers for logging livesync errors with structured extras."""

    @staticmethod
    def log_exception(
        error: BaseException,
        logger: Any = None,
        level: str = "error",
        message: str | None = None,
    ) -> None:
        target = logger or _default_logger
        if isinstance(error, LiveSyncError):
            exception_data = error.to_dict()
        else:
            exception_data = {
                "error_type": type(error).__name__,
                "message": str(error),
            }
        bound = target.bind(
            error_type=type(error).__name__,
            exception_data=exception_data,
        )
        bound.log(level.upper(), "{}: {}", message or type(error).__name__, error)

    @staticmethod
    def wrap(
        error: BaseException,
        error_cls: type[LiveSyncError],
        message: str,
        context: dict[str, Any] | None = None,
    ) -> LiveSyncError:
        """Return ``error`` as an ``error_cls`` instance, chaining the cause."""

        if isinstance(error, error_cls):
            return error
        wrapped = error_cls(message, context=context)
        wrapped.__cause__ = error
        return wrapped
