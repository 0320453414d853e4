"""
Configuration management for livesync
"""

from .settings import (
    LiveSyncSettings,
    LoggingSettings,
    LogLevel,
    MirrorSettings,
    PollingSettings,
    ReconnectSettings,
    StoreBackendType,
    StoreSettings,
    load_settings,
)

__all__ = [
    "LiveSyncSettings",
    "LoggingSettings",
    "LogLevel",
    "MirrorSettings",
    "PollingSettings",
    "ReconnectSettings",
    "StoreBackendType",
    "StoreSettings",
    "load_settings",
]
