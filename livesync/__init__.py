"""
livesync - keep a local mirror of a remote collection in sync.

A change feed pushes inserts, updates and deletes while it is up; a polling
fallback takes over while it is down, and a recency-based merge keeps the
result independent of the order in which fetches and events land.
"""

__version__ = "0.3.0"

from .config import LiveSyncSettings, load_settings
from .sync import (
    ChangeEvent,
    ChangeKind,
    InMemoryRecordStore,
    LiveCollection,
    PostgresRecordStore,
    Record,
    RecordFilter,
    RedisRecordStore,
    SubscriptionState,
    SyncMode,
    create_record_store,
    use_live_collection,
)
from .utils import (
    ConfigurationError,
    ConnectionError,
    FetchError,
    LiveSyncError,
    LoggingManager,
    MalformedEventError,
)

__all__ = [
    "__version__",
    "LiveSyncSettings",
    "load_settings",
    "ChangeEvent",
    "ChangeKind",
    "InMemoryRecordStore",
    "LiveCollection",
    "PostgresRecordStore",
    "Record",
    "RecordFilter",
    "RedisRecordStore",
    "SubscriptionState",
    "SyncMode",
    "create_record_store",
    "use_live_collection",
    "ConfigurationError",
    "ConnectionError",
    "FetchError",
    "LiveSyncError",
    "LoggingManager",
    "MalformedEventError",
]
