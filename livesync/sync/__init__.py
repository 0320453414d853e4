"""Synchronization primitives for live collections."""

from .base import (
    ChangeEvent,
    ChangeKind,
    ChangeSubscription,
    ChannelStatus,
    ModeTransition,
    NullSubscription,
    Record,
    RecordFilter,
    RecordStore,
    SubscriptionState,
    SyncMode,
    parse_timestamp,
)
from .coordinator import LiveCollection, use_live_collection
from .factory import create_record_store
from .inmemory import InMemoryRecordStore
from .mirror import LocalMirror
from .polling import PollingFallback
from .postgres import PostgresRecordStore
from .reconcile import apply_event, merge, sort_records, supersedes
from .reconnect import ReconnectionManager
from .redis import RedisRecordStore

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "ChangeSubscription",
    "ChannelStatus",
    "ModeTransition",
    "NullSubscription",
    "Record",
    "RecordFilter",
    "RecordStore",
    "SubscriptionState",
    "SyncMode",
    "parse_timestamp",
    "LiveCollection",
    "use_live_collection",
    "create_record_store",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "RedisRecordStore",
    "LocalMirror",
    "PollingFallback",
    "ReconnectionManager",
    "apply_event",
    "merge",
    "sort_records",
    "supersedes",
]
