"""Core types and store interfaces for live collection synchronization."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from ..utils.exceptions import MalformedEventError

_EPOCH_MILLIS_THRESHOLD = 1e11
_UPDATED_AT_ALIASES = ("updatedAt", "updated_at")
# fromisoformat on 3.10 only takes 3 or 6 fractional digits.
_FRACTION_RE = re.compile(r"(?<=:\d\d)\.(\d+)")


def _pad_fraction(match: re.Match[str]) -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_timestamp(value: Any) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (``Z`` suffix allowed, naive values
    read as UTC) and epoch numbers. Numbers above ``1e11`` are milliseconds.
    """

    if isinstance(value, bool):
        raise MalformedEventError(f"Invalid timestamp: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedEventError(f"Invalid epoch timestamp: {value!r}") from exc
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(_pad_fraction, text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedEventError(f"Invalid ISO-8601 timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise MalformedEventError(f"Invalid timestamp: {value!r}")


@dataclass(frozen=True, slots=True)
class Record:
    """A mirrored entity: stable id, last-modified time, opaque payload."""

    id: str
    updated_at: datetime
    payload: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "updated_at", parse_timestamp(self.updated_at))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(
        self, *, id_field: str = "id", updated_at_field: str = "updated_at"
    ) -> dict[str, object]:
        """Return the flat row representation of the record."""

        data: dict[str, object] = dict(self.payload)
        data[id_field] = self.id
        data[updated_at_field] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        id_field: str = "id",
        updated_at_field: str = "updated_at",
    ) -> Record:
        """Build a record from a raw row, raising :class:`MalformedEventError`."""

        if not isinstance(data, Mapping):
            raise MalformedEventError(
                f"Record must be a mapping, got {type(data).__name__}"
            )
        raw_id = data.get(id_field)
        if raw_id is None or (isinstance(raw_id, str) and not raw_id.strip()):
            raise MalformedEventError(f"Record is missing '{id_field}'")

        timestamp_key = updated_at_field
        if timestamp_key not in data:
            timestamp_key = next(
                (alias for alias in _UPDATED_AT_ALIASES if alias in data), ""
            )
        if not timestamp_key:
            raise MalformedEventError(
                f"Record {raw_id!r} is missing '{updated_at_field}'",
                context={"id": str(raw_id)},
            )
        updated_at = parse_timestamp(data[timestamp_key])

        payload = {
            key: value
            for key, value in data.items()
            if key not in (id_field, timestamp_key)
        }
        return cls(id=str(raw_id), updated_at=updated_at, payload=payload)


class ChangeKind(str, Enum):
    """Mutation kinds delivered by a change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single change notification; Delete carries only the id."""

    kind: ChangeKind
    id: str
    record: Record | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ChangeKind(self.kind))
        object.__setattr__(self, "id", str(self.id))
        if self.kind is not ChangeKind.DELETE and self.record is None:
            raise MalformedEventError(f"{self.kind.value} event requires a record")
        if self.record is not None and self.record.id != self.id:
            raise MalformedEventError(
                f"Event id {self.id!r} does not match record id {self.record.id!r}"
            )

    @classmethod
    def insert(cls, record: Record) -> ChangeEvent:
        return cls(ChangeKind.INSERT, record.id, record)

    @classmethod
    def update(cls, record: Record) -> ChangeEvent:
        return cls(ChangeKind.UPDATE, record.id, record)

    @classmethod
    def delete(cls, record_id: str) -> ChangeEvent:
        return cls(ChangeKind.DELETE, str(record_id))

    def to_payload(
        self,
        table: str,
        *,
        id_field: str = "id",
        updated_at_field: str = "updated_at",
    ) -> dict[str, object]:
        """Return the JSON-serialisable wire form of the event."""

        data: dict[str, object] = {"type": self.kind.value, "table": table}
        if self.record is not None:
            data["record"] = self.record.to_dict(
                id_field=id_field, updated_at_field=updated_at_field
            )
        if self.kind is ChangeKind.DELETE:
            data["old_record"] = {id_field: self.id}
        return data

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        id_field: str = "id",
        updated_at_field: str = "updated_at",
    ) -> ChangeEvent:
        """Parse a wire payload, raising :class:`MalformedEventError`."""

        if not isinstance(payload, Mapping):
            raise MalformedEventError(
                f"Change payload must be a mapping, got {type(payload).__name__}"
            )
        raw_type = payload.get("type")
        try:
            kind = ChangeKind(str(raw_type).strip().upper())
        except ValueError as exc:
            raise MalformedEventError(f"Unknown change type: {raw_type!r}") from exc

        if kind is ChangeKind.DELETE:
            for key in ("old_record", "record"):
                source = payload.get(key)
                if isinstance(source, Mapping) and source.get(id_field) is not None:
                    return cls.delete(str(source[id_field]))
            raise MalformedEventError(f"DELETE event is missing '{id_field}'")

        record = Record.from_dict(
            payload.get("record"),  # type: ignore[arg-type]
            id_field=id_field,
            updated_at_field=updated_at_field,
        )
        return cls(kind, record.id, record)


class ChannelStatus(str, Enum):
    """Connection status reported by a change-feed subscription."""

    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"
    CLOSED = "CLOSED"


class SyncMode(str, Enum):
    """Orchestrator state machine."""

    INITIALIZING = "initializing"
    LIVE = "live"
    DEGRADED = "degraded"
    TORN_DOWN = "torn_down"


@dataclass(frozen=True, slots=True)
class SubscriptionState:
    """Connection/polling status exposed to consumers."""

    is_connected: bool = False
    is_polling: bool = False
    last_error: Exception | None = None
    last_sync_time: datetime | None = None
    reconnect_attempts: int = 0
    retries_exhausted: bool = False

    def evolve(self, **changes: Any) -> SubscriptionState:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        error = self.last_error
        return {
            "is_connected": self.is_connected,
            "is_polling": self.is_polling,
            "last_error": (
                {"type": type(error).__name__, "message": str(error)}
                if error is not None
                else None
            ),
            "last_sync_time": (
                self.last_sync_time.isoformat() if self.last_sync_time else None
            ),
            "reconnect_attempts": self.reconnect_attempts,
            "retries_exhausted": self.retries_exhausted,
        }


@dataclass(frozen=True, slots=True)
class ModeTransition:
    """A change of orchestrator mode, surfaced for user notifications."""

    previous: SyncMode
    current: SyncMode
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, object]:
        return {
            "previous": self.previous.value,
            "current": self.current.value,
            "message": self.message,
            "at": self.at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RecordFilter:
    """Scope of a live collection: a table plus simple predicates."""

    table: str
    equals: Mapping[str, object] = field(default_factory=dict)
    range_field: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        if not self.table or not str(self.table).strip():
            raise ValueError("RecordFilter requires a table name")
        object.__setattr__(self, "equals", MappingProxyType(dict(self.equals)))
        if self.start is not None:
            object.__setattr__(self, "start", parse_timestamp(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", parse_timestamp(self.end))
        if (self.start is not None or self.end is not None) and not self.range_field:
            raise ValueError("range_field is required when start or end is set")

    def _field_value(self, record: Record, key: str, id_field: str) -> Any:
        if key == id_field:
            return record.id
        return record.payload.get(key)

    def matches(self, record: Record, *, id_field: str = "id") -> bool:
        for key, expected in self.equals.items():
            actual = self._field_value(record, key, id_field)
            if actual != expected and str(actual) != str(expected):
                return False
        if self.range_field:
            if self.range_field in ("updated_at", "updatedAt"):
                moment: datetime | None = record.updated_at
            else:
                raw = record.payload.get(self.range_field)
                try:
                    moment = parse_timestamp(raw) if raw is not None else None
                except MalformedEventError:
                    moment = None
            if moment is None:
                return False
            if self.start is not None and moment < self.start:
                return False
            if self.end is not None and moment > self.end:
                return False
        return True

    def describe(self) -> str:
        parts = [f"{key}={value}" for key, value in sorted(self.equals.items())]
        if self.range_field:
            parts.append(
                f"{self.range_field} in [{self.start or '-'}, {self.end or '-'}]"
            )
        scope = ", ".join(parts) if parts else "*"
        return f"{self.table}({scope})"


RawRow = Mapping[str, Any]
EventHandler = Callable[[Mapping[str, Any]], None]
StatusHandler = Callable[[ChannelStatus, "Exception | None"], None]


class ChangeSubscription(Protocol):
    """Open change-feed channel returned by :meth:`RecordStore.subscribe`."""

    def close(self) -> None:
        """Terminate the subscription (idempotent, synchronous)."""


class RecordStore(Protocol):
    """Query + push-notification capability consumed by the engine."""

    async def fetch_all(self, record_filter: RecordFilter) -> Sequence[RawRow]:
        """Return every row matching ``record_filter``."""

    def subscribe(
        self,
        record_filter: RecordFilter,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChangeSubscription:
        """Open a change feed; status is reported through ``on_status``."""

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        """Close ``subscription`` (idempotent)."""

    def close(self) -> None:
        """Release all adapter resources (idempotent)."""


FetchCallable = Callable[[], Awaitable[Any]]


class NullSubscription:
    """Subscription implementation that performs no work."""

    def close(self) -> None:  # pragma: no cover - trivial
        return None
