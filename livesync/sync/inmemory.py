"""In-memory record store for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from ..utils.exceptions import ConnectionError
from .base import (
    ChangeEvent,
    ChangeKind,
    ChangeSubscription,
    ChannelStatus,
    EventHandler,
    Record,
    RecordFilter,
    StatusHandler,
)

_DISCONNECT = object()


class _InMemorySubscription:
    """Listener task draining a queue of wire payloads for one subscriber."""

    def __init__(
        self,
        store: InMemoryRecordStore,
        record_filter: RecordFilter,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> None:
        self._store = store
        self.record_filter = record_filter
        self._on_event = on_event
        self._on_status = on_status
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._on_status(ChannelStatus.CONNECTING, None)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"inmemory-feed-{self.record_filter.table}"
        )

    def enqueue(self, payload: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(payload)

    def disconnect(self, error: Exception | None = None) -> None:
        """Simulate the server dropping the channel."""

        if not self._closed:
            self._queue.put_nowait((_DISCONNECT, error))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._remove_subscription(self)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        # Let subscribe() return before the handshake completes.
        await asyncio.sleep(0)
        if not self._store.available:
            self._closed = True
            self._store._remove_subscription(self)
            self._on_status(
                ChannelStatus.ERROR,
                ConnectionError("In-memory store is unavailable"),
            )
            return
        self._on_status(ChannelStatus.CONNECTED, None)
        while not self._closed:
            item = await self._queue.get()
            if isinstance(item, tuple) and item and item[0] is _DISCONNECT:
                error = item[1]
                self._closed = True
                self._store._remove_subscription(self)
                status = ChannelStatus.ERROR if error is not None else ChannelStatus.CLOSED
                self._on_status(status, error)
                return
            try:
                self._on_event(item)
            except Exception:  # pragma: no cover - subscriber callback failure
                logger.opt(exception=True).warning("Change handler raised an exception")


class InMemoryRecordStore:
    """Dict-backed tables with a change feed delivered on the event loop."""

    def __init__(
        self,
        *,
        id_field: str = "id",
        updated_at_field: str = "updated_at",
        latency: float = 0.0,
    ) -> None:
        self.id_field = id_field
        self.updated_at_field = updated_at_field
        self.latency = latency
        self.available = True
        self.fetch_count = 0
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: list[_InMemorySubscription] = []

    # ------------------------------------------------------------------
    # RecordStore protocol
    # ------------------------------------------------------------------
    async def fetch_all(self, record_filter: RecordFilter) -> list[dict[str, Any]]:
        self.fetch_count += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise ConnectionError(
                "In-memory store is unavailable",
                context={"table": record_filter.table},
            )
        rows = self._tables.get(record_filter.table, {}).values()
        return [copy.deepcopy(row) for row in rows if self._row_matches(row, record_filter)]

    def subscribe(
        self,
        record_filter: RecordFilter,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChangeSubscription:
        subscription = _InMemorySubscription(self, record_filter, on_event, on_status)
        self._subscriptions.append(subscription)
        subscription.start()
        return subscription

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        subscription.close()

    def close(self) -> None:
        subscriptions = list(self._subscriptions)
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert(self, table: str, row: Mapping[str, Any]) -> Record:
        return self._write(table, row, ChangeKind.INSERT)

    def update(self, table: str, row: Mapping[str, Any]) -> Record:
        return self._write(table, row, ChangeKind.UPDATE)

    def upsert(self, table: str, row: Mapping[str, Any]) -> Record:
        record_id = str(row.get(self.id_field))
        exists = record_id in self._tables.get(table, {})
        return self._write(table, row, ChangeKind.UPDATE if exists else ChangeKind.INSERT)

    def delete(self, table: str, record_id: str) -> bool:
        rows = self._tables.get(table, {})
        removed = rows.pop(str(record_id), None) is not None
        if removed:
            self._publish(table, ChangeEvent.delete(str(record_id)))
        return removed

    def publish_raw(self, table: str, payload: Any) -> None:
        """Deliver an arbitrary payload to subscribers of ``table``."""

        for subscription in self._subscribers_for(table):
            subscription.enqueue(payload)

    def disconnect_subscribers(self, error: Exception | None = None) -> int:
        subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.disconnect(error)
        return len(subscriptions)

    def set_available(self, available: bool) -> None:
        self.available = available

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self._tables.get(table, {}).values()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _write(self, table: str, row: Mapping[str, Any], kind: ChangeKind) -> Record:
        data = dict(row)
        if data.get(self.id_field) is None:
            raise ValueError(f"Row is missing '{self.id_field}'")
        data.setdefault(self.updated_at_field, datetime.now(timezone.utc).isoformat())
        record = Record.from_dict(
            data, id_field=self.id_field, updated_at_field=self.updated_at_field
        )
        self._tables.setdefault(table, {})[record.id] = copy.deepcopy(data)
        self._publish(table, ChangeEvent(kind, record.id, record))
        return record

    def _publish(self, table: str, event: ChangeEvent) -> None:
        payload = event.to_payload(
            table, id_field=self.id_field, updated_at_field=self.updated_at_field
        )
        self.publish_raw(table, payload)

    def _subscribers_for(self, table: str) -> list[_InMemorySubscription]:
        return [
            subscription
            for subscription in self._subscriptions
            if subscription.record_filter.table == table and not subscription.closed
        ]

    def _remove_subscription(self, subscription: _InMemorySubscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def _row_matches(self, row: Mapping[str, Any], record_filter: RecordFilter) -> bool:
        for key, expected in record_filter.equals.items():
            actual = row.get(key)
            if actual != expected and str(actual) != str(expected):
                return False
        return True
