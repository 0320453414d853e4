"""Redis-backed record store for multi-instance deployments."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from ..utils.exceptions import ConfigurationError, ConnectionError
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

try:  # pragma: no cover - optional dependency resolution
    import redis.asyncio as aioredis
except Exception:  # pragma: no cover - handled during store creation
    aioredis = None  # type: ignore[assignment]


class _RedisSubscription:
    """Listen for Redis pub/sub messages and dispatch them to a handler."""

    def __init__(
        self,
        client: Any,
        channel: str,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> None:
        self._client = client
        self._channel = channel
        self._on_event = on_event
        self._on_status = on_status
        self._closed = False
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._on_status(ChannelStatus.CONNECTING, None)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"redis-listen-{self._channel}"
        )

    async def _run(self) -> None:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            try:
                await pubsub.subscribe(self._channel)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.opt(exception=True).warning(
                    "RedisRecordStore failed to subscribe to channel '{}'", self._channel
                )
                self._report(ChannelStatus.ERROR, ConnectionError(str(exc)))
                return

            self._report(ChannelStatus.CONNECTED, None)
            try:
                async for message in pubsub.listen():
                    if self._closed:
                        break
                    if message is None or message.get("type") != "message":
                        continue
                    self._dispatch(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.opt(exception=True).warning("Redis pubsub listener error")
                self._report(ChannelStatus.ERROR, ConnectionError(str(exc)))
                return
            self._report(ChannelStatus.CLOSED, None)
        finally:
            try:
                await pubsub.aclose()
            except Exception:  # pragma: no cover - redis shutdown guard
                logger.opt(exception=True).debug("Error closing Redis pubsub")

    def _dispatch(self, data: Any) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8", "ignore")
        try:
            decoded = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Failed to decode Redis change payload")
            decoded = data
        try:
            self._on_event(decoded)
        except Exception:  # pragma: no cover - subscriber callback failure
            logger.opt(exception=True).warning("Change handler raised an exception")

    def _report(self, status: ChannelStatus, error: Exception | None) -> None:
        if not self._closed:
            self._on_status(status, error)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class RedisRecordStore:
    """Rows kept as JSON in one hash per table, changes published per table.

    ``<channel>:<table>:rows`` holds the rows keyed by id and
    ``<channel>:<table>`` carries the wire events.
    """

    def __init__(
        self,
        connection_url: str | None = None,
        *,
        channel: str = "livesync",
        client: Any | None = None,
        client_kwargs: dict[str, Any] | None = None,
        id_field: str = "id",
        updated_at_field: str = "updated_at",
    ) -> None:
        if client is None:
            if aioredis is None:  # pragma: no cover - depends on optional dependency
                raise ConfigurationError(
                    "redis package is required to use RedisRecordStore. Install redis>=5.0."
                )
            if not connection_url:
                raise ConfigurationError("RedisRecordStore requires a connection URL")
            kwargs = dict(client_kwargs or {})
            kwargs.setdefault("decode_responses", True)
            try:
                client = aioredis.from_url(connection_url, **kwargs)
            except Exception as exc:
                raise ConfigurationError(
                    f"Invalid Redis connection URL: {exc}"
                ) from exc
        self._client = client
        self._channel = channel or "livesync"
        self.id_field = id_field
        self.updated_at_field = updated_at_field
        self._subscriptions: list[_RedisSubscription] = []

    def channel_for(self, table: str) -> str:
        return f"{self._channel}:{table}"

    def rows_key(self, table: str) -> str:
        return f"{self._channel}:{table}:rows"

    async def fetch_all(self, record_filter: RecordFilter) -> list[Any]:
        raw_rows = await self._client.hgetall(self.rows_key(record_filter.table))
        rows: list[Any] = []
        for raw in (raw_rows or {}).values():
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", "ignore")
            try:
                row = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("Undecodable row in {}", self.rows_key(record_filter.table))
                rows.append(raw)
                continue
            if isinstance(row, Mapping) and not _row_matches(row, record_filter):
                continue
            rows.append(row)
        return rows

    def subscribe(
        self,
        record_filter: RecordFilter,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChangeSubscription:
        subscription = _RedisSubscription(
            self._client, self.channel_for(record_filter.table), on_event, on_status
        )
        self._subscriptions.append(subscription)
        subscription.start()
        return subscription

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        subscription.close()
        try:
            self._subscriptions.remove(subscription)  # type: ignore[arg-type]
        except ValueError:
            pass

    async def upsert(self, table: str, row: Mapping[str, Any]) -> Record:
        data = dict(row)
        if data.get(self.id_field) is None:
            raise ValueError(f"Row is missing '{self.id_field}'")
        data.setdefault(self.updated_at_field, datetime.now(timezone.utc).isoformat())
        record = Record.from_dict(
            data, id_field=self.id_field, updated_at_field=self.updated_at_field
        )
        key = self.rows_key(table)
        exists = await self._client.hexists(key, record.id)
        await self._client.hset(key, record.id, json.dumps(data, default=str))
        kind = ChangeKind.UPDATE if exists else ChangeKind.INSERT
        await self._publish(table, ChangeEvent(kind, record.id, record))
        return record

    async def delete(self, table: str, record_id: str) -> bool:
        removed = await self._client.hdel(self.rows_key(table), str(record_id))
        if removed:
            await self._publish(table, ChangeEvent.delete(str(record_id)))
        return bool(removed)

    async def _publish(self, table: str, event: ChangeEvent) -> None:
        payload = event.to_payload(
            table, id_field=self.id_field, updated_at_field=self.updated_at_field
        )
        try:
            await self._client.publish(self.channel_for(table), json.dumps(payload))
        except Exception:  # pragma: no cover - redis publish guard
            logger.opt(exception=True).warning("Failed to publish change event via Redis")

    def close(self) -> None:
        """Close every subscription; the client itself is closed by :meth:`aclose`."""

        subscriptions = list(self._subscriptions)
        self._subscriptions.clear()
        for subscription in subscriptions:
            try:
                subscription.close()
            except Exception:  # pragma: no cover - shutdown guard
                logger.opt(exception=True).debug("Error while closing Redis subscription")

    async def aclose(self) -> None:
        self.close()
        try:
            await self._client.aclose()
        except Exception:  # pragma: no cover - redis close guard
            logger.opt(exception=True).debug("Error while closing Redis client")


def _row_matches(row: Mapping[str, Any], record_filter: RecordFilter) -> bool:
    for key, expected in record_filter.equals.items():
        actual = row.get(key)
        if actual != expected and str(actual) != str(expected):
            return False
    return True
