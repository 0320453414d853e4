"""PostgreSQL record store: SQLAlchemy queries plus a LISTEN/NOTIFY change feed."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy import column, create_engine, literal_column, select, table
from sqlalchemy.engine import Engine, make_url

from ..utils.exceptions import ConfigurationError, ConnectionError
from .base import (
    ChangeSubscription,
    ChannelStatus,
    EventHandler,
    RecordFilter,
    StatusHandler,
)

try:  # pragma: no cover - optional dependency resolution
    import psycopg  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - handled during store creation
    psycopg = None  # type: ignore[assignment]


NOTIFY_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION {function}() RETURNS trigger AS $$
DECLARE
    body jsonb;
BEGIN
    body := jsonb_build_object('type', TG_OP, 'table', TG_TABLE_NAME);
    IF TG_OP = 'DELETE' THEN
        body := body || jsonb_build_object(
            'old_record', jsonb_build_object('{id_field}', OLD.{id_field})
        );
    ELSE
        body := body || jsonb_build_object('record', to_jsonb(NEW));
    END IF;
    PERFORM pg_notify('{channel}', body::text);
    RETURN NULL;
END;
$$ LANGUAGE plpgsql
"""

NOTIFY_TRIGGER_SQL = """
CREATE TRIGGER {trigger}
AFTER INSERT OR UPDATE OR DELETE ON {table}
FOR EACH ROW EXECUTE FUNCTION {function}()
"""


def _validate_identifier(value: str, kind: str) -> str:
    segments = (value or "").split(".")
    if not all(segment and segment.replace("_", "").isalnum() for segment in segments):
        raise ConfigurationError(
            f"Postgres {kind} names must be alphanumeric with optional underscores",
            context={kind: value},
        )
    return value


def _split_table(name: str) -> tuple[str | None, str]:
    if "." in name:
        schema, _, bare = name.rpartition(".")
        return schema, bare
    return None, name


def _sqlalchemy_url(dsn: str) -> str:
    url = make_url(dsn)
    if url.drivername in {"postgres", "postgresql"}:
        url = url.set(drivername="postgresql+psycopg")
    return url.render_as_string(hide_password=False)


def _libpq_dsn(dsn: str) -> str:
    url = make_url(dsn)
    return url.set(drivername="postgresql").render_as_string(hide_password=False)


class _PostgresSubscription:
    """LISTEN on a channel and feed matching notifications to a handler."""

    def __init__(
        self,
        connect: Callable[[], Any],
        channel: str,
        record_filter: RecordFilter,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> None:
        self._connect = connect
        self._channel = channel
        self._table = _split_table(record_filter.table)[1]
        self._on_event = on_event
        self._on_status = on_status
        self._closed = False
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._on_status(ChannelStatus.CONNECTING, None)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"postgres-listen-{self._channel}"
        )

    async def _run(self) -> None:
        connection: Any | None = None
        try:
            try:
                connection = await self._connect()
                await connection.execute(f"LISTEN {self._channel}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.opt(exception=True).warning(
                    "PostgresRecordStore failed to LISTEN on channel '{}'",
                    self._channel,
                )
                self._report(ChannelStatus.ERROR, ConnectionError(str(exc)))
                return

            self._report(ChannelStatus.CONNECTED, None)
            try:
                async for notify in connection.notifies():
                    if self._closed:
                        break
                    self._dispatch(getattr(notify, "payload", None))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.opt(exception=True).warning("Postgres notification listener error")
                self._report(ChannelStatus.ERROR, ConnectionError(str(exc)))
                return
            self._report(ChannelStatus.CLOSED, None)
        finally:
            if connection is not None:
                try:
                    await connection.close()
                except Exception:
                    logger.opt(exception=True).debug(
                        "Error closing PostgreSQL listener connection"
                    )

    def _dispatch(self, payload: Any) -> None:
        if payload is None:
            return
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", "ignore")
        try:
            decoded = json.loads(payload)
        except (TypeError, ValueError):
            logger.warning("Undecodable PostgreSQL notification payload")
            decoded = payload
        if isinstance(decoded, dict) and decoded.get("table") not in (None, self._table):
            return
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


class PostgresRecordStore:
    """Record store backed by a PostgreSQL table and ``pg_notify`` triggers."""

    def __init__(
        self,
        dsn: str,
        *,
        channel: str = "livesync",
        engine: Engine | None = None,
        connect_kwargs: dict[str, Any] | None = None,
        engine_kwargs: dict[str, Any] | None = None,
        id_field: str = "id",
    ) -> None:
        if psycopg is None:  # pragma: no cover - optional dependency
            raise ConfigurationError(
                "psycopg (v3) is required to use PostgresRecordStore."
            )
        if not dsn:
            raise ConfigurationError("PostgresRecordStore requires a PostgreSQL DSN")
        self._dsn = dsn
        self._channel = _validate_identifier(channel or "livesync", "channel")
        self._id_field = _validate_identifier(id_field, "column")
        self._connect_kwargs = dict(connect_kwargs or {})
        try:
            self._engine = engine or create_engine(
                _sqlalchemy_url(dsn), **dict(engine_kwargs or {})
            )
        except Exception as exc:
            raise ConfigurationError(f"Invalid PostgreSQL DSN: {exc}") from exc
        self._subscriptions: list[_PostgresSubscription] = []

    @property
    def channel(self) -> str:
        return self._channel

    async def fetch_all(self, record_filter: RecordFilter) -> list[dict[str, Any]]:
        _validate_identifier(record_filter.table, "table")
        return await asyncio.to_thread(self._select_rows, record_filter)

    def _select_rows(self, record_filter: RecordFilter) -> list[dict[str, Any]]:
        schema, bare = _split_table(record_filter.table)
        source = table(bare, schema=schema)
        statement = select(literal_column("*")).select_from(source)
        for key, value in record_filter.equals.items():
            statement = statement.where(column(key) == value)
        if record_filter.range_field:
            target = column(record_filter.range_field)
            if record_filter.start is not None:
                statement = statement.where(target >= record_filter.start)
            if record_filter.end is not None:
                statement = statement.where(target <= record_filter.end)
        with self._engine.connect() as connection:
            result = connection.execute(statement)
            return [dict(row._mapping) for row in result]

    def subscribe(
        self,
        record_filter: RecordFilter,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChangeSubscription:
        def connect() -> Any:
            return psycopg.AsyncConnection.connect(
                _libpq_dsn(self._dsn), autocommit=True, **self._connect_kwargs
            )

        subscription = _PostgresSubscription(
            connect, self._channel, record_filter, on_event, on_status
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

    def install_notify_trigger(self, table_name: str) -> None:
        """Create the trigger publishing row changes of ``table_name``.

        NOTIFY payloads are capped at 8000 bytes by PostgreSQL; very wide rows
        need a trigger that sends the id only.
        """

        _validate_identifier(table_name, "table")
        bare = _split_table(table_name)[1]
        function = f"{self._channel}_{bare}_notify"
        trigger = f"{function}_trigger"
        with self._engine.begin() as connection:
            connection.exec_driver_sql(
                NOTIFY_FUNCTION_SQL.format(
                    function=function, id_field=self._id_field, channel=self._channel
                )
            )
            connection.exec_driver_sql(f"DROP TRIGGER IF EXISTS {trigger} ON {table_name}")
            connection.exec_driver_sql(
                NOTIFY_TRIGGER_SQL.format(trigger=trigger, table=table_name, function=function)
            )
        logger.info("Installed change trigger {} on {}", trigger, table_name)

    def close(self) -> None:
        subscriptions = list(self._subscriptions)
        self._subscriptions.clear()
        for subscription in subscriptions:
            try:
                subscription.close()
            except Exception:  # pragma: no cover - shutdown guard
                logger.opt(exception=True).debug(
                    "Error while closing PostgreSQL subscription"
                )
        self._engine.dispose()
