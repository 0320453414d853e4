"""Orchestrator keeping a live collection in sync with a record store."""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Any

from loguru import logger

from ..config.settings import LiveSyncSettings
from ..utils.exceptions import (
    ConnectionError,
    ExceptionHandler,
    FetchError,
    MalformedEventError,
)
from .base import (
    ChangeEvent,
    ChangeKind,
    ChangeSubscription,
    ChannelStatus,
    ModeTransition,
    Record,
    RecordFilter,
    RecordStore,
    SubscriptionState,
    SyncMode,
)
from .mirror import LocalMirror
from .polling import PollingFallback
from .reconcile import supersedes
from .reconnect import ReconnectionManager

RecordCallback = Callable[[Record], None]
DeleteCallback = Callable[[str], None]
TransitionCallback = Callable[[ModeTransition], None]

MSG_CONNECTED = "Real-time updates connected"
MSG_UNAVAILABLE = "Real-time updates unavailable, polling for changes"
MSG_DEGRADED = "Real-time connection lost, switching to polling"
MSG_RESTORED = "Real-time updates restored"


class LiveCollection:
    """Mirror of one filtered collection, fed by a change feed or by polling.

    The instance owns its mirror, subscription handle and timers. Consumers
    read :attr:`records` and :attr:`subscription_state` (immutable snapshots)
    and may call :meth:`refresh`. Nothing raised by the store escapes the
    running engine; failures end up in ``subscription_state.last_error``.
    """

    def __init__(
        self,
        store: RecordStore,
        record_filter: RecordFilter,
        settings: LiveSyncSettings | None = None,
        *,
        on_insert: RecordCallback | None = None,
        on_update: RecordCallback | None = None,
        on_delete: DeleteCallback | None = None,
        on_transition: TransitionCallback | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.filter = record_filter
        self.settings = settings or LiveSyncSettings()
        self._on_insert = on_insert
        self._on_update = on_update
        self._on_delete = on_delete
        self._on_transition = on_transition

        mirror_settings = self.settings.mirror
        self._id_field = mirror_settings.id_field
        self._updated_at_field = mirror_settings.updated_at_field
        self._mirror = LocalMirror(tombstone_ttl=mirror_settings.tombstone_ttl, clock=clock)
        self._reconnect = ReconnectionManager.from_settings(self.settings.reconnect, rng=rng)
        self._polling = PollingFallback(
            partial(self._sync_from_store, "poll"),
            interval=self.settings.polling.interval,
        )

        self._state = SubscriptionState()
        self._mode = SyncMode.INITIALIZING
        self._transitions: deque[ModeTransition] = deque(
            maxlen=mirror_settings.transition_history
        )
        self._subscription: ChangeSubscription | None = None
        self._generation = 0
        self._connect_watchdog: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._ready: asyncio.Event | None = None
        self._initial_loaded = False
        self._started = False
        self._closed = False
        self.dropped_events = 0
        self._log = logger.bind(component="livesync", table=record_filter.table)

    # ------------------------------------------------------------------
    # Consumer-facing view
    # ------------------------------------------------------------------
    @property
    def records(self) -> tuple[Record, ...]:
        return self._mirror.records

    @property
    def subscription_state(self) -> SubscriptionState:
        return self._state

    @property
    def mode(self) -> SyncMode:
        return self._mode

    @property
    def transitions(self) -> tuple[ModeTransition, ...]:
        return tuple(self._transitions)

    @property
    def initial_data_loaded(self) -> bool:
        return self._initial_loaded

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> dict[str, object]:
        """Return a JSON-serialisable view of records and status."""

        return {
            "table": self.filter.table,
            "filter": self.filter.describe(),
            "mode": self._mode.value,
            "records": [
                record.to_dict(
                    id_field=self._id_field, updated_at_field=self._updated_at_field
                )
                for record in self._mirror.records
            ],
            "subscription_state": self._state.to_dict(),
            "transitions": [transition.to_dict() for transition in self._transitions],
            "dropped_events": self.dropped_events,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Initial fetch, then open the change feed."""

        if self._started or self._closed:
            return
        self._started = True
        self._ready = asyncio.Event()
        self._log.info("Starting live collection {}", self.filter.describe())
        await self._sync_from_store("initial")
        if self._closed:
            return
        self._open_channel()

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait until the collection has left ``INITIALIZING``."""

        if self._mode is not SyncMode.INITIALIZING:
            return True
        if self._ready is None:
            return False
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self._mode is not SyncMode.INITIALIZING

    def close(self) -> None:
        """Tear down: close the channel and cancel every timer (idempotent)."""

        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self._close_subscription()
        self._reconnect.cancel()
        self._polling.stop()
        self._cancel_watchdog()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._mode = SyncMode.TORN_DOWN
        self._state = self._state.evolve(is_connected=False, is_polling=False)
        self._mirror.clear()
        if self._ready is not None:
            self._ready.set()
        self._log.debug("Live collection {} torn down", self.filter.describe())

    async def __aenter__(self) -> LiveCollection:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def refresh(self) -> bool:
        """Fetch and merge now; ``False`` (mirror untouched) on failure."""

        return await self._sync_from_store("refresh")

    def reconnect(self) -> bool:
        """Reset backoff and probe the change feed immediately while degraded."""

        if self._closed or self._mode is not SyncMode.DEGRADED:
            return False
        self._log.info("Probing change feed for {}", self.filter.table)
        self._reconnect.reset()
        self._state = self._state.evolve(reconnect_attempts=0, retries_exhausted=False)
        self._open_channel()
        return True

    def notify_network_status(self, online: bool) -> bool:
        if online:
            return self.reconnect()
        self._log.info("Network reported offline; keeping current mode {}", self._mode.value)
        return False

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    async def _sync_from_store(self, reason: str) -> bool:
        if self._closed:
            return False
        since = self._mirror.sequence
        try:
            rows = await self.store.fetch_all(self.filter)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = ExceptionHandler.wrap(
                exc,
                FetchError,
                f"Failed to fetch {self.filter.table}: {exc}",
                context={"table": self.filter.table, "reason": reason},
            )
            if not self._closed:
                self._state = self._state.evolve(last_error=error)
            ExceptionHandler.log_exception(
                error, logger=self._log, level="warning", message=f"{reason} fetch failed"
            )
            return False

        if self._closed:
            return False

        records = self._parse_rows(rows)
        in_scope = [
            record
            for record in records
            if self.filter.matches(record, id_field=self._id_field)
        ]
        accepted = self._mirror.merge(in_scope)
        pruned: list[str] = []
        if self.settings.mirror.prune_missing:
            pruned = self._mirror.prune_missing({record.id for record in in_scope}, since)
        self._initial_loaded = True
        self._state = self._state.evolve(
            last_sync_time=datetime.now(timezone.utc), last_error=None
        )
        self._log.debug(
            "{} fetch: {} rows, {} accepted, {} pruned",
            reason,
            len(records),
            len(accepted),
            len(pruned),
        )
        return True

    def _parse_rows(self, rows: Any) -> list[Record]:
        records: list[Record] = []
        for row in rows or ():
            try:
                records.append(
                    Record.from_dict(
                        row,
                        id_field=self._id_field,
                        updated_at_field=self._updated_at_field,
                    )
                )
            except MalformedEventError as exc:
                self.dropped_events += 1
                self._log.warning("Skipping malformed row: {}", exc)
        return records

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------
    def _open_channel(self) -> None:
        if self._closed:
            return
        self._close_subscription()
        self._generation += 1
        generation = self._generation
        try:
            subscription = self.store.subscribe(
                self.filter,
                partial(self._handle_payload, generation),
                partial(self._handle_status, generation),
            )
        except Exception as exc:
            self._channel_failed(
                generation,
                ExceptionHandler.wrap(
                    exc,
                    ConnectionError,
                    f"Failed to open change feed for {self.filter.table}: {exc}",
                    context={"table": self.filter.table},
                ),
            )
            return

        if generation != self._generation:
            # Failed synchronously while subscribing; the handle is already stale.
            self._release(subscription)
            return
        self._subscription = subscription
        if self._mode is not SyncMode.LIVE:
            self._start_watchdog(generation)

    def _handle_status(
        self, generation: int, status: ChannelStatus, error: Exception | None = None
    ) -> None:
        if self._closed or generation != self._generation:
            self._log.debug("Ignoring {} from a stale subscription", status)
            return
        status = ChannelStatus(status)
        if status is ChannelStatus.CONNECTING:
            self._log.debug("Change feed for {} connecting", self.filter.table)
        elif status is ChannelStatus.CONNECTED:
            self._channel_connected()
        else:
            if error is None:
                message = f"Change feed for {self.filter.table} reported {status.value}"
            else:
                message = f"Change feed for {self.filter.table} failed: {error}"
            self._channel_failed(
                generation,
                ExceptionHandler.wrap(
                    error or RuntimeError(status.value),
                    ConnectionError,
                    message,
                    context={"table": self.filter.table, "status": status.value},
                ),
            )

    def _channel_connected(self) -> None:
        self._cancel_watchdog()
        self._reconnect.reset()
        self._polling.stop()
        previous = self._mode
        self._mode = SyncMode.LIVE
        last_error = self._state.last_error
        if isinstance(last_error, ConnectionError):
            last_error = None
        self._state = self._state.evolve(
            is_connected=True,
            is_polling=False,
            last_error=last_error,
            reconnect_attempts=0,
            retries_exhausted=False,
        )
        if previous is SyncMode.DEGRADED:
            self._transition(previous, SyncMode.LIVE, MSG_RESTORED)
            if self.settings.mirror.resync_on_reconnect or not self._initial_loaded:
                self._spawn(self._sync_from_store("resync"))
        elif previous is SyncMode.INITIALIZING:
            self._transition(previous, SyncMode.LIVE, MSG_CONNECTED)
            if not self._initial_loaded:
                # Initial fetch failed; catch up once the feed is up.
                self._spawn(self._sync_from_store("catch-up"))

    def _channel_failed(self, generation: int, error: Exception) -> None:
        if self._closed or generation != self._generation:
            return
        self._generation += 1
        self._cancel_watchdog()
        self._close_subscription()

        previous = self._mode
        self._mode = SyncMode.DEGRADED
        self._state = self._state.evolve(
            is_connected=False, is_polling=True, last_error=error
        )
        if previous is SyncMode.LIVE:
            self._transition(previous, SyncMode.DEGRADED, MSG_DEGRADED)
        elif previous is SyncMode.INITIALIZING:
            self._transition(previous, SyncMode.DEGRADED, MSG_UNAVAILABLE)
        else:
            self._log.info("Change feed retry for {} failed: {}", self.filter.table, error)

        self._polling.start()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect.exhausted:
            if not self._state.retries_exhausted:
                self._log.warning(
                    "Change feed for {} gave up after {} attempts; falling back to polling permanently",
                    self.filter.table,
                    self._reconnect.attempt,
                )
                self._state = self._state.evolve(retries_exhausted=True)
            return
        delay = self._reconnect.schedule(self._open_channel)
        attempt = self._reconnect.record_failure()
        self._state = self._state.evolve(reconnect_attempts=attempt)
        limit = self._reconnect.max_attempts
        self._log.info(
            "Retrying change feed for {} in {:.1f}s (attempt {}/{})",
            self.filter.table,
            delay,
            attempt,
            "inf" if limit is None else limit,
        )

    def _handle_payload(self, generation: int, payload: Any) -> None:
        if self._closed or generation != self._generation:
            return
        try:
            event = ChangeEvent.from_payload(
                payload,
                id_field=self._id_field,
                updated_at_field=self._updated_at_field,
            )
        except MalformedEventError as exc:
            self.dropped_events += 1
            self._log.warning("Dropping malformed change event: {}", exc)
            return
        self.apply_event(event)

    def apply_event(self, event: ChangeEvent) -> bool:
        """Reconcile one change into the mirror; returns whether it changed."""

        if self._closed:
            return False
        if event.kind is ChangeKind.DELETE:
            if self._mirror.remove(event.id):
                self._notify(self._on_delete, event.id)
                return True
            return False

        record = event.record
        if not self.filter.matches(record, id_field=self._id_field):
            current = self._mirror.get(record.id)
            if current is not None and supersedes(record, current):
                self._mirror.remove(record.id, tombstone=False)
                self._notify(self._on_delete, record.id)
                return True
            return False

        if not self._mirror.merge([record]):
            self._log.debug("Ignoring stale {} for {}", event.kind.value, record.id)
            return False
        callback = self._on_insert if event.kind is ChangeKind.INSERT else self._on_update
        self._notify(callback, record)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _start_watchdog(self, generation: int) -> None:
        self._cancel_watchdog()
        timeout = self.settings.reconnect.connect_timeout
        self._connect_watchdog = asyncio.get_running_loop().create_task(
            self._watch_connect(generation, timeout), name="livesync-connect-timeout"
        )

    async def _watch_connect(self, generation: int, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._connect_watchdog is asyncio.current_task():
            self._connect_watchdog = None
        if generation == self._generation and self._mode is not SyncMode.LIVE:
            self._channel_failed(
                generation,
                ConnectionError(
                    f"Change feed for {self.filter.table} did not connect within {timeout}s",
                    context={"table": self.filter.table, "timeout": timeout},
                ),
            )

    def _cancel_watchdog(self) -> None:
        task, self._connect_watchdog = self._connect_watchdog, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            self._release(subscription)

    def _release(self, subscription: ChangeSubscription) -> None:
        try:
            self.store.unsubscribe(subscription)
        except Exception:  # pragma: no cover - consumer callback failure
            logger.opt(exception=True).debug("Error while closing change subscription")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._closed:
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _transition(self, previous: SyncMode, current: SyncMode, message: str) -> None:
        transition = ModeTransition(previous=previous, current=current, message=message)
        self._transitions.append(transition)
        if current is SyncMode.DEGRADED:
            self._log.warning("{} ({})", message, self.filter.table)
        else:
            self._log.info("{} ({})", message, self.filter.table)
        if previous is SyncMode.INITIALIZING and self._ready is not None:
            self._ready.set()
        self._notify(self._on_transition, transition)

    def _notify(self, callback: Callable[[Any], None] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as exc:  # pragma: no cover - consumer callback failure
            logger.opt(exception=True).warning("Live collection callback failure: {}", exc)


@asynccontextmanager
async def use_live_collection(
    store: RecordStore,
    record_filter: RecordFilter,
    settings: LiveSyncSettings | None = None,
    **options: Any,
) -> AsyncIterator[LiveCollection]:
    """Start a :class:`LiveCollection` for the block and tear it down after."""

    collection = LiveCollection(store, record_filter, settings, **options)
    try:
        await collection.start()
        yield collection
    finally:
        collection.close()


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
