"""Behavioural tests for the LiveCollection orchestrator."""

from __future__ import annotations

import asyncio

from loguru import logger as loguru_logger

from livesync.sync.base import ChangeEvent, ChannelStatus, Record, RecordFilter, SyncMode
from livesync.sync.coordinator import (
    MSG_CONNECTED,
    MSG_DEGRADED,
    MSG_RESTORED,
    MSG_UNAVAILABLE,
    LiveCollection,
    use_live_collection,
)
from livesync.sync.inmemory import InMemoryRecordStore
from livesync.utils.exceptions import ConnectionError, FetchError

TABLE = "measurements"


def _ts(second: int) -> str:
    return f"2024-05-01T12:00:{second:02d}Z"


def _ids(collection: LiveCollection) -> list[str]:
    return [record.id for record in collection.records]


async def _wait_for(predicate, *, timeout: float = 2.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class _ManualSubscription:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class _ManualStore:
    """Store whose change-feed status is driven by the test."""

    def __init__(self, rows=None, *, fail_subscribe=False, raise_on_subscribe=False):
        self.rows = list(rows or [])
        self.fail_subscribe = fail_subscribe
        self.raise_on_subscribe = raise_on_subscribe
        self.fail_fetch = False
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_calls = 0
        self.handlers: list = []
        self.subscriptions: list[_ManualSubscription] = []

    async def fetch_all(self, record_filter):
        self.fetch_calls += 1
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fail_fetch:
            raise RuntimeError("backend unreachable")
        return [dict(row) if isinstance(row, dict) else row for row in self.rows]

    def subscribe(self, record_filter, on_event, on_status):
        if self.raise_on_subscribe:
            raise RuntimeError("socket refused")
        subscription = _ManualSubscription()
        self.subscriptions.append(subscription)
        self.handlers.append((on_event, on_status))
        on_status(ChannelStatus.CONNECTING, None)
        if self.fail_subscribe:
            on_status(ChannelStatus.ERROR, RuntimeError("handshake rejected"))
        return subscription

    def unsubscribe(self, subscription):
        subscription.close()

    def close(self):
        pass


def test_initial_fetch_then_live(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0), "value": 1.5})
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        ready = await collection.wait_ready(timeout=1.0)
        result = (ready, collection.mode, _ids(collection), collection.subscription_state,
                  collection.transitions, collection.initial_data_loaded)
        collection.close()
        return result

    ready, mode, ids, state, transitions, loaded = asyncio.run(scenario())

    assert ready is True
    assert mode is SyncMode.LIVE
    assert ids == ["A"]
    assert loaded is True
    assert state.is_connected is True
    assert state.is_polling is False
    assert state.last_sync_time is not None
    assert [t.message for t in transitions] == [MSG_CONNECTED]


def test_scenario_insert_then_stale_update(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0), "v": "original"})
        async with use_live_collection(store, RecordFilter(TABLE), fast_settings()) as collection:
            await collection.wait_ready(timeout=1.0)
            assert _ids(collection) == ["A"]

            store.insert(TABLE, {"id": "B", "updated_at": _ts(1)})
            assert await _wait_for(lambda: _ids(collection) == ["B", "A"])
            before = collection.records

            store.publish_raw(
                TABLE,
                ChangeEvent.update(Record("A", "2024-05-01T11:59:00Z", {"v": "stale"})).to_payload(TABLE),
            )
            store.insert(TABLE, {"id": "C", "updated_at": _ts(2)})
            assert await _wait_for(lambda: "C" in _ids(collection))
            return before, collection.records

    before, after = asyncio.run(scenario())

    assert [r for r in after if r.id != "C"] == list(before)
    assert next(r for r in after if r.id == "A").get("v") == "original"


def test_degrade_on_close_starts_polling(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0)})
        captured = []
        collection = LiveCollection(
            store,
            RecordFilter(TABLE),
            fast_settings(reconnect={"base_delay": 30.0}),
            on_transition=lambda t: captured.append((t, collection.subscription_state)),
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)

        store.disconnect_subscribers()
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        fetches = store.fetch_count
        store.insert(TABLE, {"id": "B", "updated_at": _ts(5)})
        assert await _wait_for(lambda: "B" in _ids(collection))
        result = (collection.subscription_state, captured, store.fetch_count - fetches)
        collection.close()
        return result

    state, captured, polled = asyncio.run(scenario())

    assert state.is_polling is True
    assert state.is_connected is False
    assert state.reconnect_attempts == 1
    assert polled >= 1
    transition, at_transition = captured[-1]
    assert transition.previous is SyncMode.LIVE
    assert transition.current is SyncMode.DEGRADED
    assert transition.message == MSG_DEGRADED
    assert isinstance(at_transition.last_error, ConnectionError)


def test_recover_on_reconnect_stops_polling(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        settings = fast_settings(
            reconnect={"base_delay": 0.03},
            mirror={"resync_on_reconnect": False},
        )
        collection = LiveCollection(store, RecordFilter(TABLE), settings)
        await collection.start()
        await collection.wait_ready(timeout=1.0)

        store.disconnect_subscribers(RuntimeError("socket reset"))
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        assert await _wait_for(lambda: collection.mode is SyncMode.LIVE)
        fetches = store.fetch_count
        await asyncio.sleep(0.06)
        result = (collection.subscription_state, collection.transitions, store.fetch_count - fetches)
        collection.close()
        return result

    state, transitions, extra_fetches = asyncio.run(scenario())

    assert state.is_polling is False
    assert state.is_connected is True
    assert state.reconnect_attempts == 0
    assert state.last_error is None
    assert extra_fetches == 0
    assert [t.message for t in transitions] == [MSG_CONNECTED, MSG_DEGRADED, MSG_RESTORED]


def test_resync_on_reconnect_fetches_once(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(reconnect={"base_delay": 0.03}, polling={"interval": 10.0})
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)

        store.disconnect_subscribers()
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        store.insert(TABLE, {"id": "missed", "updated_at": _ts(3)})
        assert await _wait_for(lambda: collection.mode is SyncMode.LIVE)
        assert await _wait_for(lambda: "missed" in _ids(collection))
        collection.close()
        return store.fetch_count

    assert asyncio.run(scenario()) == 2


def test_fetch_failure_keeps_mirror(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0)})
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(reconnect={"base_delay": 30.0})
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        store.disconnect_subscribers()
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        before = collection.records

        store.set_available(False)
        assert await _wait_for(
            lambda: isinstance(collection.subscription_state.last_error, FetchError)
        )
        during = collection.records
        refreshed = await collection.refresh()

        store.set_available(True)
        assert await _wait_for(lambda: collection.subscription_state.last_error is None)
        collection.close()
        return before, during, refreshed

    before, during, refreshed = asyncio.run(scenario())

    assert during == before
    assert [r.id for r in during] == ["A"]
    assert refreshed is False


def test_refresh_returns_true_and_merges(fast_settings):
    async def scenario():
        store = _ManualStore([{"id": "A", "updated_at": _ts(0)}])
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        store.rows.append({"id": "B", "updated_at": _ts(1)})
        ok = await collection.refresh()
        result = (ok, _ids(collection))
        collection.close()
        return result

    assert asyncio.run(scenario()) == (True, ["B", "A"])


def test_malformed_events_are_dropped(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0)})
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        before = collection.records

        store.publish_raw(TABLE, "{not json")
        store.publish_raw(TABLE, {"type": "TRUNCATE", "table": TABLE})
        store.publish_raw(TABLE, {"type": "INSERT", "table": TABLE, "record": {"id": "X"}})
        store.insert(TABLE, {"id": "B", "updated_at": _ts(1)})
        assert await _wait_for(lambda: "B" in _ids(collection))
        result = (
            collection.dropped_events,
            [r for r in collection.records if r.id != "B"],
            before,
            collection.mode,
            collection.subscription_state.last_error,
        )
        collection.close()
        return result

    dropped, remaining, before, mode, last_error = asyncio.run(scenario())

    assert dropped == 3
    assert remaining == list(before)
    assert mode is SyncMode.LIVE
    assert last_error is None


def test_malformed_fetched_rows_are_skipped(fast_settings):
    async def scenario():
        store = _ManualStore([{"id": "A", "updated_at": _ts(0)}, {"id": "broken"}, "junk"])
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        result = (_ids(collection), collection.dropped_events)
        collection.close()
        return result

    assert asyncio.run(scenario()) == (["A"], 2)


def test_teardown_during_initialization(fast_settings):
    async def scenario():
        store = InMemoryRecordStore(latency=0.05)
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0)})
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        start = asyncio.create_task(collection.start())
        await asyncio.sleep(0)
        collection.close()
        collection.close()
        await start
        await asyncio.sleep(0.02)
        return collection, store

    collection, store = asyncio.run(scenario())

    assert collection.closed
    assert collection.mode is SyncMode.TORN_DOWN
    assert collection.records == ()
    assert store.subscriber_count == 0
    assert collection.subscription_state.is_polling is False


def test_close_releases_channel_and_timers(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(reconnect={"base_delay": 30.0})
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        store.disconnect_subscribers()
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        fetches = store.fetch_count
        collection.close()
        await asyncio.sleep(0.05)
        pending = [
            task for task in asyncio.all_tasks() if task is not asyncio.current_task()
        ]
        return collection, store.fetch_count - fetches, pending

    collection, extra, pending = asyncio.run(scenario())

    assert collection.mode is SyncMode.TORN_DOWN
    assert extra == 0
    assert pending == []
    assert asyncio.run(collection.refresh()) is False
    assert collection.reconnect() is False


def test_failed_initial_fetch_catches_up_once_live(fast_settings):
    async def scenario():
        store = _ManualStore([{"id": "A", "updated_at": _ts(0)}])
        store.fail_fetch = True
        collection = LiveCollection(
            store,
            RecordFilter(TABLE),
            fast_settings(reconnect={"base_delay": 30.0}, polling={"interval": 10.0}),
        )
        await collection.start()
        failed_error = collection.subscription_state.last_error
        loaded_before = collection.initial_data_loaded

        store.fail_fetch = False
        store.handlers[0][1](ChannelStatus.CONNECTED, None)
        assert await _wait_for(lambda: _ids(collection) == ["A"])
        result = (failed_error, loaded_before, collection.mode, collection.initial_data_loaded,
                  collection.subscription_state.last_error, store.fetch_calls)
        collection.close()
        return result

    failed_error, loaded_before, mode, loaded_after, last_error, fetch_calls = asyncio.run(scenario())

    assert isinstance(failed_error, FetchError)
    assert loaded_before is False
    assert mode is SyncMode.LIVE
    assert loaded_after is True
    assert last_error is None
    assert fetch_calls == 2


def test_stale_status_from_replaced_subscription_is_ignored(fast_settings):
    async def scenario():
        store = _ManualStore([{"id": "A", "updated_at": _ts(0)}])
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        first_event, first_status = store.handlers[0]
        first_status(ChannelStatus.CONNECTED, None)
        assert collection.mode is SyncMode.LIVE

        first_status(ChannelStatus.ERROR, RuntimeError("dropped"))
        assert collection.mode is SyncMode.DEGRADED
        assert store.subscriptions[0].closed
        assert await _wait_for(lambda: len(store.handlers) == 2)

        first_status(ChannelStatus.CONNECTED, None)
        first_event(
            {"type": "INSERT", "record": {"id": "ghost", "updated_at": _ts(9)}}
        )
        stale_mode = collection.mode
        stale_ids = _ids(collection)

        store.handlers[1][1](ChannelStatus.CONNECTED, None)
        result = (stale_mode, stale_ids, collection.mode)
        collection.close()
        return result

    stale_mode, stale_ids, final_mode = asyncio.run(scenario())

    assert stale_mode is SyncMode.DEGRADED
    assert stale_ids == ["A"]
    assert final_mode is SyncMode.LIVE


def test_unavailable_feed_then_retries_exhaust(fast_settings):
    async def scenario():
        store = _ManualStore([{"id": "A", "updated_at": _ts(0)}], fail_subscribe=True)
        collection = LiveCollection(
            store,
            RecordFilter(TABLE),
            fast_settings(reconnect={"max_attempts": 2}, polling={"interval": 10.0}),
        )
        await collection.start()
        ready = await collection.wait_ready(timeout=1.0)
        assert await _wait_for(lambda: collection.subscription_state.retries_exhausted)
        await asyncio.sleep(0.05)
        subscribes = len(store.handlers)
        exhausted_state = collection.subscription_state

        probed = collection.reconnect()
        after_probe = len(store.handlers)
        result = (ready, collection.mode, exhausted_state, collection.subscription_state,
                  collection.transitions, subscribes, probed, after_probe,
                  all(s.closed for s in store.subscriptions))
        collection.close()
        return result

    (ready, mode, exhausted_state, probe_state, transitions, subscribes, probed, after_probe,
     all_closed) = asyncio.run(scenario())

    assert ready is True
    assert mode is SyncMode.DEGRADED
    assert exhausted_state.is_polling is True
    assert exhausted_state.reconnect_attempts == 2
    assert exhausted_state.retries_exhausted is True
    assert [t.message for t in transitions] == [MSG_UNAVAILABLE]
    assert subscribes == 3
    assert probed is True
    assert after_probe == 4
    # The manual probe restarts the budget; its immediate failure counts once.
    assert probe_state.reconnect_attempts == 1
    assert probe_state.retries_exhausted is False
    assert all_closed


def test_subscribe_raising_degrades(fast_settings):
    async def scenario():
        store = _ManualStore([{"id": "A", "updated_at": _ts(0)}], raise_on_subscribe=True)
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(reconnect={"base_delay": 30.0})
        )
        await collection.start()
        result = (collection.mode, collection.subscription_state.last_error, _ids(collection))
        collection.close()
        return result

    mode, last_error, ids = asyncio.run(scenario())

    assert mode is SyncMode.DEGRADED
    assert isinstance(last_error, ConnectionError)
    assert isinstance(last_error.__cause__, RuntimeError)
    assert ids == ["A"]


def test_connect_timeout_degrades(fast_settings):
    async def scenario():
        store = _ManualStore()
        collection = LiveCollection(
            store,
            RecordFilter(TABLE),
            fast_settings(reconnect={"connect_timeout": 0.02, "base_delay": 30.0}),
        )
        await collection.start()
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        result = (collection.subscription_state.last_error, store.subscriptions[0].closed)
        collection.close()
        return result

    last_error, closed = asyncio.run(scenario())

    assert isinstance(last_error, ConnectionError)
    assert "did not connect" in str(last_error)
    assert closed


def test_update_leaving_filter_removes_record(fast_settings):
    async def scenario():
        deleted = []
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0), "project_id": "p1"})
        store.insert(TABLE, {"id": "Z", "updated_at": _ts(0), "project_id": "p2"})
        collection = LiveCollection(
            store,
            RecordFilter(TABLE, equals={"project_id": "p1"}),
            fast_settings(),
            on_delete=deleted.append,
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        initial = _ids(collection)

        store.insert(TABLE, {"id": "Q", "updated_at": _ts(1), "project_id": "p2"})
        store.update(TABLE, {"id": "A", "updated_at": _ts(2), "project_id": "p2"})
        assert await _wait_for(lambda: "A" not in _ids(collection))
        result = (initial, _ids(collection), deleted)
        collection.close()
        return result

    initial, ids, deleted = asyncio.run(scenario())

    assert initial == ["A"]
    assert ids == []
    assert deleted == ["A"]


def test_tombstone_rejects_late_update(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0)})
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(mirror={"tombstone_ttl": 60.0})
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)

        store.delete(TABLE, "A")
        store.publish_raw(
            TABLE, {"type": "UPDATE", "record": {"id": "A", "updated_at": _ts(5)}}
        )
        store.insert(TABLE, {"id": "B", "updated_at": _ts(1)})
        assert await _wait_for(lambda: "B" in _ids(collection))
        result = _ids(collection)
        collection.close()
        return result

    assert asyncio.run(scenario()) == ["B"]


def test_prune_missing_respects_live_events(fast_settings):
    async def scenario():
        store = _ManualStore(
            [{"id": "A", "updated_at": _ts(0)}, {"id": "B", "updated_at": _ts(1)}]
        )
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(mirror={"prune_missing": True})
        )
        await collection.start()
        on_event, on_status = store.handlers[0]
        on_status(ChannelStatus.CONNECTED, None)

        store.rows = [{"id": "A", "updated_at": _ts(0)}]
        store.fetch_gate = asyncio.Event()
        refresh = asyncio.create_task(collection.refresh())
        await asyncio.sleep(0)
        on_event({"type": "INSERT", "record": {"id": "C", "updated_at": _ts(2)}})
        store.fetch_gate.set()
        ok = await refresh
        result = (ok, _ids(collection))
        collection.close()
        return result

    ok, ids = asyncio.run(scenario())

    assert ok is True
    assert ids == ["C", "A"]


def test_without_prune_missing_records_survive_refresh(fast_settings):
    async def scenario():
        store = _ManualStore(
            [{"id": "A", "updated_at": _ts(0)}, {"id": "B", "updated_at": _ts(1)}]
        )
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        store.rows = []
        await collection.refresh()
        result = _ids(collection)
        collection.close()
        return result

    assert asyncio.run(scenario()) == ["B", "A"]


def test_consumer_callbacks(fast_settings):
    async def scenario():
        seen = []
        store = InMemoryRecordStore()
        collection = LiveCollection(
            store,
            RecordFilter(TABLE),
            fast_settings(),
            on_insert=lambda r: seen.append(("insert", r.id)),
            on_update=lambda r: seen.append(("update", r.id)),
            on_delete=lambda record_id: seen.append(("delete", record_id)),
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0)})
        store.update(TABLE, {"id": "A", "updated_at": _ts(1)})
        store.delete(TABLE, "A")
        assert await _wait_for(lambda: len(seen) == 3)
        collection.close()
        return seen

    assert asyncio.run(scenario()) == [("insert", "A"), ("update", "A"), ("delete", "A")]


def test_network_status_hints(fast_settings):
    async def scenario():
        store = _ManualStore(fail_subscribe=True)
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(reconnect={"base_delay": 30.0})
        )
        await collection.start()
        offline = collection.notify_network_status(False)
        calls_before = len(store.handlers)
        online = collection.notify_network_status(True)
        result = (offline, online, len(store.handlers) - calls_before)
        collection.close()
        return result

    assert asyncio.run(scenario()) == (False, True, 1)


def test_reconnect_is_noop_while_live(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        collection = LiveCollection(store, RecordFilter(TABLE), fast_settings())
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        result = collection.reconnect()
        collection.close()
        return result

    assert asyncio.run(scenario()) is False


def test_snapshot_is_json_friendly(fast_settings):
    async def scenario():
        store = InMemoryRecordStore()
        store.insert(TABLE, {"id": "A", "updated_at": _ts(0), "value": 2})
        async with LiveCollection(store, RecordFilter(TABLE), fast_settings()) as collection:
            await collection.wait_ready(timeout=1.0)
            return collection.snapshot()

    snapshot = asyncio.run(scenario())

    assert snapshot["table"] == TABLE
    assert snapshot["mode"] == "live"
    assert snapshot["records"] == [
        {"id": "A", "updated_at": "2024-05-01T12:00:00+00:00", "value": 2}
    ]
    assert snapshot["subscription_state"]["is_connected"] is True
    assert snapshot["transitions"][0]["current"] == "live"


def test_degradation_is_logged_as_warning(fast_settings):
    messages = []

    def sink(message):
        record = message.record
        messages.append((record["level"].name, record["message"]))

    async def scenario():
        store = InMemoryRecordStore()
        collection = LiveCollection(
            store, RecordFilter(TABLE), fast_settings(reconnect={"base_delay": 30.0})
        )
        await collection.start()
        await collection.wait_ready(timeout=1.0)
        store.disconnect_subscribers()
        assert await _wait_for(lambda: collection.mode is SyncMode.DEGRADED)
        collection.close()

    handler_id = loguru_logger.add(sink, level="DEBUG")
    try:
        asyncio.run(scenario())
    finally:
        loguru_logger.remove(handler_id)

    assert ("WARNING", f"{MSG_DEGRADED} ({TABLE})") in messages
    assert any(level == "INFO" and "Retrying change feed" in text for level, text in messages)
