"""Command line interface for watching and serving live collections."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import threading
from collections.abc import Sequence
from typing import Any

from loguru import logger

from livesync.config.settings import LiveSyncSettings, load_settings
from livesync.sync.base import ModeTransition, RecordFilter
from livesync.sync.coordinator import LiveCollection
from livesync.sync.factory import create_record_store
from livesync.utils.exceptions import ConfigurationError, LiveSyncError
from livesync.utils.logging import LoggingManager


def _parse_where(values: Sequence[str] | None) -> dict[str, Any]:
    """Turn ``key=value`` pairs into equality predicates.

    Values that parse as JSON scalars (numbers, booleans) keep that type;
    everything else is matched as a string.
    """

    equals: dict[str, Any] = {}
    for item in values or ():
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigurationError(
                f"Invalid --where predicate {item!r}; expected key=value"
            )
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw
        if isinstance(value, (dict, list)) or value is None:
            value = raw
        equals[key] = value
    return equals


def _load(args: argparse.Namespace) -> LiveSyncSettings:
    settings = load_settings(getattr(args, "config", None))
    verbose = bool(getattr(args, "verbose", False)) or settings.verbose
    LoggingManager.setup_logging(settings.logging, verbose=verbose)
    return settings


def _record_filter(args: argparse.Namespace) -> RecordFilter:
    return RecordFilter(table=args.table, equals=_parse_where(args.where))


def _log_transition(transition: ModeTransition) -> None:
    logger.info(
        "[{}] {} -> {}: {}",
        transition.at.isoformat(timespec="seconds"),
        transition.previous.value,
        transition.current.value,
        transition.message,
    )


async def _watch(
    settings: LiveSyncSettings,
    record_filter: RecordFilter,
    duration: float | None,
) -> dict[str, object]:
    store = create_record_store(settings)
    collection = LiveCollection(
        store,
        record_filter,
        settings,
        on_insert=lambda record: logger.info("insert {}", record.id),
        on_update=lambda record: logger.info("update {}", record.id),
        on_delete=lambda record_id: logger.info("delete {}", record_id),
        on_transition=_log_transition,
    )
    try:
        await collection.start()
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
        return collection.snapshot()
    finally:
        collection.close()
        store.close()


def _handle_watch(args: argparse.Namespace) -> int:
    """Mirror a collection and print its final snapshot as JSON."""

    try:
        settings = _load(args)
        record_filter = _record_filter(args)
        snapshot = asyncio.run(_watch(settings, record_filter, args.duration))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130
    print(json.dumps(snapshot, indent=2, default=str))
    return 0


def _handle_serve(args: argparse.Namespace) -> int:
    """Run a collection on a background loop and expose it over HTTP."""

    from livesync_server.api import create_app

    try:
        settings = _load(args)
        record_filter = _record_filter(args)
        store = create_record_store(settings)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, name="livesync-loop", daemon=True)
    thread.start()
    collection = LiveCollection(
        store, record_filter, settings, on_transition=_log_transition
    )
    try:
        asyncio.run_coroutine_threadsafe(collection.start(), loop).result()
        app = create_app(collection, loop)
        app.run(host=args.host, port=args.port, debug=False, use_reloader=False)
    except LiveSyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        loop.call_soon_threadsafe(collection.close)
        loop.call_soon_threadsafe(store.close)
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5.0)
        loop.close()
    return 0


def _handle_config_show(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    print(json.dumps(settings.export(include_sensitive=args.show_secrets), indent=2))
    return 0


def _add_collection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--table", required=True, help="Collection to mirror.")
    parser.add_argument(
        "--where",
        action="append",
        metavar="KEY=VALUE",
        help="Equality predicate; repeat for several columns.",
    )
    parser.add_argument("--config", help="JSON or YAML settings file.")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="livesync",
        description="Keep a local mirror of a remote collection in sync.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    watch = subparsers.add_parser(
        "watch",
        help="Mirror a collection, logging changes and mode transitions.",
    )
    _add_collection_arguments(watch)
    watch.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted).",
    )
    watch.set_defaults(func=_handle_watch)

    serve = subparsers.add_parser(
        "serve",
        help="Mirror a collection and expose it through a read-only HTTP API.",
    )
    _add_collection_arguments(serve)
    serve.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    serve.add_argument("--port", type=int, default=8080, help="Port to listen on.")
    serve.set_defaults(func=_handle_serve)

    config = subparsers.add_parser("config", help="Inspect configuration.")
    config_sub = config.add_subparsers(dest="config_command")
    config_sub.required = True
    show = config_sub.add_parser("show", help="Print the effective settings.")
    show.add_argument("--config", help="JSON or YAML settings file.")
    show.add_argument(
        "--show-secrets",
        action="store_true",
        help="Include connection URLs instead of redacting them.",
    )
    show.set_defaults(func=_handle_config_show)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":  # pragma: no cover - invoked manually
    sys.exit(main())
