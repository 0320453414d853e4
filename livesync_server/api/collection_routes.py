from __future__ import annotations

import asyncio
import concurrent.futures
from collections.abc import Callable
from typing import Any

from flask import Blueprint, current_app, jsonify
from loguru import logger

collection_bp = Blueprint("collection", __name__)


def _run_on_loop(func: Callable[[], Any]) -> Any:
    """Evaluate ``func`` on the collection's event loop and wait for it."""

    loop: asyncio.AbstractEventLoop = current_app.config["LIVESYNC_LOOP"]
    timeout = current_app.config.get("LIVESYNC_CALL_TIMEOUT", 30.0)

    async def _invoke() -> Any:
        result = func()
        if asyncio.iscoroutine(result):
            result = await result
        return result

    future = asyncio.run_coroutine_threadsafe(_invoke(), loop)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise


@collection_bp.route("/collection/records", methods=["GET"])
def list_records():
    collection = current_app.config["LIVESYNC_COLLECTION"]
    snapshot = _run_on_loop(collection.snapshot)
    return jsonify(
        {
            "table": snapshot["table"],
            "count": len(snapshot["records"]),
            "records": snapshot["records"],
        }
    )


@collection_bp.route("/collection/state", methods=["GET"])
def collection_state():
    collection = current_app.config["LIVESYNC_COLLECTION"]
    snapshot = _run_on_loop(collection.snapshot)
    return jsonify(
        {
            "table": snapshot["table"],
            "filter": snapshot["filter"],
            "mode": snapshot["mode"],
            "subscription_state": snapshot["subscription_state"],
            "transitions": snapshot["transitions"],
            "dropped_events": snapshot["dropped_events"],
        }
    )


@collection_bp.route("/collection/refresh", methods=["POST"])
def refresh_collection():
    collection = current_app.config["LIVESYNC_COLLECTION"]
    try:
        ok = bool(_run_on_loop(collection.refresh))
    except concurrent.futures.TimeoutError:
        logger.warning("Refresh of {} timed out", collection.filter.table)
        ok = False
    return jsonify({"ok": ok}), (200 if ok else 503)


@collection_bp.route("/health", methods=["GET"])
def health():
    collection = current_app.config["LIVESYNC_COLLECTION"]
    return jsonify({"status": "ok", "mode": collection.mode.value})
