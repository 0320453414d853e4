from __future__ import annotations

import asyncio
import os

from flask import Flask, current_app, jsonify, request
from flask_cors import CORS
from loguru import logger

from livesync.sync.coordinator import LiveCollection

from .collection_routes import collection_bp

_PUBLIC_ENDPOINTS = {"collection.health"}


def create_app(
    collection: LiveCollection,
    loop: asyncio.AbstractEventLoop,
    *,
    api_key: str | None = None,
    call_timeout: float = 30.0,
) -> Flask:
    """Application factory for the live collection status API.

    ``loop`` must be the running loop that owns ``collection``; requests are
    served from Flask worker threads and hop onto it for every read.
    """

    app = Flask(__name__)
    app.config["LIVESYNC_COLLECTION"] = collection
    app.config["LIVESYNC_LOOP"] = loop
    app.config["LIVESYNC_CALL_TIMEOUT"] = call_timeout
    app.config["EXPECTED_API_KEY"] = api_key or os.getenv("LIVESYNC_API_KEY")

    allowed_origins = os.getenv("LIVESYNC_CORS_ORIGINS", "*")
    if allowed_origins != "*":
        allowed_origins = [o.strip() for o in allowed_origins.split(",") if o.strip()]
    CORS(
        app,
        resources={r"/collection/.*": {"origins": allowed_origins, "methods": ["GET", "POST"]}},
    )

    @app.before_request
    def require_api_key():
        expected = current_app.config.get("EXPECTED_API_KEY")
        if not expected or request.method == "OPTIONS":
            return None
        if request.endpoint in _PUBLIC_ENDPOINTS:
            return None
        if request.headers.get("X-API-Key") == expected:
            return None
        return jsonify({"status": "error", "message": "Unauthorized"}), 401

    app.register_blueprint(collection_bp)
    logger.debug("Status API ready for {}", collection.filter.describe())
    return app
