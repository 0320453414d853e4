"""Factory helpers for constructing record stores based on configuration."""

from __future__ import annotations

from typing import Any

from loguru import logger

from ..config.settings import StoreBackendType
from ..utils.exceptions import ConfigurationError
from .base import RecordStore
from .inmemory import InMemoryRecordStore
from .postgres import PostgresRecordStore
from .redis import RedisRecordStore


def create_record_store(settings: Any) -> RecordStore:
    """Instantiate the record store described by ``settings``.

    Accepts either a full :class:`LiveSyncSettings` (field names are taken
    from its ``mirror`` section) or a bare :class:`StoreSettings`.
    """

    store_settings = getattr(settings, "store", settings)
    mirror_settings = getattr(settings, "mirror", None)
    id_field = getattr(mirror_settings, "id_field", "id")
    updated_at_field = getattr(mirror_settings, "updated_at_field", "updated_at")

    backend = getattr(store_settings, "backend", StoreBackendType.MEMORY)
    backend = StoreBackendType(getattr(backend, "value", backend) or "memory")
    options = dict(getattr(store_settings, "options", {}) or {})
    channel = getattr(store_settings, "channel", None) or "livesync"
    connection_url = getattr(store_settings, "connection_url", None)

    if backend is StoreBackendType.MEMORY:
        logger.debug("Using in-memory record store")
        return InMemoryRecordStore(id_field=id_field, updated_at_field=updated_at_field)

    if not connection_url:
        raise ConfigurationError(
            f"{backend.value} record store requested but no connection URL provided",
            context={"backend": backend.value},
        )

    if backend is StoreBackendType.REDIS:
        logger.debug("Using Redis record store on channel prefix '{}'", channel)
        return RedisRecordStore(
            connection_url,
            channel=channel,
            client_kwargs=options,
            id_field=id_field,
            updated_at_field=updated_at_field,
        )

    logger.debug("Using PostgreSQL record store on channel '{}'", channel)
    return PostgresRecordStore(
        connection_url,
        channel=channel,
        connect_kwargs=options.pop("connect_kwargs", None),
        engine_kwargs=options.pop("engine_kwargs", None),
        id_field=id_field,
    )
