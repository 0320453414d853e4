from __future__ import annotations

"""
Pydantic-based configuration settings for livesync
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "LIVESYNC_"
ENV_NESTED_DELIMITER = "__"
ENV_ALIASES = {
    "LIVESYNC_DATABASE_URL": "store__connection_url",
    "LIVESYNC_REDIS_URL": "store__connection_url",
    "LIVESYNC_LOG_LEVEL": "logging__level",
}

_INFINITE_ATTEMPTS = {"inf", "infinite", "infinity", "none", "unbounded", "-1"}


class LogLevel(str, Enum):
    """Logging levels"""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreBackendType(str, Enum):
    """Supported record store adapters."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


class LoggingSettings(BaseModel):
    """Logging configuration settings"""

    level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        description="Log message format",
    )
    log_to_file: bool = Field(default=False, description="Enable logging to file")
    log_file_path: str = Field(default="logs/livesync.log", description="Log file path")
    log_rotation: str = Field(default="10 MB", description="Log rotation size")
    log_retention: str = Field(default="30 days", description="Log retention period")
    log_compression: str = Field(default="gz", description="Log compression format")
    structured_logging: bool = Field(
        default=False, description="Enable structured JSON logging"
    )

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class ReconnectSettings(BaseModel):
    """Backoff policy used to re-open the change feed."""

    max_attempts: int | None = Field(
        default=5,
        description="Retries before settling on polling (None retries forever)",
    )
    base_delay: float = Field(
        default=2.0, gt=0, description="Delay in seconds before the first retry"
    )
    backoff_factor: float = Field(
        default=1.5, ge=1.0, description="Multiplier applied per failed attempt"
    )
    max_jitter: float = Field(
        default=1.0, ge=0, description="Upper bound of the random delay added"
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for CONNECTED before treating the channel as failed",
    )

    @field_validator("max_attempts", mode="before")
    @classmethod
    def _coerce_max_attempts(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in _INFINITE_ATTEMPTS or not normalized:
                return None
            return int(normalized)
        if isinstance(value, float) and value == float("inf"):
            return None
        return value

    @field_validator("max_attempts")
    @classmethod
    def _validate_max_attempts(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("max_attempts must be at least 1 (or None for unbounded)")
        return value


class PollingSettings(BaseModel):
    """Polling fallback cadence."""

    interval: float = Field(
        default=15.0, gt=0, description="Seconds between fallback fetches"
    )


class MirrorSettings(BaseModel):
    """How records are identified and reconciled into the local mirror."""

    id_field: str = Field(default="id", description="Field holding the record id")
    updated_at_field: str = Field(
        default="updated_at", description="Field holding the last-modified timestamp"
    )
    tombstone_ttl: float = Field(
        default=0.0,
        ge=0,
        description="Seconds a deleted id rejects late inserts/updates (0 disables)",
    )
    prune_missing: bool = Field(
        default=False,
        description="Drop mirrored records absent from a full fetch",
    )
    resync_on_reconnect: bool = Field(
        default=True,
        description="Refresh once when the change feed comes back",
    )
    transition_history: int = Field(
        default=50, ge=1, description="Mode transitions kept for consumers"
    )

    @field_validator("id_field", "updated_at_field")
    @classmethod
    def _validate_field_name(cls, value: str) -> str:
        stripped = (value or "").strip()
        if not stripped:
            raise ValueError("Field names cannot be empty")
        return stripped


class StoreSettings(BaseModel):
    """Which record store adapter to build and how to reach it."""

    backend: StoreBackendType = Field(
        default=StoreBackendType.MEMORY,
        description="Record store adapter implementation",
    )
    connection_url: str | None = Field(
        default=None,
        description="Connection string for the selected backend",
    )
    channel: str = Field(
        default="livesync",
        description="Notification channel (LISTEN channel or pub/sub prefix)",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend specific keyword arguments",
    )

    @field_validator("backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: Any) -> StoreBackendType:
        if isinstance(value, StoreBackendType):
            return value
        if isinstance(value, str) and value.strip():
            normalized = value.strip().lower()
            for member in StoreBackendType:
                if normalized == member.value:
                    return member
            if normalized in {"inmemory", "in-memory"}:
                return StoreBackendType.MEMORY
            if normalized in {"postgresql", "pg"}:
                return StoreBackendType.POSTGRES
            raise ValueError(f"Unsupported store backend: {value}")
        return StoreBackendType.MEMORY

    @field_validator("connection_url")
    @classmethod
    def _validate_connection(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("channel", mode="before")
    @classmethod
    def _validate_channel(cls, value: Any) -> str:
        if value is None:
            return "livesync"
        channel = str(value).strip()
        return channel or "livesync"

    @field_validator("options", mode="before")
    @classmethod
    def _parse_options(cls, value: Any) -> Any:
        if value in (None, ""):
            return {}
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("Store options must be valid JSON") from exc
        return value


class LiveSyncSettings(BaseModel):
    """Main livesync configuration"""

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    verbose: bool = Field(default=False, description="Force DEBUG logging")

    @classmethod
    def _collect_env_data(cls) -> dict[str, Any]:
        """Return environment driven configuration data."""

        prefix = ENV_PREFIX.lower()
        aliases = {alias.lower(): target for alias, target in ENV_ALIASES.items()}

        def _assign(data: dict[str, Any], keys: list[str], value: Any) -> None:
            current = data
            for part in keys[:-1]:
                if part not in current or not isinstance(current[part], dict):
                    current[part] = {}
                current = current[part]
            current[keys[-1]] = value

        env_data: dict[str, Any] = {}

        # Aliases first so the prefixed, explicit keys win.
        for env_key, env_value in sorted(os.environ.items()):
            target = aliases.get(env_key.lower())
            if target is None:
                continue
            _assign(env_data, target.split(ENV_NESTED_DELIMITER), env_value)

        for env_key, env_value in sorted(os.environ.items()):
            compare_key = env_key.lower()
            if compare_key in aliases or not compare_key.startswith(prefix):
                continue
            path = compare_key[len(prefix) :]
            parts = [part for part in path.split(ENV_NESTED_DELIMITER) if part]
            if not parts or parts[0] not in cls.model_fields:
                continue
            _assign(env_data, parts, env_value)

        return env_data

    @classmethod
    def from_env(cls, base: dict[str, Any] | None = None) -> "LiveSyncSettings":
        """Create settings from environment variables layered over ``base``."""

        env_data = cls._collect_env_data()
        return cls(**_deep_merge(dict(base or {}), env_data))

    @classmethod
    def from_file(cls, config_path: str | Path) -> "LiveSyncSettings":
        """Load settings from JSON/YAML file"""

        return cls(**_read_config_file(config_path))

    def export(self, *, include_sensitive: bool = False) -> dict[str, Any]:
        """Return a serialisable representation of the settings."""

        data = self.model_dump(mode="json")
        if include_sensitive:
            return data
        store = data.get("store")
        if isinstance(store, dict) and store.get("connection_url"):
            store["connection_url"] = "***"
        return data


def _read_config_file(config_path: str | Path) -> dict[str, Any]:
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        if config_path.suffix.lower() == ".json":
            data = json.load(f)
        elif config_path.suffix.lower() in [".yml", ".yaml"]:
            import yaml

            data = yaml.safe_load(f)
        else:
            raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        existing = base.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            base[key] = _deep_merge(dict(existing), value)
        else:
            base[key] = value
    return base


def load_settings(config_path: str | Path | None = None) -> LiveSyncSettings:
    """Resolve settings from defaults, an optional file, then the environment."""

    from ..utils.exceptions import ConfigurationError

    try:
        file_data = _read_config_file(config_path) if config_path else {}
        return LiveSyncSettings.from_env(base=file_data)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(
            f"Failed to load configuration: {exc}",
            context={"config_path": str(config_path) if config_path else None},
        ) from exc
