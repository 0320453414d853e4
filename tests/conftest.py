import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from livesync.config.settings import LiveSyncSettings
from livesync.utils.logging import LoggingManager


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop sinks installed by code under test so they never outlive a test."""

    yield
    LoggingManager.reset()


@pytest.fixture
def fast_settings():
    """Build settings with intervals short enough for unit tests."""

    def _build(*, reconnect=None, polling=None, mirror=None) -> LiveSyncSettings:
        reconnect_data = {
            "max_attempts": 5,
            "base_delay": 0.01,
            "backoff_factor": 1.0,
            "max_jitter": 0.0,
            "connect_timeout": 5.0,
        }
        reconnect_data.update(reconnect or {})
        polling_data = {"interval": 0.01}
        polling_data.update(polling or {})
        return LiveSyncSettings(
            reconnect=reconnect_data,
            polling=polling_data,
            mirror=dict(mirror or {}),
        )

    return _build
