"""
Shared test fixtures for edge relay tests.

Provides environment variable fixtures for RelaySettings configuration
tests, a fixed clock, and a healthy durable store rooted in tmp_path.
All relay env vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-10-03: Add fixed clock and store fixtures (STORY-006)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest
from relay.src.store import DurableStore

# All RelaySettings environment variable names, used for cleanup.
_ALL_RELAY_ENV_VARS = (
    "MQTT_HOST",
    "MQTT_PORT",
    "MQTT_TOPIC",
    "MQTT_CLIENT_ID",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_KEEPALIVE_S",
    "REMOTE_BASE_URL",
    "HTTP_TIMEOUT_S",
    "UPLOAD_INTERVAL_S",
    "RECONNECT_INTERVAL_S",
    "HEALTH_CHECK_INTERVAL_S",
    "SNAPSHOT_INTERVAL_S",
    "STORAGE_ROOT",
    "SNAPSHOT_PATH",
    "HEALTH_PATH",
    "QUEUE_SIZE",
    "LOG_LEVEL",
)


class FixedClock:
    """Clock returning a settable datetime."""

    def __init__(self, dt: datetime) -> None:
        self.dt = dt

    def now(self) -> datetime:
        return self.dt


@pytest.fixture(autouse=True)
def _clean_relay_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all relay env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_RELAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set all required and optional environment variables for RelaySettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "MQTT_HOST": "192.168.4.1",
        "MQTT_PORT": "8883",
        "MQTT_TOPIC": "greenhouse/sensors",
        "MQTT_CLIENT_ID": "relay-test",
        "MQTT_USERNAME": "relay",
        "MQTT_PASSWORD": "broker-secret",
        "MQTT_KEEPALIVE_S": "30",
        "REMOTE_BASE_URL": "https://objects.example.com/telemetry",
        "HTTP_TIMEOUT_S": "20",
        "UPLOAD_INTERVAL_S": "120",
        "RECONNECT_INTERVAL_S": "10",
        "HEALTH_CHECK_INTERVAL_S": "30",
        "SNAPSHOT_INTERVAL_S": "0.5",
        "STORAGE_ROOT": "/tmp/test-telemetry",
        "SNAPSHOT_PATH": "/tmp/test-snapshot.json",
        "HEALTH_PATH": "/tmp/test-health.json",
        "QUEUE_SIZE": "50",
        "LOG_LEVEL": "debug",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {
        "MQTT_HOST": "broker.local",
        "REMOTE_BASE_URL": "http://storage.local:9000/bucket",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def clock() -> FixedClock:
    """Clock fixed at 2024-05-01 10:15:30."""
    return FixedClock(datetime(2024, 5, 1, 10, 15, 30))


@pytest.fixture()
def store(tmp_path: Path) -> DurableStore:
    """Initialized, healthy store rooted at tmp_path/telemetry."""
    store = DurableStore(tmp_path / "telemetry")
    assert store.initialize()
    return store
