"""
Edge relay configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Broker endpoint, remote base URL, intervals and storage paths all come
from environment variables or .env files; nothing is hardcoded in the
components themselves.

CHANGELOG:
- 2026-10-03: Add snapshot and health file paths (STORY-009)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings

_LOG_LEVELS = frozenset(logging.getLevelNamesMapping())


class RelaySettings(BaseSettings):
    """Edge relay configuration.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        mqtt_host: Broker hostname or IP address.
        mqtt_port: Broker TCP port (default 1883).
        mqtt_topic: Topic the relay subscribes to for readings.
        mqtt_client_id: MQTT client identifier.
        mqtt_username: Optional broker username.
        mqtt_password: Optional broker password (never logged).
        mqtt_keepalive_s: Broker keepalive used for link liveness detection.
        remote_base_url: Base URL of the remote object store.
        http_timeout_s: Timeout applied to every remote PUT.
        upload_interval_s: Seconds between relay cycles.
        reconnect_interval_s: Seconds between broker reconnect attempts.
        health_check_interval_s: Seconds between storage health probes.
        snapshot_interval_s: Seconds between snapshot publishes.
        storage_root: Root directory of the durable buffer.
        snapshot_path: JSON file the display reads the live snapshot from.
        health_path: JSON liveness file.
        queue_size: Capacity of the inbound message queue.
        log_level: Root logger level name.
    """

    mqtt_host: str
    mqtt_port: int = 1883
    mqtt_topic: str = "sensors/telemetry"
    mqtt_client_id: str = "edge-relay"
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_keepalive_s: int = 60
    remote_base_url: str
    http_timeout_s: float = 15.0
    upload_interval_s: int = 300
    reconnect_interval_s: int = 5
    health_check_interval_s: int = 60
    snapshot_interval_s: float = 1.0
    storage_root: str = "/data/telemetry"
    snapshot_path: str = "/run/edge-relay/snapshot.json"
    health_path: str = "/run/edge-relay/health.json"
    queue_size: int = 100
    log_level: str = "INFO"

    @field_validator("remote_base_url")
    @classmethod
    def remote_base_url_must_be_http(cls, v: str) -> str:
        """Validate the remote URL scheme and strip trailing slashes."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"REMOTE_BASE_URL must start with http:// or https:// (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("mqtt_topic")
    @classmethod
    def mqtt_topic_must_be_concrete(cls, v: str) -> str:
        """Reject empty topics and wildcard subscriptions."""
        if not v or "#" in v or "+" in v:
            raise ValueError("MQTT_TOPIC must be a non-empty topic without wildcards")
        return v

    @field_validator("mqtt_port")
    @classmethod
    def mqtt_port_must_be_valid(cls, v: int) -> int:
        """Validate broker port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("MQTT_PORT must be between 1 and 65535")
        return v

    @field_validator("mqtt_keepalive_s")
    @classmethod
    def keepalive_must_be_reasonable(cls, v: int) -> int:
        if v < 5:
            raise ValueError("MQTT_KEEPALIVE_S must be >= 5")
        return v

    @field_validator("http_timeout_s")
    @classmethod
    def http_timeout_must_be_bounded(cls, v: float) -> float:
        """Validate remote PUT timeout is between 1 and 120 seconds."""
        if v < 1 or v > 120:
            raise ValueError("HTTP_TIMEOUT_S must be >= 1 and <= 120")
        return v

    @field_validator("upload_interval_s", "reconnect_interval_s", "health_check_interval_s")
    @classmethod
    def interval_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("intervals must be >= 1 second")
        return v

    @field_validator("snapshot_interval_s")
    @classmethod
    def snapshot_interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("SNAPSHOT_INTERVAL_S must be > 0")
        return v

    @field_validator("queue_size")
    @classmethod
    def queue_size_must_be_valid(cls, v: int) -> int:
        """Validate queue size is between 1 and 10000."""
        if v < 1 or v > 10000:
            raise ValueError("QUEUE_SIZE must be >= 1 and <= 10000")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
