"""
Pydantic models and enums for relayed sensor readings.

Defines the Reading model decoded from inbound MQTT payloads, plus the
enums describing upload outcomes and broker connectivity.

CHANGELOG:
- 2026-10-04: Add to_display() for the snapshot file (STORY-009)
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relay.src.errors import DecodeError


class Reading(BaseModel):
    """A single sensor reading as published by the field device.

    Unknown fields are ignored and missing fields take their defaults, so
    every decoded reading fully describes the latest state on its own.

    Attributes:
        temperature: Primary temperature sensor value.
        humidity: Relative humidity.
        vibration_count: Vibration events counted since the last message.
        dht_temperature: Temperature from the DHT sensor.
        fan: Fan status string (wire name ``FAN``).
        system: System load string (wire name ``System``).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    temperature: float = 0.0
    humidity: float = 0.0
    vibration_count: int = 0
    dht_temperature: float = 0.0
    fan: str = Field(default="OFF", alias="FAN")
    system: str = Field(default="0%", alias="System")

    def to_display(self) -> dict[str, Any]:
        """Return the reading as a plain dict keyed by wire field names."""
        return self.model_dump(by_alias=True)


class UploadOutcome(StrEnum):
    """Result of pushing one stored record to the remote store."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNREACHABLE = "unreachable"


class ConnectivityState(StrEnum):
    """Link state tracked by the connectivity supervisor."""

    DOWN = "down"
    BROKER_DOWN = "broker_down"
    CONNECTED = "connected"


def decode_reading(payload: bytes) -> Reading:
    """Decode a raw MQTT payload into a Reading.

    Args:
        payload: Raw message bytes, expected to be a JSON object.

    Returns:
        The decoded, immutable Reading.

    Raises:
        DecodeError: If the payload is not a JSON object or a recognized
            field has the wrong type.
    """
    try:
        return Reading.model_validate_json(payload)
    except ValidationError as exc:
        raise DecodeError(f"invalid reading payload: {exc.error_count()} error(s)") from exc
