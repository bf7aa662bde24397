"""
Record ingestor: decode, snapshot, persist.

Handles one inbound MQTT message at a time:

1. Decode the payload into a Reading. Malformed payloads are logged and
   dropped with no other side effect.
2. Replace the live snapshot with the decoded reading. This happens
   whether or not persistence succeeds afterwards.
3. If the durable store is unhealthy, skip persistence and attempt a
   reinitialization.
4. Otherwise write the raw payload bytes to the record path derived from
   the current date bucket and arrival second.

CHANGELOG:
- 2026-10-05: Serialize writes with the relay through the bucket lock (STORY-012)
- 2026-10-03: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from relay.src.clock import bucket_key, record_path, timestamp_key
from relay.src.errors import DecodeError, StorageError
from relay.src.models import decode_reading

if TYPE_CHECKING:
    from relay.src.clock import Clock
    from relay.src.snapshot import LiveSnapshot
    from relay.src.store import DurableStore

logger = logging.getLogger(__name__)


class RecordIngestor:
    """Turns inbound messages into snapshot updates and stored records.

    Args:
        store: Durable store receiving the raw payloads.
        snapshot: Live snapshot replaced on every decoded message.
        clock: Source of the arrival date bucket and timestamp.
    """

    def __init__(
        self,
        *,
        store: DurableStore,
        snapshot: LiveSnapshot,
        clock: Clock,
    ) -> None:
        self._store = store
        self._snapshot = snapshot
        self._clock = clock

    async def on_message(self, topic: str, payload: bytes) -> str | None:
        """Process one inbound message.

        Args:
            topic: Topic the message arrived on (used for logging only).
            payload: Raw message bytes.

        Returns:
            The store-relative path of the stored record, or ``None`` if
            the message was dropped or could not be persisted.
        """
        try:
            reading = decode_reading(payload)
        except DecodeError as exc:
            logger.warning("Dropping malformed message on %s: %s", topic, exc)
            return None

        self._snapshot.replace(reading)

        if not self._store.healthy:
            logger.warning("Storage unhealthy, not persisting message on %s", topic)
            self._store.reinitialize()
            return None

        now = self._clock.now()
        bucket = bucket_key(now)
        path = record_path(bucket, timestamp_key(now))

        async with self._store.lock(bucket):
            try:
                self._store.write(path, payload)
            except StorageError as exc:
                logger.error("Failed to persist %s: %s", path, exc)
                return None

        logger.debug("Stored %d bytes at %s", len(payload), path)
        return path
