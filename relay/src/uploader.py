"""
HTTP relay of buffered records to the remote object store.

Each relay cycle scans today's bucket in the durable store, PUTs every
record to ``{remote_base_url}/{bucket}/{filename}`` and deletes the local
file only when the remote store answers HTTP 200. Anything else (another
status, a timeout, a connection error) leaves the file in place for the
next cycle. There is no retry cap: a record the remote store keeps
refusing is offered again every cycle.

Operations:
- HttpObjectStore.put(key, body): one PUT, classified as an UploadOutcome.
- UploadRelay.flush(): one relay cycle, returns the number relayed.

CHANGELOG:
- 2026-10-18: Skip unreadable records and continue the cycle
- 2026-10-06: Only delete when the file still holds the uploaded bytes (STORY-012)
- 2026-10-04: Replace batch POST with per-record PUT (STORY-007)
- 2026-10-03: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

import httpx

from relay.src.clock import bucket_key, remote_key
from relay.src.errors import StorageError
from relay.src.models import ConnectivityState, UploadOutcome

if TYPE_CHECKING:
    from relay.src.clock import Clock
    from relay.src.store import DurableStore

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 15.0


class RemoteStore(Protocol):
    """Anything that can store an object under a key."""

    async def put(self, key: str, body: bytes) -> UploadOutcome: ...


class HttpObjectStore:
    """Remote object store reached with plain HTTP PUTs.

    A PUT of identical content to the same key overwrites, so re-uploading
    a record whose local delete failed is harmless.

    Args:
        base_url: Base URL of the remote store; objects are addressed as
            ``{base_url}/{key}``.
        timeout_s: Timeout for each request. An expired timeout is
            reported as ``UploadOutcome.UNREACHABLE``.
    """

    def __init__(self, base_url: str, timeout_s: float = _DEFAULT_TIMEOUT_S) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    async def put(self, key: str, body: bytes) -> UploadOutcome:
        """PUT *body* under *key*.

        Returns:
            ``ACCEPTED`` on HTTP 200, ``REJECTED`` on any other status,
            ``UNREACHABLE`` when no response arrived.
        """
        url = f"{self._base_url}/{key}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, verify=True) as client:
                response = await client.put(
                    url,
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TransportError as exc:
            logger.debug("PUT %s failed without response: %s", url, exc)
            return UploadOutcome.UNREACHABLE

        if response.status_code == 200:
            return UploadOutcome.ACCEPTED

        logger.debug("PUT %s refused with HTTP %d", url, response.status_code)
        return UploadOutcome.REJECTED


class UploadRelay:
    """Relays today's stored records to a remote store.

    Args:
        store: Durable store to read and delete records from.
        remote: Remote store to PUT records to.
        clock: Source of today's bucket key.
        connectivity: Optional callable returning the current broker link
            state. While the transport is ``DOWN`` an unreachable remote is
            expected and logged at debug level only.

    Usage::

        relay = UploadRelay(
            store=store,
            remote=HttpObjectStore("https://objects.example.com/telemetry"),
            clock=SystemClock(),
        )
        relayed = await relay.flush()
    """

    def __init__(
        self,
        *,
        store: DurableStore,
        remote: RemoteStore,
        clock: Clock,
        connectivity: Callable[[], ConnectivityState] | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._clock = clock
        self._connectivity = connectivity

    async def flush(self) -> int:
        """Run one relay cycle over today's bucket.

        Returns:
            Number of records the remote store accepted during this cycle.
        """
        if not self._store.healthy:
            logger.warning("Storage unhealthy, skipping relay cycle")
            self._store.reinitialize()
            return 0

        bucket = bucket_key(self._clock.now())
        if not self._store.bucket_exists(bucket):
            logger.debug("Bucket %s does not exist, nothing to relay", bucket)
            return 0

        relayed = 0
        rejected = 0
        unreachable = 0
        for path in self._store.list_records(bucket):
            outcome = await self._relay_one(bucket, path)
            if outcome is UploadOutcome.ACCEPTED:
                relayed += 1
            elif outcome is UploadOutcome.REJECTED:
                rejected += 1
            elif outcome is UploadOutcome.UNREACHABLE:
                unreachable += 1

        if rejected or unreachable:
            level = logging.WARNING
            if not rejected and self._transport_down():
                level = logging.DEBUG
            logger.log(
                level,
                "Relay cycle for %s: %d relayed, %d rejected, %d unreachable",
                bucket,
                relayed,
                rejected,
                unreachable,
            )
        elif relayed:
            logger.info("Relay cycle for %s: %d relayed", bucket, relayed)
        return relayed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _relay_one(self, bucket: str, path: str) -> UploadOutcome | None:
        """Upload one record and delete it if the remote store accepted it.

        The bucket lock is held while reading and deleting but not during
        the upload, so ingestion is not stalled by a slow remote. A record
        that cannot be read is skipped so the rest of the bucket still moves.
        """
        lock = self._store.lock(bucket)
        async with lock:
            try:
                data = self._store.read(path)
            except StorageError as exc:
                logger.error("Skipping unreadable record %s: %s", path, exc)
                return None
        if data is None:
            return None

        outcome = await self._remote.put(remote_key(path), data)
        if outcome is not UploadOutcome.ACCEPTED:
            return outcome

        async with lock:
            # A same-second overwrite during the upload must not be lost.
            try:
                current = self._store.read(path)
            except StorageError as exc:
                logger.error("Relayed %s but could not re-read it: %s", path, exc)
                return outcome
            if current != data:
                logger.warning("%s changed during upload, keeping it for next cycle", path)
            elif not self._store.delete(path):
                logger.error("Relayed %s but could not delete it locally", path)
        return outcome

    def _transport_down(self) -> bool:
        return self._connectivity is not None and self._connectivity() is ConnectivityState.DOWN
