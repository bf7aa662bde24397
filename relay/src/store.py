"""
Durable file-backed record store organized in date-named buckets.

This is the component that guarantees no reading is lost while the
remote store is unreachable. Every record is written to local storage
before any upload attempt and is only deleted after the remote store has
accepted it. The layout survives process restarts because it is plain
files on disk::

    <root>/2024-05-01/data_2024-05-01_10-15-30.json

Operations:
- ensure_bucket(date_key): create missing directory segments (idempotent).
- write(path, data): write a record, verifying the full byte count.
- read(path) / exists(path) / delete(path): single record primitives.
- list_records(date_key): lazily scan a bucket for record paths.
- probe_health(): write/read/delete a probe file to detect device loss.
- lock(date_key): per-bucket asyncio lock for write-vs-delete exclusion.

Record paths are store-relative strings with a leading separator, as
produced by :func:`relay.src.clock.record_path`.

CHANGELOG:
- 2026-10-18: Read failures mark the store unhealthy; drop the write indirection
- 2026-10-06: Log same-second overwrites instead of failing (STORY-012)
- 2026-10-03: Add health probe and reinitialize (STORY-005)
- 2026-10-02: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Iterator
from pathlib import Path
from relay.src.clock import RECORD_PREFIX, RECORD_SUFFIX
from relay.src.errors import PartialWriteError, StorageUnavailableError

logger = logging.getLogger(__name__)

_PROBE_PREFIX = ".probe-"
_PROBE_CONTENT = b"edge-relay health probe"


class DurableStore:
    """Hierarchical file store keyed by date bucket and record timestamp.

    The store tracks a ``healthy`` flag. It is set by :meth:`probe_health`
    and cleared by any I/O failure during a write, so callers can skip
    persistence and relay work until the device comes back.

    Args:
        root: Storage root directory. Accepts ``str`` or ``pathlib.Path``.

    Usage::

        store = DurableStore("/data/telemetry")
        if store.initialize():
            store.write("/2024-05-01/data_2024-05-01_10-15-30.json", payload)
            for path in store.list_records("2024-05-01"):
                data = store.read(path)
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._healthy = False
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    @property
    def healthy(self) -> bool:
        """Result of the last health probe or write, whichever was later."""
        return self._healthy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        """Create the storage root if needed and probe the device.

        Returns:
            ``True`` if the store is healthy afterwards.
        """
        try:
            self._make_dirs(self._root)
        except OSError as exc:
            logger.error("Cannot create storage root %s: %s", self._root, exc)
            self._healthy = False
            return False
        return self.probe_health()

    def reinitialize(self) -> bool:
        """Attempt to bring an unhealthy store back into service."""
        logger.info("Reinitializing storage at %s", self._root)
        healthy = self.initialize()
        if healthy:
            logger.info("Storage at %s is healthy again", self._root)
        else:
            logger.warning("Storage at %s is still unavailable", self._root)
        return healthy

    def probe_health(self) -> bool:
        """Write, read back and delete a uniquely named probe file.

        Detects silent device loss (e.g. a removed SD card) even when no
        ingestion is happening. The probe file is always removed, whatever
        the outcome.

        Returns:
            ``True`` if every step succeeded.
        """
        probe = self._root / f"{_PROBE_PREFIX}{uuid.uuid4().hex}.tmp"
        healthy = False
        try:
            with probe.open("wb") as fh:
                written = fh.write(_PROBE_CONTENT)
            healthy = written == len(_PROBE_CONTENT) and probe.read_bytes() == _PROBE_CONTENT
        except OSError as exc:
            logger.warning("Storage health probe failed at %s: %s", self._root, exc)
        finally:
            try:
                probe.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove probe file %s: %s", probe, exc)
                healthy = False

        if self._healthy and not healthy:
            logger.error("Storage at %s became unhealthy", self._root)
        self._healthy = healthy
        return healthy

    def lock(self, date_key: str) -> asyncio.Lock:
        """Return the lock serializing access to one bucket."""
        lock = self._locks.get(date_key)
        if lock is None:
            lock = self._locks[date_key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def ensure_bucket(self, date_key: str) -> bool:
        """Create every missing path segment from the root to the bucket.

        Existing segments are a no-op, so calling this twice for the same
        date key is harmless.

        Returns:
            ``False`` if a segment could not be created.
        """
        target = self._resolve(date_key)
        try:
            self._make_dirs(target)
        except OSError as exc:
            logger.error("Cannot create bucket %s: %s", target, exc)
            return False
        return True

    def bucket_exists(self, date_key: str) -> bool:
        return self._resolve(date_key).is_dir()

    def list_records(self, date_key: str) -> Iterator[str]:
        """Yield the record paths currently in a bucket.

        The directory is re-scanned on every call; nothing is cached. A
        missing bucket yields nothing.
        """
        bucket = self._resolve(date_key)
        try:
            entries = os.scandir(bucket)
        except (FileNotFoundError, NotADirectoryError):
            return
        with entries:
            for entry in entries:
                name = entry.name
                if (
                    name.startswith(RECORD_PREFIX)
                    and name.endswith(RECORD_SUFFIX)
                    and entry.is_file()
                ):
                    yield f"/{date_key}/{name}"

    def count(self, date_key: str) -> int:
        """Return the number of records pending in a bucket."""
        return sum(1 for _ in self.list_records(date_key))

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def write(self, path: str, data: bytes) -> int:
        """Write a record, creating its bucket first if absent.

        Args:
            path: Store-relative record path.
            data: Bytes to store verbatim.

        Returns:
            Number of bytes written.

        Raises:
            StorageUnavailableError: If the bucket or file cannot be
                written. The store is marked unhealthy.
            PartialWriteError: If fewer bytes than ``len(data)`` were
                written. The partial file is left in place.
        """
        target = self._resolve(path)
        try:
            self._make_dirs(target.parent)
            if target.exists():
                logger.warning("Overwriting existing record %s", path)
            with target.open("wb") as fh:
                written = fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            self._healthy = False
            raise StorageUnavailableError(f"cannot write {path}: {exc}") from exc

        if written != len(data):
            raise PartialWriteError(path, written, len(data))
        return written

    def read(self, path: str) -> bytes | None:
        """Return the record's bytes, or ``None`` if it does not exist.

        Raises:
            StorageUnavailableError: If the record exists but cannot be
                read. The store is marked unhealthy.
        """
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            self._healthy = False
            raise StorageUnavailableError(f"cannot read {path}: {exc}") from exc

    def delete(self, path: str) -> bool:
        """Delete a record.

        Returns:
            ``True`` if the record is gone afterwards (including when it
            was already absent), ``False`` if removal failed.
        """
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Cannot delete %s: %s", path, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _resolve(self, relative: str) -> Path:
        """Map a store-relative path to a filesystem path under the root."""
        parts = [p for p in relative.strip("/").split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"invalid store path: {relative!r}")
        return self._root.joinpath(*parts)

    @staticmethod
    def _make_dirs(target: Path) -> None:
        """Create *target* one segment at a time, skipping existing ones.

        Raises:
            NotADirectoryError: If a segment exists but is not a directory.
            OSError: If a segment cannot be created.
        """
        current = Path(target.anchor) if target.is_absolute() else Path()
        for part in target.parts[1 if target.is_absolute() else 0 :]:
            current = current / part
            if current.is_dir():
                continue
            if current.exists():
                raise NotADirectoryError(f"{current} exists and is not a directory")
            try:
                current.mkdir()
            except FileExistsError:
                # Created concurrently between the check and mkdir.
                if not current.is_dir():
                    raise
