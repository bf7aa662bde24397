"""
Live snapshot of the most recent reading and its file sink for the display.

The ingestor replaces the snapshot on every decoded message; the display
reads it from a JSON file that is rewritten atomically, so a reader never
sees a half-updated reading (e.g. a new temperature next to a stale fan
status).

CHANGELOG:
- 2026-10-04: Add SnapshotFileSink (STORY-009)
- 2026-10-03: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path

from relay.src.models import Reading


class LiveSnapshot:
    """Lock-guarded holder of the latest Reading.

    Starts with an all-defaults reading. Each :meth:`replace` swaps in a
    new immutable Reading, so :meth:`get` always returns a consistent
    value that no later update can mutate.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reading = Reading()
        self._version = 0
        self._updated_at: datetime | None = None

    def replace(self, reading: Reading) -> None:
        with self._lock:
            self._reading = reading
            self._version += 1
            self._updated_at = datetime.now(tz=UTC)

    def get(self) -> Reading:
        with self._lock:
            return self._reading

    def state(self) -> tuple[int, Reading, datetime | None]:
        """Return ``(version, reading, updated_at)`` read under one lock."""
        with self._lock:
            return self._version, self._reading, self._updated_at

    @property
    def version(self) -> int:
        """Number of replacements since startup."""
        with self._lock:
            return self._version


class SnapshotFileSink:
    """Publishes the live snapshot as a JSON file for the display.

    The file is written to a temporary sibling and moved into place with
    ``os.replace``. Publishing is skipped when nothing changed since the
    previous call.

    Args:
        path: Target JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._published_version = -1

    def publish(self, snapshot: LiveSnapshot) -> bool:
        """Write the snapshot file if the snapshot changed.

        Returns:
            ``True`` if the file was rewritten.
        """
        version, reading, updated_at = snapshot.state()
        if version == self._published_version:
            return False

        data = reading.to_display()
        data["updated_at"] = updated_at.isoformat() if updated_at else None

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".snapshot-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        self._published_version = version
        return True
