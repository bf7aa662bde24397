"""
Health file writer for the edge relay.

Writes a JSON health file at a configurable path with five fields:
- last_ingest_ts: ISO timestamp of the most recent stored reading.
- last_upload_ts: ISO timestamp of the most recent relay cycle that
  relayed at least one record.
- pending_count: Records waiting in today's bucket.
- storage_healthy: Result of the latest storage health check.
- connectivity: Current broker link state.

The file is overwritten on every state change, providing a simple
liveness signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-05: Track storage health and connectivity (STORY-010)
- 2026-10-03: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from relay.src.models import ConnectivityState


class HealthWriter:
    """Writes edge relay health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_ingest_ts: str | None = None
        self._last_upload_ts: str | None = None
        self._pending_count: int = 0
        self._storage_healthy: bool = False
        self._connectivity: ConnectivityState = ConnectivityState.DOWN

    def record_ingest(self) -> None:
        """Record a stored reading and write health file."""
        self._last_ingest_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_upload(self) -> None:
        """Record a successful relay cycle and write health file."""
        self._last_upload_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_pending_count(self, count: int) -> None:
        self._pending_count = count
        self._write()

    def set_storage_healthy(self, healthy: bool) -> None:
        self._storage_healthy = healthy
        self._write()

    def set_connectivity(self, state: ConnectivityState) -> None:
        if state == self._connectivity:
            return
        self._connectivity = state
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_ingest_ts": self._last_ingest_ts,
            "last_upload_ts": self._last_upload_ts,
            "pending_count": self._pending_count,
            "storage_healthy": self._storage_healthy,
            "connectivity": str(self._connectivity),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data))
