"""
Edge relay main loop.

Runs five concurrent asyncio loops on one event loop:
1. **Connectivity**: the ConnectivitySupervisor keeps the MQTT
   subscription alive and pushes inbound messages into a bounded queue.
2. **Ingest loop**: drains the queue through the RecordIngestor, which
   updates the live snapshot and writes each raw payload to the store.
3. **Relay loop**: calls UploadRelay.flush() every upload interval.
4. **Health loop**: probes the storage device every health-check interval
   and attempts reinitialization while it is unhealthy.
5. **Snapshot loop**: publishes the live snapshot file for the display.

Every loop is resilient: an exception in one iteration is logged and does
not crash the loop or affect the others. Graceful shutdown on
SIGTERM/SIGINT sets a shared asyncio.Event, allowing all loops to finish
their current iteration; one final relay flush is attempted before exit.

Structured JSON logging is used for all events. A HealthWriter instance
tracks ingest/upload timestamps, pending count, storage health and
connectivity in a JSON health file.

CHANGELOG:
- 2026-10-18: Refresh pending count on ingest; tolerate an unwritable health file at startup
- 2026-10-06: Exit with status 1 when the storage root is unusable (STORY-013)
- 2026-10-05: Add health probe and snapshot loops (STORY-010)
- 2026-10-04: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from relay.src.clock import bucket_key, record_bucket
from relay.src.errors import StorageUnavailableError
from relay.src.health import HealthWriter

if TYPE_CHECKING:
    from collections.abc import Callable

    from relay.src.clock import Clock
    from relay.src.ingestor import RecordIngestor
    from relay.src.models import ConnectivityState
    from relay.src.snapshot import LiveSnapshot, SnapshotFileSink
    from relay.src.store import DurableStore
    from relay.src.supervisor import ConnectivitySupervisor
    from relay.src.uploader import UploadRelay

logger = logging.getLogger(__name__)

_QUEUE_POLL_S = 1.0
"""Max time the ingest loop blocks on the queue before re-checking shutdown."""


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the edge relay.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, excluding secrets.

    Logs broker, topic, remote URL, intervals and paths but deliberately
    omits mqtt_password.

    Args:
        settings: A RelaySettings instance (or any object with the same attrs).
    """
    logger.info(
        "Edge relay starting with config: "
        "mqtt_host=%s, mqtt_port=%s, mqtt_topic=%s, mqtt_client_id=%s, "
        "mqtt_username=%s, mqtt_password_set=%s, remote_base_url=%s, "
        "http_timeout_s=%s, upload_interval_s=%s, reconnect_interval_s=%s, "
        "health_check_interval_s=%s, snapshot_interval_s=%s, "
        "storage_root=%s, snapshot_path=%s, health_path=%s, queue_size=%s",
        settings.mqtt_host,  # type: ignore[union-attr]
        settings.mqtt_port,  # type: ignore[union-attr]
        settings.mqtt_topic,  # type: ignore[union-attr]
        settings.mqtt_client_id,  # type: ignore[union-attr]
        settings.mqtt_username,  # type: ignore[union-attr]
        bool(settings.mqtt_password),  # type: ignore[union-attr]
        settings.remote_base_url,  # type: ignore[union-attr]
        settings.http_timeout_s,  # type: ignore[union-attr]
        settings.upload_interval_s,  # type: ignore[union-attr]
        settings.reconnect_interval_s,  # type: ignore[union-attr]
        settings.health_check_interval_s,  # type: ignore[union-attr]
        settings.snapshot_interval_s,  # type: ignore[union-attr]
        settings.storage_root,  # type: ignore[union-attr]
        settings.snapshot_path,  # type: ignore[union-attr]
        settings.health_path,  # type: ignore[union-attr]
        settings.queue_size,  # type: ignore[union-attr]
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _ingest_once(
    *,
    ingestor: RecordIngestor,
    topic: str,
    payload: bytes,
    health: HealthWriter | None,
    store: DurableStore | None = None,
) -> None:
    """Process one queued message.

    Catches all exceptions so that the caller's loop is never broken.
    After a record is stored the health writer records the ingest and the
    pending count of that record's bucket.
    """
    try:
        path = await ingestor.on_message(topic, payload)
    except Exception:
        logger.error("Ingest error", exc_info=True)
        return

    if path is not None and health is not None:
        try:
            health.record_ingest()
            if store is not None:
                health.set_pending_count(store.count(record_bucket(path)))
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


async def _relay_once(
    *,
    relay: UploadRelay,
    store: DurableStore,
    clock: Clock,
    health: HealthWriter | None = None,
) -> int:
    """Execute a single relay cycle.

    Catches all exceptions so that the caller's loop is never broken.
    When at least one record was relayed the health writer records an
    upload timestamp; the pending count is refreshed after every cycle.

    Returns:
        Number of records relayed, 0 on error.
    """
    try:
        relayed = await relay.flush()
    except Exception:
        logger.error("Relay cycle error", exc_info=True)
        relayed = 0

    if health is not None:
        try:
            if relayed:
                health.record_upload()
            if store.healthy:
                health.set_pending_count(store.count(bucket_key(clock.now())))
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return relayed


def _probe_once(*, store: DurableStore, health: HealthWriter | None = None) -> bool:
    """Probe the storage device, reinitializing it when unhealthy."""
    try:
        healthy = store.probe_health()
        if not healthy:
            healthy = store.reinitialize()
    except Exception:
        logger.error("Storage health check error", exc_info=True)
        healthy = False

    if health is not None:
        try:
            health.set_storage_healthy(healthy)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return healthy


def _publish_once(*, snapshot: LiveSnapshot, sink: SnapshotFileSink) -> None:
    try:
        sink.publish(snapshot)
    except Exception:
        logger.warning("Failed to publish snapshot", exc_info=True)


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _sleep_or_shutdown(shutdown_event: asyncio.Event, seconds: float) -> None:
    # Use wait with timeout so we can check shutdown between sleeps
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)


async def _ingest_loop(
    *,
    ingestor: RecordIngestor,
    queue: asyncio.Queue[tuple[str, bytes]],
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
    store: DurableStore | None = None,
) -> None:
    """Consume the inbound queue until shutdown_event is set.

    Messages still queued at shutdown are processed before returning.
    """
    logger.info("Ingest loop started")
    while not shutdown_event.is_set():
        try:
            topic, payload = await asyncio.wait_for(queue.get(), timeout=_QUEUE_POLL_S)
        except TimeoutError:
            continue
        await _ingest_once(
            ingestor=ingestor, topic=topic, payload=payload, health=health, store=store
        )
        queue.task_done()

    while not queue.empty():
        topic, payload = queue.get_nowait()
        await _ingest_once(
            ingestor=ingestor, topic=topic, payload=payload, health=health, store=store
        )
        queue.task_done()
    logger.info("Ingest loop stopped")


async def _relay_loop(
    *,
    relay: UploadRelay,
    store: DurableStore,
    clock: Clock,
    upload_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run a relay cycle every upload_interval_s until shutdown_event is set."""
    logger.info("Relay loop started (interval=%ss)", upload_interval_s)
    while not shutdown_event.is_set():
        await _relay_once(relay=relay, store=store, clock=clock, health=health)
        await _sleep_or_shutdown(shutdown_event, upload_interval_s)
    logger.info("Relay loop stopped")


async def _health_loop(
    *,
    store: DurableStore,
    health_check_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    logger.info("Storage health loop started (interval=%ss)", health_check_interval_s)
    while not shutdown_event.is_set():
        await _sleep_or_shutdown(shutdown_event, health_check_interval_s)
        if shutdown_event.is_set():
            break
        _probe_once(store=store, health=health)
    logger.info("Storage health loop stopped")


async def _snapshot_loop(
    *,
    snapshot: LiveSnapshot,
    sink: SnapshotFileSink,
    snapshot_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    while not shutdown_event.is_set():
        _publish_once(snapshot=snapshot, sink=sink)
        await _sleep_or_shutdown(shutdown_event, snapshot_interval_s)
    _publish_once(snapshot=snapshot, sink=sink)


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    supervisor: ConnectivitySupervisor,
    ingestor: RecordIngestor,
    relay: UploadRelay,
    store: DurableStore,
    snapshot: LiveSnapshot,
    sink: SnapshotFileSink,
    clock: Clock,
    queue: asyncio.Queue[tuple[str, bytes]],
    upload_interval_s: float,
    health_check_interval_s: float,
    snapshot_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run all relay loops concurrently until shutdown.

    All loops run as independent asyncio tasks via asyncio.gather().
    When the shutdown_event is set, every loop finishes its current
    iteration, then a final relay flush is attempted before returning.
    """
    logger.info("Starting connectivity, ingest, relay, health and snapshot loops")

    await asyncio.gather(
        supervisor.run(shutdown_event),
        _ingest_loop(
            ingestor=ingestor,
            queue=queue,
            shutdown_event=shutdown_event,
            health=health,
            store=store,
        ),
        _relay_loop(
            relay=relay,
            store=store,
            clock=clock,
            upload_interval_s=upload_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _health_loop(
            store=store,
            health_check_interval_s=health_check_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _snapshot_loop(
            snapshot=snapshot,
            sink=sink,
            snapshot_interval_s=snapshot_interval_s,
            shutdown_event=shutdown_event,
        ),
    )

    # Final relay flush after shutdown
    logger.info("Attempting final relay flush before exit")
    await _relay_once(relay=relay, store=store, clock=clock, health=health)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def _safe_state_callback(health: HealthWriter) -> Callable[[ConnectivityState], None]:
    """Wrap health.set_connectivity so a failed write never breaks the supervisor."""

    def _on_state_change(state: ConnectivityState) -> None:
        try:
            health.set_connectivity(state)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)

    return _on_state_change


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Raises:
        StorageUnavailableError: If the storage root cannot be used at
            startup.
    """
    from relay.src.config import RelaySettings

    settings = RelaySettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    from relay.src.clock import SystemClock
    from relay.src.ingestor import RecordIngestor
    from relay.src.snapshot import LiveSnapshot, SnapshotFileSink
    from relay.src.store import DurableStore
    from relay.src.supervisor import ConnectivitySupervisor
    from relay.src.uploader import HttpObjectStore, UploadRelay

    store = DurableStore(settings.storage_root)
    if not store.initialize():
        raise StorageUnavailableError(f"storage root {settings.storage_root} is not usable")

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    health = HealthWriter(settings.health_path)
    try:
        health.set_storage_healthy(True)
    except Exception:
        logger.warning("Failed to write health file", exc_info=True)
    clock = SystemClock()
    snapshot = LiveSnapshot()
    queue: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue(maxsize=settings.queue_size)

    supervisor = ConnectivitySupervisor(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        topic=settings.mqtt_topic,
        queue=queue,
        reconnect_interval_s=settings.reconnect_interval_s,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        keepalive_s=settings.mqtt_keepalive_s,
        on_state_change=_safe_state_callback(health),
    )
    relay = UploadRelay(
        store=store,
        remote=HttpObjectStore(settings.remote_base_url, timeout_s=settings.http_timeout_s),
        clock=clock,
        connectivity=lambda: supervisor.state,
    )

    await run_loops(
        supervisor=supervisor,
        ingestor=RecordIngestor(store=store, snapshot=snapshot, clock=clock),
        relay=relay,
        store=store,
        snapshot=snapshot,
        sink=SnapshotFileSink(settings.snapshot_path),
        clock=clock,
        queue=queue,
        upload_interval_s=settings.upload_interval_s,
        health_check_interval_s=settings.health_check_interval_s,
        snapshot_interval_s=settings.snapshot_interval_s,
        shutdown_event=shutdown_event,
        health=health,
    )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the edge relay."""
    try:
        asyncio.run(async_main())
    except StorageUnavailableError as exc:
        logger.critical("Cannot start: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
