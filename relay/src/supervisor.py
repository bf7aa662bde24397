"""
Connectivity supervisor for the broker link.

Tracks a three-state link model and drives reconnects at a fixed interval:

- ``DOWN``: the transport (network link) is not up. The supervisor asks
  the transport to reconnect and waits ``reconnect_interval_s``.
- ``BROKER_DOWN``: the transport is up but there is no broker session.
  The supervisor attempts the MQTT handshake every ``reconnect_interval_s``.
- ``CONNECTED``: the topic subscription is (re-)issued and inbound
  messages are pushed into a bounded asyncio queue for the ingestor.

A broker drop (detected by the MQTT keepalive) returns to ``BROKER_DOWN``;
a transport drop (detected by a watchdog polling ``Transport.is_up``)
returns to ``DOWN``. Messages are only enqueued while ``CONNECTED``.

CHANGELOG:
- 2026-10-05: Add transport watchdog (STORY-011)
- 2026-10-04: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Protocol

import aiomqtt

from relay.src.models import ConnectivityState

logger = logging.getLogger(__name__)

TRANSPORT_CHECK_INTERVAL_S: float = 1.0
"""How often the watchdog re-checks the transport while connected."""


class Transport(Protocol):
    """Link-layer collaborator (Wi-Fi, cellular, ...)."""

    def is_up(self) -> bool: ...

    async def reconnect(self) -> bool: ...


class StaticTransport:
    """Transport for hosts whose operating system manages the link.

    Always reports the link as up; reconnecting is a no-op.
    """

    def is_up(self) -> bool:
        return True

    async def reconnect(self) -> bool:
        return True


class ConnectivitySupervisor:
    """Keeps the MQTT subscription alive and feeds the inbound queue.

    Args:
        host: Broker hostname.
        port: Broker port.
        topic: Topic to subscribe to.
        queue: Bounded queue receiving ``(topic, payload)`` tuples.
        reconnect_interval_s: Fixed delay between connection attempts.
        client_id: MQTT client identifier.
        username: Optional broker username.
        password: Optional broker password.
        keepalive_s: MQTT keepalive; a missed keepalive drops the session.
        transport: Link-layer collaborator; defaults to StaticTransport.
        client_factory: Zero-argument callable returning an async context
            manager that behaves like ``aiomqtt.Client``. Defaults to
            building an ``aiomqtt.Client`` from the arguments above.
        on_state_change: Optional callback invoked with every new state.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        topic: str,
        queue: asyncio.Queue[tuple[str, bytes]],
        reconnect_interval_s: float = 5.0,
        client_id: str = "edge-relay",
        username: str | None = None,
        password: str | None = None,
        keepalive_s: int = 60,
        transport: Transport | None = None,
        client_factory: Callable[[], aiomqtt.Client] | None = None,
        on_state_change: Callable[[ConnectivityState], None] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._topic = topic
        self._queue = queue
        self._reconnect_interval_s = reconnect_interval_s
        self._transport = transport or StaticTransport()
        self._on_state_change = on_state_change
        self._state = ConnectivityState.DOWN
        self._reconnect_count = 0
        if client_factory is None:

            def client_factory() -> aiomqtt.Client:
                return aiomqtt.Client(
                    host,
                    port=port,
                    identifier=client_id,
                    username=username,
                    password=password,
                    keepalive=keepalive_s,
                )

        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def reconnect_count(self) -> int:
        """Number of broker sessions established after the first one."""
        return self._reconnect_count

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Maintain the link until *shutdown_event* is set."""
        logger.info(
            "Connectivity supervisor started (broker=%s:%d, topic=%s, retry=%ss)",
            self._host,
            self._port,
            self._topic,
            self._reconnect_interval_s,
        )
        sessions = 0
        while not shutdown_event.is_set():
            if not self._transport.is_up():
                self._set_state(ConnectivityState.DOWN)
                try:
                    await self._transport.reconnect()
                except Exception:
                    logger.warning("Transport reconnect attempt failed", exc_info=True)
                if not self._transport.is_up():
                    await self._wait(shutdown_event)
                    continue

            self._set_state(ConnectivityState.BROKER_DOWN)
            try:
                async with self._client_factory() as client:
                    await client.subscribe(self._topic)
                    sessions += 1
                    if sessions > 1:
                        self._reconnect_count += 1
                    self._set_state(ConnectivityState.CONNECTED)
                    await self._serve(client, shutdown_event)
            except aiomqtt.MqttError as exc:
                logger.warning("Broker link error: %s", exc)
            except Exception:
                logger.error("Unexpected broker session error", exc_info=True)

            if shutdown_event.is_set():
                break
            if self._transport.is_up():
                self._set_state(ConnectivityState.BROKER_DOWN)
            else:
                self._set_state(ConnectivityState.DOWN)
                continue
            await self._wait(shutdown_event)

        self._set_state(ConnectivityState.DOWN)
        logger.info("Connectivity supervisor stopped")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _serve(self, client: aiomqtt.Client, shutdown_event: asyncio.Event) -> None:
        """Pump messages until shutdown, transport loss, or broker error."""
        pump = asyncio.create_task(self._pump(client))
        watchdog = asyncio.create_task(self._watch_transport())
        stop = asyncio.create_task(shutdown_event.wait())
        tasks = {pump, watchdog, stop}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if watchdog in done:
            logger.warning("Transport went down while connected to broker")
        if pump in done:
            # Re-raises the MqttError that ended the message iteration.
            pump.result()

    async def _pump(self, client: aiomqtt.Client) -> None:
        async for message in client.messages:
            if self._state is not ConnectivityState.CONNECTED:
                continue
            await self._queue.put((str(message.topic), _payload_bytes(message.payload)))
        raise aiomqtt.MqttError("message stream ended")

    async def _watch_transport(self) -> None:
        while self._transport.is_up():
            await asyncio.sleep(TRANSPORT_CHECK_INTERVAL_S)

    async def _wait(self, shutdown_event: asyncio.Event) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=self._reconnect_interval_s,
            )

    def _set_state(self, state: ConnectivityState) -> None:
        if state is self._state:
            return
        logger.info("Connectivity %s -> %s", self._state, state)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)


def _payload_bytes(payload: object) -> bytes:
    """Normalize an aiomqtt payload (bytes, str, number or None) to bytes."""
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return str(payload).encode("utf-8")
