"""
Unit tests for the HTTP object store client and the upload relay.

Tests verify:
- HttpObjectStore PUTs to {base_url}/{key} with Content-Type application/json.
- HTTP 200 is ACCEPTED, any other status REJECTED, transport errors and
  timeouts UNREACHABLE.
- The relay deletes a record only when the remote store accepted it and
  leaves every other record byte-identical.
- A second cycle against an always-accepting remote relays nothing.
- Missing bucket and unhealthy storage make the cycle a no-op.
- A record overwritten during its upload is kept for the next cycle.
- Unreachable outcomes while the transport is down are logged at debug.
- An unreadable record is skipped and the rest of the bucket still relays.

CHANGELOG:
- 2026-10-18: Skip unreadable records instead of aborting the cycle
- 2026-10-06: Cover same-path overwrite during upload (STORY-012)
- 2026-10-03: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import errno
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from relay.src.models import ConnectivityState, UploadOutcome
from relay.src.store import DurableStore
from relay.src.uploader import HttpObjectStore, UploadRelay

_FIRST = "/2024-05-01/data_2024-05-01_10-15-30.json"
_SECOND = "/2024-05-01/data_2024-05-01_10-15-31.json"
_PAYLOAD = b'{"temperature":23.5,"humidity":60,"vibration_count":2,"FAN":"ON"}'

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_client(*, status_code: int | None = 200, exc: Exception | None = None) -> AsyncMock:
    """Return an AsyncMock standing in for httpx.AsyncClient."""
    mock_response = MagicMock()
    mock_response.status_code = status_code

    mock_client = AsyncMock()
    if exc is not None:
        mock_client.put = AsyncMock(side_effect=exc)
    else:
        mock_client.put = AsyncMock(return_value=mock_response)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


class FakeRemote:
    """Remote store answering from a per-key outcome table."""

    def __init__(self, outcomes: dict[str, UploadOutcome] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[tuple[str, bytes]] = []

    async def put(self, key: str, body: bytes) -> UploadOutcome:
        self.calls.append((key, body))
        return self.outcomes.get(key, UploadOutcome.ACCEPTED)


# ---------------------------------------------------------------------------
# HttpObjectStore
# ---------------------------------------------------------------------------


class TestHttpObjectStore:
    """HttpObjectStore maps HTTP results to UploadOutcome."""

    @pytest.mark.asyncio
    async def test_put_request_shape(self) -> None:
        mock_client = _mock_client(status_code=200)
        remote = HttpObjectStore("https://objects.example.com/telemetry/", timeout_s=12)

        with patch(
            "relay.src.uploader.httpx.AsyncClient", return_value=mock_client
        ) as mock_client_cls:
            outcome = await remote.put("2024-05-01/data_2024-05-01_10-15-30.json", _PAYLOAD)

        assert outcome is UploadOutcome.ACCEPTED
        mock_client_cls.assert_called_once_with(timeout=12, verify=True)
        call_args = mock_client.put.call_args
        assert call_args[0][0] == (
            "https://objects.example.com/telemetry/2024-05-01/data_2024-05-01_10-15-30.json"
        )
        assert call_args[1]["content"] == _PAYLOAD
        assert call_args[1]["headers"] == {"Content-Type": "application/json"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [201, 204, 403, 500, 503])
    async def test_non_200_is_rejected(self, status_code: int) -> None:
        remote = HttpObjectStore("https://objects.example.com")

        with patch(
            "relay.src.uploader.httpx.AsyncClient",
            return_value=_mock_client(status_code=status_code),
        ):
            outcome = await remote.put("k", b"{}")

        assert outcome is UploadOutcome.REJECTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            httpx.ConnectTimeout("slow"),
            httpx.RemoteProtocolError("dropped"),
        ],
    )
    async def test_transport_errors_are_unreachable(self, exc: Exception) -> None:
        remote = HttpObjectStore("https://objects.example.com")

        with patch("relay.src.uploader.httpx.AsyncClient", return_value=_mock_client(exc=exc)):
            outcome = await remote.put("k", b"{}")

        assert outcome is UploadOutcome.UNREACHABLE


# ---------------------------------------------------------------------------
# UploadRelay
# ---------------------------------------------------------------------------


class TestRelayCycle:
    """flush() uploads then deletes only on acceptance."""

    @pytest.mark.asyncio
    async def test_accepted_deleted_rejected_kept(self, store: DurableStore, clock) -> None:
        store.write(_FIRST, _PAYLOAD)
        store.write(_SECOND, b'{"temperature": 1}')
        remote = FakeRemote({_SECOND.lstrip("/"): UploadOutcome.REJECTED})
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        relayed = await relay.flush()

        assert relayed == 1
        assert store.exists(_FIRST) is False
        assert store.read(_SECOND) == b'{"temperature": 1}'
        assert sorted(key for key, _ in remote.calls) == [
            "2024-05-01/data_2024-05-01_10-15-30.json",
            "2024-05-01/data_2024-05-01_10-15-31.json",
        ]

    @pytest.mark.asyncio
    async def test_uploads_raw_file_bytes(self, store: DurableStore, clock) -> None:
        store.write(_FIRST, _PAYLOAD)
        remote = FakeRemote()
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        await relay.flush()

        assert remote.calls == [("2024-05-01/data_2024-05-01_10-15-30.json", _PAYLOAD)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [UploadOutcome.REJECTED, UploadOutcome.UNREACHABLE])
    async def test_failed_outcome_leaves_file_identical(
        self, store: DurableStore, clock, outcome: UploadOutcome
    ) -> None:
        store.write(_FIRST, _PAYLOAD)
        relay = UploadRelay(
            store=store,
            remote=FakeRemote({_FIRST.lstrip("/"): outcome}),
            clock=clock,
        )

        assert await relay.flush() == 0
        assert await relay.flush() == 0
        assert store.read(_FIRST) == _PAYLOAD

    @pytest.mark.asyncio
    async def test_second_cycle_converges_to_empty(self, store: DurableStore, clock) -> None:
        store.write(_FIRST, _PAYLOAD)
        store.write(_SECOND, _PAYLOAD)
        remote = FakeRemote()
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        assert await relay.flush() == 2
        assert await relay.flush() == 0
        assert len(remote.calls) == 2
        assert store.count("2024-05-01") == 0
        assert store.bucket_exists("2024-05-01")

    @pytest.mark.asyncio
    async def test_only_todays_bucket_is_relayed(self, store: DurableStore, clock) -> None:
        store.write("/2024-04-30/data_2024-04-30_23-59-59.json", _PAYLOAD)
        remote = FakeRemote()
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        assert await relay.flush() == 0
        assert remote.calls == []
        assert store.exists("/2024-04-30/data_2024-04-30_23-59-59.json")

    @pytest.mark.asyncio
    async def test_delete_failure_still_counts(
        self, store: DurableStore, clock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store.write(_FIRST, _PAYLOAD)
        monkeypatch.setattr(store, "delete", lambda path: False)
        relay = UploadRelay(store=store, remote=FakeRemote(), clock=clock)

        assert await relay.flush() == 1
        assert store.exists(_FIRST)

    @pytest.mark.asyncio
    async def test_unreadable_record_skipped_rest_relayed(
        self, store: DurableStore, clock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store.write(_FIRST, _PAYLOAD)
        store.write(_SECOND, _PAYLOAD)
        unreadable = store.root / _FIRST.lstrip("/")
        real_read_bytes = Path.read_bytes

        def _read_bytes(self: Path) -> bytes:
            if self == unreadable:
                raise OSError(errno.EIO, "I/O error")
            return real_read_bytes(self)

        monkeypatch.setattr(Path, "read_bytes", _read_bytes)
        remote = FakeRemote()
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        assert await relay.flush() == 1
        assert remote.calls == [(_SECOND.lstrip("/"), _PAYLOAD)]
        assert store.exists(_SECOND) is False
        assert store.exists(_FIRST) is True
        assert store.healthy is False


class TestRelayNoOp:
    """Cycles that do nothing."""

    @pytest.mark.asyncio
    async def test_missing_bucket_is_noop(self, store: DurableStore, clock) -> None:
        remote = FakeRemote()
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        assert await relay.flush() == 0
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_unhealthy_store_skips_cycle(self, clock) -> None:
        store = MagicMock(spec=DurableStore)
        store.healthy = False
        remote = FakeRemote()
        relay = UploadRelay(store=store, remote=remote, clock=clock)

        assert await relay.flush() == 0
        store.reinitialize.assert_called_once()
        store.list_records.assert_not_called()
        assert remote.calls == []


class TestConcurrentOverwrite:
    """A record rewritten while uploading is kept for the next cycle."""

    @pytest.mark.asyncio
    async def test_changed_record_not_deleted(self, store: DurableStore, clock) -> None:
        store.write(_FIRST, _PAYLOAD)

        class OverwritingRemote(FakeRemote):
            async def put(self, key: str, body: bytes) -> UploadOutcome:
                store.write(_FIRST, b'{"temperature": 99}')
                return await super().put(key, body)

        relay = UploadRelay(store=store, remote=OverwritingRemote(), clock=clock)

        assert await relay.flush() == 1
        assert store.read(_FIRST) == b'{"temperature": 99}'


class TestOutcomeLogging:
    """Unreachable remote while the transport is down is not escalated."""

    @pytest.mark.asyncio
    async def test_unreachable_while_down_logged_at_debug(
        self, store: DurableStore, clock, caplog: pytest.LogCaptureFixture
    ) -> None:
        store.write(_FIRST, _PAYLOAD)
        relay = UploadRelay(
            store=store,
            remote=FakeRemote({_FIRST.lstrip("/"): UploadOutcome.UNREACHABLE}),
            clock=clock,
            connectivity=lambda: ConnectivityState.DOWN,
        )

        with caplog.at_level(logging.DEBUG, logger="relay.src.uploader"):
            await relay.flush()

        records = [r for r in caplog.records if "Relay cycle" in r.getMessage()]
        assert len(records) == 1
        assert records[0].levelno == logging.DEBUG

    @pytest.mark.asyncio
    async def test_unreachable_while_connected_logged_at_warning(
        self, store: DurableStore, clock, caplog: pytest.LogCaptureFixture
    ) -> None:
        store.write(_FIRST, _PAYLOAD)
        relay = UploadRelay(
            store=store,
            remote=FakeRemote({_FIRST.lstrip("/"): UploadOutcome.UNREACHABLE}),
            clock=clock,
            connectivity=lambda: ConnectivityState.CONNECTED,
        )

        with caplog.at_level(logging.DEBUG, logger="relay.src.uploader"):
            await relay.flush()

        records = [r for r in caplog.records if "Relay cycle" in r.getMessage()]
        assert records[0].levelno == logging.WARNING
