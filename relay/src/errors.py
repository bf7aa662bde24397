"""
Exception types raised by the relay components.

Remote upload failures are not exceptions: they are reported as
UploadOutcome values so the relay can leave the record for the next cycle.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class DecodeError(RelayError):
    """Raised when an inbound payload is not a valid reading."""


class StorageError(RelayError):
    """Base class for durable store failures."""


class StorageUnavailableError(StorageError):
    """Raised when the storage device is missing, full or not writable."""


class PartialWriteError(StorageError):
    """Raised when fewer bytes were written than requested.

    The partially written file is left on disk; the caller decides whether
    to retry.
    """

    def __init__(self, path: str, written: int, expected: int) -> None:
        super().__init__(f"short write to {path}: {written} of {expected} bytes")
        self.path = path
        self.written = written
        self.expected = expected
