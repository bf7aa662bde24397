"""
Wall-clock source and the naming scheme derived from it.

Records are bucketed by local date and named by arrival second. Bucket
and timestamp keys are always taken from the same datetime so a record
arriving at midnight never lands in the wrong day's bucket.

CHANGELOG:
- 2026-10-18: Add record_bucket
- 2026-10-02: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

RECORD_PREFIX = "data_"
RECORD_SUFFIX = ".json"


class Clock(Protocol):
    """Anything that can report the current wall time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the host's local time.

    How the host keeps its clock in sync (NTP, RTC) is outside the relay.
    """

    def now(self) -> datetime:
        return datetime.now().astimezone()


def bucket_key(dt: datetime) -> str:
    """Return the date bucket name, e.g. ``2024-05-01``."""
    return dt.strftime("%Y-%m-%d")


def timestamp_key(dt: datetime) -> str:
    """Return the second-resolution timestamp, e.g. ``2024-05-01_10-15-30``."""
    return dt.strftime("%Y-%m-%d_%H-%M-%S")


def record_path(bucket: str, timestamp: str) -> str:
    """Return the store-relative path of a record.

    Example: ``/2024-05-01/data_2024-05-01_10-15-30.json``.
    """
    return f"/{bucket}/{RECORD_PREFIX}{timestamp}{RECORD_SUFFIX}"


def remote_key(path: str) -> str:
    """Return the remote object key for a store-relative record path."""
    return path.lstrip("/")


def record_bucket(path: str) -> str:
    """Return the bucket a store-relative record path belongs to."""
    return path.strip("/").split("/", 1)[0]
