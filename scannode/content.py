"""Paths and constants for stored node content."""

from __future__ import annotations

import posixpath
import time
from datetime import datetime, timedelta, timezone

BLOOM_LIMIT = 10000
BLOOM_FALSE_POSITIVE_RATE = 0.0001

KIND_BATCH_RECEIPT = "batchReceipt"

HISTORY_SUPPORT = timedelta(hours=48)
BUCKET_INTERVAL = timedelta(minutes=30)
MAX_BUCKETS = HISTORY_SUPPORT // BUCKET_INTERVAL

DEFAULT_BASE_PATH = "/forta"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_BUCKET_INTERVAL_NS = BUCKET_INTERVAL // timedelta(microseconds=1) * 1000


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def repo_dir(user: str) -> str:
    """Repository directory of a user."""
    return _join(DEFAULT_BASE_PATH, user)


def content_dir(user: str, kind: str) -> str:
    """Directory of one kind of content for a user."""
    return _join(repo_dir(user), kind)


def bucket_dir(user: str, kind: str, bucket: str) -> str:
    """Directory of one bucket of a kind of content."""
    return _join(repo_dir(user), kind, bucket)


def _to_unix_nanos(now: datetime | int | None) -> int:
    if now is None:
        return time.time_ns()
    if isinstance(now, datetime):
        if now.tzinfo is None:
            now = now.astimezone()
        return (now - _EPOCH) // timedelta(microseconds=1) * 1000
    return int(now)


def new_content_path(
    user: str, kind: str, now: datetime | int | None = None
) -> tuple[str, str]:
    """Return (content path, bucket dir) for content created at ``now``.

    ``now`` is a datetime or Unix time in nanoseconds; defaults to the current time.
    """
    nanos = _to_unix_nanos(now)
    bucket_ts = nanos - nanos % _BUCKET_INTERVAL_NS
    bucket = bucket_dir(user, kind, str(bucket_ts))
    return _join(bucket, str(nanos)), bucket


def bloom_path(user: str) -> str:
    """Path of a user's bloom filter."""
    return _join(repo_dir(user), "bloom")