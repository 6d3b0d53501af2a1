"""
Archive key naming.

    {prefix}/{namespace}/snap-{YYYYMMDD-HHMMSS}.tar.zst

The timestamp is UTC and zero-padded, so sorting keys as strings sorts them
chronologically. Retention and restore rely on that.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

ARCHIVE_EXTENSION = ".tar.zst"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_ARCHIVE_NAME = re.compile(r"^snap-(\d{8}-\d{6})\.tar\.zst$")


def format_timestamp(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def archive_key(prefix: str, namespace: str, timestamp: str) -> str:
    """Build the object key for an archive."""
    return f"{prefix}/{namespace}/snap-{timestamp}{ARCHIVE_EXTENSION}"


def archive_timestamp(key: str) -> str | None:
    """Return the timestamp embedded in an archive key, or None for other objects."""
    match = _ARCHIVE_NAME.match(key.rsplit("/", 1)[-1])
    return match.group(1) if match else None


def is_archive_key(key: str) -> bool:
    return archive_timestamp(key) is not None
