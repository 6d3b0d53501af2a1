"""
Unit tests for archive keys and retention.

Tests cover:
- Key format and timestamp parsing
- Chronological ordering of keys
- Expired archive selection
- Best-effort deletion
"""

from datetime import datetime, timedelta, timezone

import pytest

from ops.snapshot_agent.snapshot.keys import (
    archive_key,
    archive_timestamp,
    format_timestamp,
    is_archive_key,
)
from ops.snapshot_agent.snapshot.retention import enforce_retention, select_expired
from ops.snapshot_agent.store.base import ObjectInfo

PREFIX = "snapshots/default/"


def key_at(ts: str) -> str:
    return archive_key("snapshots", "default", ts)


class TestArchiveKeys:
    """Tests for archive key naming."""

    def test_key_format(self):
        """Keys follow <prefix>/<namespace>/snap-<ts>.tar.zst."""
        assert key_at("20250101-020000") == "snapshots/default/snap-20250101-020000.tar.zst"

    def test_timestamp_is_utc(self):
        """Timestamps are rendered in UTC."""
        local = datetime(2025, 1, 1, 4, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(local) == "20250101-020000"

    def test_timestamp_round_trip(self):
        """The timestamp can be read back from a key."""
        assert archive_timestamp(key_at("20250101-020000")) == "20250101-020000"

    @pytest.mark.parametrize(
        "key",
        [
            "snapshots/default/backup-20250101-020000.tar.gz",
            "snapshots/default/snap-20250101.tar.zst",
            "snapshots/default/notes.txt",
            "snapshots/default/",
        ],
    )
    def test_foreign_keys(self, key):
        """Objects that are not archives are recognized as such."""
        assert not is_archive_key(key)

    def test_string_order_is_chronological(self):
        """Sorting keys as strings sorts them by time."""
        base = datetime(2024, 12, 31, 23, 59, 58, tzinfo=timezone.utc)
        keys = [key_at(format_timestamp(base + timedelta(seconds=i))) for i in range(5)]
        assert sorted(reversed(keys)) == keys


class TestSelectExpired:
    """Tests for retention selection."""

    def test_keeps_newest(self):
        """The newest retain_count keys are retained."""
        keys = [key_at(f"20250101-0200{s:02d}") for s in range(5)]
        expired, retained = select_expired(reversed(keys), 3)
        assert expired == keys[:2]
        assert retained == keys[2:]

    def test_fewer_than_retain_count(self):
        """Nothing expires when under the limit."""
        keys = [key_at("20250101-020000")]
        assert select_expired(keys, 3) == ([], keys)

    def test_ignores_foreign_objects(self):
        """Non-archive objects are never expired or counted."""
        keys = [key_at("20250101-020000"), key_at("20250101-020015"), f"{PREFIX}README"]
        expired, retained = select_expired(keys, 1)
        assert expired == [key_at("20250101-020000")]
        assert f"{PREFIX}README" not in retained

    def test_negative_retain_count(self):
        """Negative counts are rejected."""
        with pytest.raises(ValueError):
            select_expired([], -1)


class TestEnforceRetention:
    """Tests for retention deletion."""

    @pytest.mark.asyncio
    async def test_deletes_oldest(self, store):
        """After enforcement only the newest retain_count archives remain."""
        keys = [key_at(f"20250101-0200{s:02d}") for s in range(0, 60, 15)]
        for key in keys:
            store.put(key, b"x")

        result = await enforce_retention(store, await store.list(PREFIX), 3)

        assert result.deleted == keys[:1]
        assert result.retained == keys[1:]
        assert store.keys == keys[1:]

    @pytest.mark.asyncio
    async def test_failed_delete_is_skipped(self, store):
        """A failed delete is reported and the remaining deletes still run."""
        keys = [key_at(f"20250101-0200{s:02d}") for s in range(4)]
        for key in keys:
            store.put(key, b"x")
        store.fail("delete", key=keys[0])

        result = await enforce_retention(store, await store.list(PREFIX), 2)

        assert result.failed == [keys[0]]
        assert result.deleted == [keys[1]]
        assert store.keys == [keys[0], keys[2], keys[3]]

    @pytest.mark.asyncio
    async def test_unsorted_listing(self, store):
        """Listing order does not matter."""
        objects = [ObjectInfo(key=key_at(f"20250101-0200{s:02d}")) for s in (3, 1, 2, 0)]
        for obj in objects:
            store.put(obj.key, b"x")

        result = await enforce_retention(store, objects, 1)

        assert store.keys == [key_at("20250101-020003")]
        assert result.deleted == [key_at(f"20250101-0200{s:02d}") for s in range(3)]
