"""
In-memory object store implementation for testing.

This module provides a dict-backed ObjectStore for:
- Unit tests
- Integration tests of the snapshot loop and restore coordinator
- Local development without a storage account

Invariants:
    - All data is lost on process exit
    - Listing order matches the real service (lexicographic by key)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with ObjectStore protocol
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .base import ObjectInfo, ObjectNotFoundError, StoreError

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """In-memory object."""

    data: bytes
    last_modified: datetime


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore for testing.

    Every call is appended to `calls` as (operation, key_or_prefix) so tests
    can assert which network operations would have been made.

    Example:
        >>> store = InMemoryObjectStore()
        >>> await store.upload("snapshots/default/snap-20250101-020000.tar.zst", b"...")
        >>> [o.key for o in await store.list("snapshots/default/")]
        ['snapshots/default/snap-20250101-020000.tar.zst']
    """

    def __init__(self) -> None:
        self._objects: dict[str, StoredObject] = {}
        self._failures: dict[tuple[str, str | None], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def fail(self, operation: str, key: str | None = None, error: Exception | None = None) -> None:
        """Make an operation fail.

        Args:
            operation: One of list, upload, download, delete
            key: Only fail for this key (None fails every call)
            error: Exception to raise (defaults to StoreError)
        """
        self._failures[(operation, key)] = error or StoreError(f"Injected {operation} failure")

    def clear_failures(self) -> None:
        self._failures.clear()

    def _check(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        error = self._failures.get((operation, key)) or self._failures.get((operation, None))
        if error is not None:
            raise error

    def put(self, key: str, data: bytes) -> None:
        """Seed an object without recording a call."""
        self._objects[key] = StoredObject(data=data, last_modified=datetime.now(timezone.utc))

    @property
    def keys(self) -> list[str]:
        return sorted(self._objects)

    async def list(self, prefix: str) -> list[ObjectInfo]:
        self._check("list", prefix)
        return [
            ObjectInfo(key=key, last_modified=obj.last_modified, size=len(obj.data))
            for key, obj in sorted(self._objects.items())
            if key.startswith(prefix)
        ]

    async def upload(self, key: str, data: bytes) -> None:
        self._check("upload", key)
        self.put(key, data)

    async def download(self, key: str) -> bytes:
        self._check("download", key)
        if key not in self._objects:
            raise ObjectNotFoundError(f"Blob not found: {key}")
        return self._objects[key].data

    async def delete(self, key: str) -> None:
        self._check("delete", key)
        if key not in self._objects:
            raise ObjectNotFoundError(f"Blob not found: {key}")
        del self._objects[key]

    async def close(self) -> None:
        self.closed = True
