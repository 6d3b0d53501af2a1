"""
Base protocol and types for the object store abstraction.

This module defines the ObjectStore protocol that all clients must implement,
along with the listing entry type and the error hierarchy.

Invariants:
    - Keys are full object names inside the configured container
    - list() returns every object under the prefix (implementations paginate)
    - Any failed operation raises a StoreError subclass, never returns a sentinel

How to change safely:
    - Protocol changes require updating all implementations
    - Callers must depend only on ObjectStore, never on a concrete client
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import StoreConfig

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for object store operations."""

    pass


class StoreRequestError(StoreError):
    """The object store answered with a non-2xx status.

    Attributes:
        status: HTTP status code
        body: Response body, kept for diagnostics
    """

    def __init__(self, message: str, status: int, body: str = "") -> None:
        super().__init__(f"{message}: HTTP {status}: {body[:500]}")
        self.status = status
        self.body = body


class StoreCommandError(StoreError):
    """The management CLI exited with a non-zero status.

    Attributes:
        returncode: Process exit code
        stderr: Captured standard error
    """

    def __init__(self, message: str, returncode: int, stderr: str = "") -> None:
        super().__init__(f"{message}: exit {returncode}: {stderr.strip()[:500]}")
        self.returncode = returncode
        self.stderr = stderr


class ObjectNotFoundError(StoreError):
    """The requested object does not exist."""

    pass


@dataclass(frozen=True)
class ObjectInfo:
    """One entry of an object listing.

    Attributes:
        key: Full object name
        last_modified: Last modification time reported by the store
        size: Object size in bytes, if reported
    """

    key: str
    last_modified: datetime | None = None
    size: int | None = None


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for object store clients.

    Both the CLI-delegating client and the self-signed HTTP client implement
    this, so the snapshotter, retention, restore and audit code never need to
    know which one they talk to.

    Example:
        >>> store = create_object_store(config.store)
        >>> await store.upload("snapshots/default/snap-20250101-020000.tar.zst", data)
        >>> objects = await store.list("snapshots/default/")
    """

    @abstractmethod
    async def list(self, prefix: str) -> list[ObjectInfo]:
        """List all objects whose key starts with prefix.

        Raises:
            StoreError: If the listing fails
        """
        ...

    @abstractmethod
    async def upload(self, key: str, data: bytes) -> None:
        """Upload data as a new object, overwriting any existing one.

        Raises:
            StoreError: If the upload fails
        """
        ...

    @abstractmethod
    async def download(self, key: str) -> bytes:
        """Download an object's content.

        Raises:
            ObjectNotFoundError: If the object does not exist
            StoreError: For other failures
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete an object.

        Raises:
            ObjectNotFoundError: If the object does not exist
            StoreError: For other failures
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections and other resources."""
        ...


def create_object_store(config: "StoreConfig") -> ObjectStore:
    """Factory function to create an object store client from configuration.

    Args:
        config: Store configuration

    Returns:
        Appropriate ObjectStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .cli import CliObjectStore
    from .shared_key import SharedKeyObjectStore

    if config.backend == StoreBackend.SHARED_KEY:
        return SharedKeyObjectStore(
            account_name=config.account_name,
            account_key=config.account_key or "",
            container=config.container,
            endpoint=config.endpoint_url,
            timeout_seconds=config.timeout_seconds,
        )
    elif config.backend == StoreBackend.CLI:
        return CliObjectStore(
            account_name=config.account_name,
            container=config.container,
            account_key=config.account_key,
            cli_path=config.cli_path,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")
