"""
Object store abstraction for snapshot archives.

This module provides a pluggable client interface supporting:
- Self-signed HTTP with shared-key authentication (default, no CLI needed)
- Delegation to the storage management CLI
- In-memory (for testing)

Invariants:
    - Callers depend only on the ObjectStore protocol
    - All implementations raise StoreError subclasses on failure

How to change safely:
    - New clients must implement the ObjectStore protocol
    - Verify signing changes against the real service, not only the unit tests
"""

from .base import (
    ObjectInfo,
    ObjectNotFoundError,
    ObjectStore,
    StoreCommandError,
    StoreError,
    StoreRequestError,
    create_object_store,
)
from .cli import CliObjectStore
from .memory import InMemoryObjectStore
from .shared_key import SharedKeyObjectStore

__all__ = [
    # Protocol and types
    "ObjectStore",
    "ObjectInfo",
    "StoreError",
    "StoreRequestError",
    "StoreCommandError",
    "ObjectNotFoundError",
    # Factory
    "create_object_store",
    # Implementations
    "SharedKeyObjectStore",
    "CliObjectStore",
    "InMemoryObjectStore",
]
