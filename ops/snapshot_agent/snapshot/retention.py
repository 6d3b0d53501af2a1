"""
Retention enforcement for snapshot archives.

Keeps the `retain_count` most recent archives of a namespace and deletes the
rest, oldest first. Archive keys sort chronologically as strings, so no
timestamp parsing or store-reported modification time is involved.

Deletion is best effort: a failed delete is logged and skipped, and the next
run retries it because the object is still in the listing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from ..store.base import ObjectInfo, ObjectStore, StoreError
from .keys import is_archive_key

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    """Outcome of one retention run.

    Attributes:
        retained: Archive keys kept, oldest first
        deleted: Archive keys deleted
        failed: Archive keys whose deletion failed
    """

    retained: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def select_expired(keys: Iterable[str], retain_count: int) -> tuple[list[str], list[str]]:
    """Split archive keys into (expired, retained).

    Non-archive keys are ignored. Both lists are sorted ascending.

    Raises:
        ValueError: If retain_count is negative
    """
    if retain_count < 0:
        raise ValueError(f"retain_count must not be negative, got {retain_count}")

    archives = sorted({key for key in keys if is_archive_key(key)})
    excess = max(len(archives) - retain_count, 0)
    return archives[:excess], archives[excess:]


async def enforce_retention(
    store: ObjectStore,
    objects: Iterable[ObjectInfo],
    retain_count: int,
) -> RetentionResult:
    """Delete the oldest archives beyond retain_count.

    Args:
        store: Object store holding the archives
        objects: Full listing of the namespace
        retain_count: Number of archives to keep

    Returns:
        RetentionResult describing what was kept, deleted and failed
    """
    expired, retained = select_expired((obj.key for obj in objects), retain_count)
    result = RetentionResult(retained=retained)

    for key in expired:
        try:
            await store.delete(key)
            result.deleted.append(key)
            logger.info(f"Deleted old snapshot {key}")
        except StoreError as e:
            result.failed.append(key)
            logger.warning(f"Failed to delete old snapshot {key}: {e}")

    return result
