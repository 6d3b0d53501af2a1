"""
Small-archive audit tool.

Truncated archives (disk pressure during packaging, an interrupted upload)
show up as objects far smaller than a real snapshot. This tool lists archives
below a size threshold and, only when asked with --delete, removes them.

Usage:
    snapshot-audit [--min-size BYTES] [--delete] [-v]

Exit codes:
    0  report finished, or every flagged archive was deleted
    1  configuration or listing error, or at least one deletion failed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field

from ..config import AgentConfig, ConfigError
from ..main import setup_logging
from ..store.base import ObjectInfo, ObjectStore, StoreError, create_object_store

logger = logging.getLogger(__name__)


@dataclass
class AuditResult:
    """Result of an audit run.

    Attributes:
        small: Objects below the threshold
        deleted: Keys deleted (delete mode only)
        failed: Keys whose deletion failed
    """

    small: list[ObjectInfo] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class SmallArchiveAuditor:
    """Finds and optionally deletes undersized archives in one namespace.

    Example:
        >>> auditor = SmallArchiveAuditor(store, "snapshots/default/")
        >>> small = await auditor.find_small(10240)
    """

    def __init__(self, store: ObjectStore, namespace_prefix: str) -> None:
        self.store = store
        self.namespace_prefix = namespace_prefix

    async def find_small(self, min_size: int) -> list[ObjectInfo]:
        """Objects strictly smaller than min_size, sorted by key.

        Objects whose size the store did not report are skipped.
        """
        objects = await self.store.list(self.namespace_prefix)
        return sorted(
            (obj for obj in objects if obj.size is not None and obj.size < min_size),
            key=lambda obj: obj.key,
        )

    async def delete(self, objects: list[ObjectInfo]) -> tuple[list[str], list[str]]:
        """Delete objects, continuing past failures.

        Returns:
            Tuple of (deleted keys, failed keys)
        """
        deleted, failed = [], []
        for obj in objects:
            logger.info(f"Deleting {obj.key}...")
            try:
                await self.store.delete(obj.key)
                deleted.append(obj.key)
            except StoreError as e:
                logger.error(f"Failed to delete {obj.key}: {e}")
                failed.append(obj.key)
        return deleted, failed

    async def run(self, min_size: int, delete: bool = False) -> AuditResult:
        """Report small archives, deleting them only when delete is True."""
        result = AuditResult(small=await self.find_small(min_size))
        if delete and result.small:
            result.deleted, result.failed = await self.delete(result.small)
        return result


async def run_audit(
    config: AgentConfig,
    min_size: int,
    delete: bool,
    store: ObjectStore | None = None,
) -> AuditResult:
    store = store or create_object_store(config.store)
    try:
        auditor = SmallArchiveAuditor(store, config.store.namespace_prefix)
        return await auditor.run(min_size, delete=delete)
    finally:
        await store.close()


def main() -> None:
    """CLI entry point for the audit tool."""
    parser = argparse.ArgumentParser(description="Find (and optionally delete) truncated archives")
    parser.add_argument(
        "--min-size",
        type=int,
        default=None,
        help="Flag archives smaller than this many bytes (default: MIN_ARCHIVE_BYTES)",
    )
    parser.add_argument(
        "--delete",
        action="store_true",
        help="Actually delete the flagged archives (default is report only)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    args = parser.parse_args()

    try:
        config = AgentConfig.from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config, level="DEBUG" if args.verbose else None)
    min_size = args.min_size if args.min_size is not None else config.restore.min_archive_bytes

    print(
        f"Checking for backups smaller than {min_size} bytes in "
        f"{config.store.container}/{config.store.namespace_prefix}..."
    )
    try:
        result = asyncio.run(run_audit(config, min_size, args.delete))
    except StoreError as e:
        print(f"Audit failed: {e}", file=sys.stderr)
        sys.exit(1)

    if not result.small:
        print("No small backups found.")
        sys.exit(0)

    print(f"Found {len(result.small)} small backups:")
    for obj in result.small:
        print(f"{obj.key} ({obj.size} bytes)")

    if not args.delete:
        print("")
        print("Run with --delete to actually delete these files.")
        sys.exit(0)

    print(f"Deleted {len(result.deleted)} of {len(result.small)} blobs.")
    sys.exit(1 if result.failed else 0)


if __name__ == "__main__":
    main()
