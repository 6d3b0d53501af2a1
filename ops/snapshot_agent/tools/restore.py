"""
Restore CLI tool for the snapshot agent.

Runs once at container start, before the primary workload is allowed to bind
its port. It restores the most recent archive into an empty data root, or
decides that nothing needs restoring, and records the decision in the restore
sentinel.

Usage:
    snapshot-restore [-v]

Configuration comes from the same environment variables as the agent.

Decision order:
    1. Data root already holds a recognizable database artifact -> write sentinel, done
    2. Sentinel exists                                          -> done
    3. No archive under <prefix>/<namespace>/                   -> write sentinel, done
    4. Otherwise download the greatest (= newest) archive key, extract it into
       WORK_DIR, move it into the data root, then write the sentinel

Exit codes:
    0  restored, nothing to restore, or already populated
    1  configuration error, or an archive was found but could not be restored

Invariants:
    - Once the sentinel exists the tool makes no store calls and changes no files
    - The sentinel is written last, only after the data root is complete
    - A failed restore never leaves a partially populated data root behind
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..config import AgentConfig, ConfigError
from ..main import setup_logging
from ..snapshot.archive import ArchiveError, extract_archive
from ..snapshot.keys import is_archive_key
from ..store.base import ObjectStore, StoreError, create_object_store

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """An archive was found but could not be restored."""

    pass


class RestoreOutcome(Enum):
    """How a restore run ended."""

    ALREADY_POPULATED = "already_populated"
    SENTINEL_PRESENT = "sentinel_present"
    NO_ARCHIVE = "no_archive"
    RESTORED = "restored"


@dataclass
class RestoreResult:
    """Result of a restore run.

    Attributes:
        outcome: How the run ended
        archive_key: Archive that was restored, if any
        size_bytes: Downloaded archive size
        duration_ms: Total duration
    """

    outcome: RestoreOutcome
    archive_key: str | None = None
    size_bytes: int = 0
    duration_ms: int = 0


class RestoreCoordinator:
    """Restores the newest archive into an empty data root exactly once.

    Example:
        >>> coordinator = RestoreCoordinator(
        ...     store, data_dir="/data", work_dir="/work",
        ...     sentinel_path="/data/.restore-complete",
        ...     namespace_prefix="snapshots/default/",
        ... )
        >>> result = await coordinator.restore()
    """

    def __init__(
        self,
        store: ObjectStore,
        data_dir: Path | str,
        work_dir: Path | str,
        sentinel_path: Path | str,
        namespace_prefix: str,
        populated_markers: tuple[str, ...] = ("pds.sqlite", "actors"),
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Object store client
            data_dir: Live data root
            work_dir: Scratch directory for the download and extraction
            sentinel_path: Restore sentinel
            namespace_prefix: Listing prefix (<prefix>/<namespace>/)
            populated_markers: Names under data_dir that mean state already exists
        """
        self.store = store
        self.data_dir = Path(data_dir)
        self.work_dir = Path(work_dir)
        self.sentinel_path = Path(sentinel_path)
        self.namespace_prefix = namespace_prefix
        self.populated_markers = populated_markers

    @classmethod
    def from_config(cls, config: AgentConfig, store: ObjectStore) -> RestoreCoordinator:
        return cls(
            store=store,
            data_dir=config.snapshot.data_dir,
            work_dir=config.snapshot.work_dir,
            sentinel_path=config.restore.sentinel_path,
            namespace_prefix=config.store.namespace_prefix,
            populated_markers=config.restore.populated_markers,
        )

    def is_populated(self) -> bool:
        return any((self.data_dir / marker).exists() for marker in self.populated_markers)

    def _write_sentinel(self) -> None:
        self.sentinel_path.parent.mkdir(parents=True, exist_ok=True)
        self.sentinel_path.touch()

    async def restore(self) -> RestoreResult:
        """Execute the restore decision.

        Returns:
            RestoreResult describing the outcome

        Raises:
            RestoreError: If listing, download or extraction fails
        """
        start_time = time.time()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir.mkdir(parents=True, exist_ok=True)

        if self.is_populated():
            logger.info("Data directory already populated; skipping snapshot restore.")
            if not self.sentinel_path.exists():
                self._write_sentinel()
            return RestoreResult(outcome=RestoreOutcome.ALREADY_POPULATED)

        if self.sentinel_path.exists():
            logger.info("Restore sentinel exists; skipping snapshot restore.")
            return RestoreResult(outcome=RestoreOutcome.SENTINEL_PRESENT)

        logger.info(f"Looking for latest snapshot with prefix '{self.namespace_prefix}'")
        try:
            objects = await self.store.list(self.namespace_prefix)
        except StoreError as e:
            raise RestoreError(f"Failed to list snapshots: {e}") from e

        archives = sorted((obj for obj in objects if is_archive_key(obj.key)), key=lambda o: o.key)
        if not archives:
            logger.info(
                f"No snapshots found matching prefix '{self.namespace_prefix}'; "
                "starting with empty state."
            )
            self._write_sentinel()
            return RestoreResult(
                outcome=RestoreOutcome.NO_ARCHIVE,
                duration_ms=int((time.time() - start_time) * 1000),
            )

        latest = archives[-1].key
        size = await self._restore_archive(latest)
        self._write_sentinel()

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Restore complete.",
            extra={"archive_key": latest, "size_bytes": size, "duration_ms": duration_ms},
        )
        return RestoreResult(
            outcome=RestoreOutcome.RESTORED,
            archive_key=latest,
            size_bytes=size,
            duration_ms=duration_ms,
        )

    async def _restore_archive(self, key: str) -> int:
        download_path = self.work_dir / "restore.tar.zst"
        extract_dir = self.work_dir / "restore"
        loop = asyncio.get_running_loop()

        logger.info(f"Downloading snapshot blob {key}")
        try:
            data = await self.store.download(key)
        except StoreError as e:
            raise RestoreError(f"Failed to download {key}: {e}") from e

        if not data:
            raise RestoreError(f"Downloaded archive is empty; aborting: {key}")

        try:
            await loop.run_in_executor(None, download_path.write_bytes, data)
            shutil.rmtree(extract_dir, ignore_errors=True)
            logger.info(f"Extracting archive into {self.data_dir}")
            await loop.run_in_executor(None, extract_archive, download_path, extract_dir)
            await loop.run_in_executor(None, self._replace_data_dir, extract_dir)
        except (ArchiveError, OSError) as e:
            self._clear_data_dir()
            raise RestoreError(f"Failed to extract {key}: {e}") from e
        finally:
            download_path.unlink(missing_ok=True)
            shutil.rmtree(extract_dir, ignore_errors=True)

        return len(data)

    def _clear_data_dir(self) -> None:
        keep = {self.sentinel_path.resolve(), self.work_dir.resolve()}
        for entry in self.data_dir.iterdir():
            if entry.resolve() in keep:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def _replace_data_dir(self, extracted: Path) -> None:
        self._clear_data_dir()
        for entry in sorted(extracted.iterdir()):
            shutil.move(str(entry), str(self.data_dir / entry.name))


async def run_restore(config: AgentConfig, store: ObjectStore | None = None) -> RestoreResult:
    """Run the restore coordinator with a store built from configuration."""
    store = store or create_object_store(config.store)
    try:
        return await RestoreCoordinator.from_config(config, store).restore()
    finally:
        await store.close()


def main() -> None:
    """CLI entry point for restore tool."""
    parser = argparse.ArgumentParser(
        description="Restore the newest snapshot archive before the workload starts"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    args = parser.parse_args()

    try:
        config = AgentConfig.from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config, level="DEBUG" if args.verbose else None)

    try:
        result = asyncio.run(run_restore(config))
    except RestoreError as e:
        logger.error(f"Restore failed: {e}")
        sys.exit(1)

    logger.info(f"Restore finished: {result.outcome.value}")
    sys.exit(0)


if __name__ == "__main__":
    main()
