"""
Archive builder for the live data root.

One build turns the live data root into a single archive:

    1. Mirror the data root into WORK_DIR/snapshot-<ts>/ (database files and
       their -wal/-shm/-journal side files are not copied)
    2. Capture every database with the SQLite backup API into the mirror
    3. Sweep side files again (capture connections may leave some behind)
    4. Pack the mirror into WORK_DIR/archive-<ts>.tar.zst

Invariants:
    - Archives never contain -wal/-shm/-journal side files
    - Every database inside an archive is independently openable
    - Staging trees and archives are removed by cleanup() whatever the outcome

How to change safely:
    - Keep the archive layout relative to "." so old archives still restore
    - Test with a database held open in WAL mode by another connection
"""

from __future__ import annotations

import fnmatch
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .archive import ArchiveError, pack_tree
from .capture import CaptureError, capture_database

logger = logging.getLogger(__name__)

SIDE_FILE_SUFFIXES = ("-wal", "-shm", "-journal")


@dataclass
class BuiltArchive:
    """A packaged archive ready for upload.

    Attributes:
        timestamp: Archive timestamp (YYYYMMDD-HHMMSS)
        path: Local archive path
        size_bytes: Archive size
        databases: Captured databases, relative to the data root
    """

    timestamp: str
    path: Path
    size_bytes: int
    databases: list[str] = field(default_factory=list)


class ArchiveBuilder:
    """Builds consistent archives of the live data root.

    Attributes:
        data_dir: Live data root (read only)
        work_dir: Scratch directory for staging trees and archives
        db_patterns: Glob patterns identifying database files

    Example:
        >>> builder = ArchiveBuilder("/data", "/work")
        >>> built = builder.build("20250101-020000")
        >>> builder.cleanup("20250101-020000")
    """

    def __init__(
        self,
        data_dir: Path | str,
        work_dir: Path | str,
        db_patterns: tuple[str, ...] = ("*.sqlite",),
        busy_timeout_ms: int = 5000,
        compression_level: int = 3,
        exclude: tuple[Path | str, ...] = (),
    ) -> None:
        """Initialize the builder.

        Args:
            data_dir: Live data root
            work_dir: Scratch directory
            db_patterns: Glob patterns for database files
            busy_timeout_ms: SQLite busy timeout for capture connections
            compression_level: zstd level
            exclude: Paths under the data root never archived (e.g. the restore sentinel)
        """
        self.data_dir = Path(data_dir)
        self.work_dir = Path(work_dir)
        self.db_patterns = tuple(db_patterns)
        self.busy_timeout_ms = busy_timeout_ms
        self.compression_level = compression_level
        self.side_file_patterns = tuple(
            f"{pattern}{suffix}" for pattern in self.db_patterns for suffix in SIDE_FILE_SUFFIXES
        )
        self._exclude = {Path(p).resolve() for p in exclude}

    def staging_path(self, timestamp: str) -> Path:
        return self.work_dir / f"snapshot-{timestamp}"

    def archive_path(self, timestamp: str) -> Path:
        return self.work_dir / f"archive-{timestamp}.tar.zst"

    def is_database(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.db_patterns)

    def is_side_file(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.side_file_patterns)

    def find_databases(self) -> list[Path]:
        """Database files under the data root, sorted, excluding the work dir."""
        work_dir = self.work_dir.resolve()
        found = set()
        for pattern in self.db_patterns:
            for path in self.data_dir.rglob(pattern):
                if not path.is_file() or path.is_symlink():
                    continue
                resolved = path.resolve()
                if resolved.is_relative_to(work_dir) or resolved in self._exclude:
                    continue
                found.add(path)
        return sorted(found)

    def _ignore(self, directory: str, names: list[str]) -> set[str]:
        ignored = set()
        work_dir = self.work_dir.resolve()
        for name in names:
            path = (Path(directory) / name).resolve()
            if path == work_dir or path in self._exclude:
                ignored.add(name)
            elif self.is_database(name) or self.is_side_file(name):
                ignored.add(name)
        return ignored

    def stage(self, timestamp: str) -> Path:
        """Mirror the data root into a fresh staging tree.

        Raises:
            ArchiveError: If the data root is missing or the copy fails
        """
        if not self.data_dir.is_dir():
            raise ArchiveError(f"Data directory does not exist: {self.data_dir}")

        staging = self.staging_path(timestamp)
        if staging.exists():
            shutil.rmtree(staging)
        self.work_dir.mkdir(parents=True, exist_ok=True)

        try:
            shutil.copytree(self.data_dir, staging, symlinks=True, ignore=self._ignore)
        except (shutil.Error, OSError) as e:
            raise ArchiveError(f"Failed to stage {self.data_dir}: {e}") from e

        return staging

    def capture(self, staging: Path) -> list[str]:
        """Capture every database of the data root into the staging tree.

        Databases deleted from the data root after discovery are skipped.

        Returns:
            Captured database paths relative to the data root

        Raises:
            CaptureError: If any database cannot be captured
        """
        captured = []
        for db_path in self.find_databases():
            relative = db_path.relative_to(self.data_dir)
            try:
                capture_database(
                    db_path, staging / relative, busy_timeout_ms=self.busy_timeout_ms
                )
            except CaptureError:
                if db_path.exists():
                    raise
                # Removed by the workload since find_databases()
                logger.info(f"Database disappeared before capture, skipping: {relative}")
                (staging / relative).unlink(missing_ok=True)
                continue
            captured.append(relative.as_posix())

        removed = self.remove_side_files(staging)
        if removed:
            logger.debug(f"Removed {removed} side files from staging tree")
        return captured

    def remove_side_files(self, root: Path) -> int:
        removed = 0
        for path in root.rglob("*"):
            if path.is_file() and self.is_side_file(path.name):
                path.unlink()
                removed += 1
        return removed

    def package(self, staging: Path, timestamp: str) -> BuiltArchive:
        """Pack the staging tree into the archive for this timestamp.

        Raises:
            ArchiveError: If compression fails
        """
        archive_path = self.archive_path(timestamp)
        size = pack_tree(staging, archive_path, level=self.compression_level)
        return BuiltArchive(timestamp=timestamp, path=archive_path, size_bytes=size)

    def build(self, timestamp: str) -> BuiltArchive:
        """Run stage, capture and package in one call.

        Convenience for tests and tools. The producer loop calls the three
        steps itself so it can report the stage that failed.

        On failure all artifacts for this timestamp are removed before the
        error propagates. On success the caller owns the archive and must call
        cleanup() once it has been uploaded.

        Raises:
            ArchiveError: If staging or packaging fails
            CaptureError: If a database capture fails
        """
        try:
            staging = self.stage(timestamp)
            databases = self.capture(staging)
            built = self.package(staging, timestamp)
            built.databases = databases
        except (ArchiveError, CaptureError):
            self.cleanup(timestamp)
            raise
        shutil.rmtree(staging, ignore_errors=True)
        return built

    def cleanup(self, timestamp: str | None = None) -> None:
        """Remove staging trees and archives (for one timestamp, or all)."""
        if timestamp is not None:
            shutil.rmtree(self.staging_path(timestamp), ignore_errors=True)
            self.archive_path(timestamp).unlink(missing_ok=True)
            return

        if not self.work_dir.is_dir():
            return
        for path in self.work_dir.glob("snapshot-*"):
            shutil.rmtree(path, ignore_errors=True)
        for path in self.work_dir.glob("archive-*.tar.zst"):
            path.unlink(missing_ok=True)
