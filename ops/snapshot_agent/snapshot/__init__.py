"""
Snapshot module for the snapshot agent.

This module produces consistent archives of the live data root and keeps the
archive namespace bounded:
- Consistent capture of open SQLite databases (online backup API)
- Staging tree + tar/zstd packaging
- Periodic upload and retention

Invariants:
    - Only complete, consistent archives are uploaded
    - Archives never contain SQLite -wal/-shm/-journal side files
    - Failed iterations are cleaned up and never stop the loop
"""

from .archive import ArchiveError, extract_archive, list_members, pack_tree
from .builder import ArchiveBuilder, BuiltArchive
from .capture import CaptureError, capture_database, verify_database
from .keys import archive_key, archive_timestamp, format_timestamp, is_archive_key
from .retention import RetentionResult, enforce_retention, select_expired
from .snapshotter import IterationStage, SnapshotError, SnapshotResult, Snapshotter

__all__ = [
    "Snapshotter",
    "SnapshotResult",
    "SnapshotError",
    "IterationStage",
    "ArchiveBuilder",
    "BuiltArchive",
    "ArchiveError",
    "CaptureError",
    "capture_database",
    "verify_database",
    "pack_tree",
    "extract_archive",
    "list_members",
    "archive_key",
    "archive_timestamp",
    "format_timestamp",
    "is_archive_key",
    "RetentionResult",
    "enforce_retention",
    "select_expired",
]
