"""
Consistent capture of live SQLite databases.

Uses the SQLite online backup API, which copies the database page by page
under shared locks and restarts if a writer modifies pages mid-copy, so the
result reflects one committed transactional state. Writers are never blocked
for longer than one step.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """A database could not be captured or failed verification.

    Attributes:
        path: Source (or verified) database path
    """

    def __init__(self, message: str, path: Path | str) -> None:
        super().__init__(f"{message}: {path}")
        self.path = Path(path)


def _busy_deadline(busy_timeout_ms: int):
    """Backup progress callback that gives up once the source stays locked too long.

    Connection.backup() retries SQLITE_BUSY/SQLITE_LOCKED steps forever, so the
    deadline is enforced here. Any step that makes progress resets it.
    """
    last_progress = time.monotonic()

    def progress(status: int, remaining: int, total: int) -> None:
        nonlocal last_progress
        now = time.monotonic()
        if status not in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED):
            last_progress = now
        elif (now - last_progress) * 1000 >= busy_timeout_ms:
            raise sqlite3.OperationalError(
                f"source locked for more than {busy_timeout_ms} ms ({remaining}/{total} pages left)"
            )

    return progress


def capture_database(
    source: Path | str,
    target: Path | str,
    busy_timeout_ms: int = 5000,
    pages_per_step: int = -1,
) -> None:
    """Create a consistent copy of a live database using the SQLite backup API.

    The source is opened read-write without create, so a database that
    vanished from the data root is reported instead of recreated empty.

    Args:
        source: Live database file
        target: Destination path; an existing file is overwritten
        busy_timeout_ms: How long to wait on a locked source before failing
        pages_per_step: Pages copied per backup step (-1 copies all at once)

    Raises:
        CaptureError: If the source is missing, locked past the timeout, the
            target cannot be written, or the backup fails for any other reason
    """
    source = Path(source)
    target = Path(target)
    if not source.is_file():
        raise CaptureError("Database file missing", source)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.unlink(missing_ok=True)

    timeout = busy_timeout_ms / 1000
    source_conn = None
    dest_conn = None
    try:
        source_conn = sqlite3.connect(
            f"{source.resolve().as_uri()}?mode=rw", uri=True, timeout=timeout
        )
        dest_conn = sqlite3.connect(str(target), timeout=timeout)
        source_conn.backup(
            dest_conn,
            pages=pages_per_step,
            progress=_busy_deadline(busy_timeout_ms),
        )
    except sqlite3.Error as e:
        raise CaptureError(f"SQLite backup failed ({e})", source) from e
    except OSError as e:
        raise CaptureError(f"Cannot write capture target ({e})", source) from e
    finally:
        if dest_conn is not None:
            dest_conn.close()
        if source_conn is not None:
            source_conn.close()

    logger.debug(f"Captured {source} -> {target}")


def verify_database(path: Path | str) -> None:
    """Run PRAGMA integrity_check on a database file.

    Raises:
        CaptureError: If the database cannot be opened or is not intact
    """
    if not Path(path).is_file():
        raise CaptureError("Database file missing", path)

    conn = None
    try:
        conn = sqlite3.connect(str(path))
        result = conn.execute("PRAGMA integrity_check").fetchone()[0]
    except sqlite3.Error as e:
        raise CaptureError(f"Cannot open database ({e})", path) from e
    finally:
        if conn is not None:
            conn.close()

    if result != "ok":
        raise CaptureError(f"Integrity check failed ({result})", path)
