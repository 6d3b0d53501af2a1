"""
Shared fixtures for the snapshot agent tests.
"""

import sqlite3
from pathlib import Path

import pytest

from ops.snapshot_agent.store.memory import InMemoryObjectStore


def make_database(path: Path, rows: int = 10, wal: bool = True) -> sqlite3.Connection:
    """Create a database with `rows` rows and return the still-open connection."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    if wal:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("CREATE TABLE IF NOT EXISTS records (id INTEGER PRIMARY KEY, body TEXT)")
    conn.executemany(
        "INSERT INTO records (body) VALUES (?)",
        [(f"record-{i}",) for i in range(rows)],
    )
    conn.commit()
    return conn


def count_rows(path: Path) -> int:
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
    finally:
        conn.close()


@pytest.fixture
def store():
    """Fresh in-memory object store."""
    return InMemoryObjectStore()


@pytest.fixture
def data_dir(tmp_path):
    """Empty live data root."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path):
    """Scratch directory."""
    path = tmp_path / "work"
    path.mkdir()
    return path
