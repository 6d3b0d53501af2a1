"""
Integration tests for consistent capture and archive building.

These tests use real SQLite databases held open in WAL mode, real
copies and real tar+zstd archives.

Tests cover:
- Capture of a database with an open writer
- Archives without -wal/-shm/-journal side files
- Integrity of every captured database after extraction
- Exclusions (work dir, restore sentinel)
- Cleanup of staging artifacts
"""

import time

import pytest

from ops.snapshot_agent.snapshot.archive import ArchiveError, extract_archive, list_members
from ops.snapshot_agent.snapshot.builder import ArchiveBuilder
from ops.snapshot_agent.snapshot.capture import CaptureError, capture_database, verify_database
from tests.conftest import count_rows, make_database

TS = "20250101-020000"


@pytest.fixture
def live_tree(data_dir):
    """A data root shaped like the workload's: a main db, per-actor dbs and blobs."""
    connections = [
        make_database(data_dir / "pds.sqlite", rows=25),
        make_database(data_dir / "actors" / "ab" / "did-plc-abc" / "store.sqlite", rows=7),
    ]
    blobs = data_dir / "blobs" / "did-plc-abc"
    blobs.mkdir(parents=True)
    (blobs / "bafyblob").write_bytes(b"\x00\x01blob-content" * 100)
    yield data_dir
    for conn in connections:
        conn.close()


class TestCaptureDatabase:
    """Tests for single-database capture."""

    def test_capture_with_open_writer(self, data_dir, work_dir):
        """Committed rows still in the WAL are part of the capture."""
        conn = make_database(data_dir / "pds.sqlite", rows=5)
        conn.execute("INSERT INTO records (body) VALUES ('late')")
        conn.commit()
        assert (data_dir / "pds.sqlite-wal").exists()

        target = work_dir / "copy.sqlite"
        capture_database(data_dir / "pds.sqlite", target)
        conn.close()

        verify_database(target)
        assert count_rows(target) == 6

    def test_uncommitted_rows_excluded(self, data_dir, work_dir):
        """An open transaction does not leak into the capture."""
        conn = make_database(data_dir / "pds.sqlite", rows=3)
        conn.execute("BEGIN")
        conn.execute("INSERT INTO records (body) VALUES ('pending')")

        target = work_dir / "copy.sqlite"
        capture_database(data_dir / "pds.sqlite", target)
        conn.rollback()
        conn.close()

        assert count_rows(target) == 3

    def test_locked_source_times_out(self, data_dir, work_dir):
        """A source held under an exclusive lock fails after the busy timeout."""
        writer = make_database(data_dir / "pds.sqlite", rows=3, wal=False)
        writer.execute("BEGIN EXCLUSIVE")
        try:
            started = time.monotonic()
            with pytest.raises(CaptureError) as exc_info:
                capture_database(
                    data_dir / "pds.sqlite", work_dir / "copy.sqlite", busy_timeout_ms=200
                )
            elapsed = time.monotonic() - started
        finally:
            writer.rollback()
            writer.close()

        assert exc_info.value.path == data_dir / "pds.sqlite"
        assert elapsed < 10

    def test_capture_succeeds_once_lock_released(self, data_dir, work_dir):
        """The timeout only applies while the lock is held."""
        writer = make_database(data_dir / "pds.sqlite", rows=3, wal=False)
        writer.execute("BEGIN EXCLUSIVE")
        with pytest.raises(CaptureError):
            capture_database(
                data_dir / "pds.sqlite", work_dir / "copy.sqlite", busy_timeout_ms=100
            )
        writer.rollback()
        writer.close()

        capture_database(
            data_dir / "pds.sqlite", work_dir / "copy.sqlite", busy_timeout_ms=100
        )
        assert count_rows(work_dir / "copy.sqlite") == 3

    def test_missing_source_not_created(self, data_dir, work_dir):
        """A vanished database is reported and never recreated in the data root."""
        source = data_dir / "actors" / "did-plc-gone" / "store.sqlite"
        source.parent.mkdir(parents=True)

        with pytest.raises(CaptureError):
            capture_database(source, work_dir / "copy.sqlite")

        assert not source.exists()
        assert list(source.parent.iterdir()) == []

    def test_verify_rejects_garbage(self, work_dir):
        """A file that is not a database fails verification."""
        bogus = work_dir / "bogus.sqlite"
        bogus.write_bytes(b"definitely not sqlite" * 100)
        with pytest.raises(CaptureError):
            verify_database(bogus)

    def test_verify_missing(self, work_dir):
        """A missing file fails verification."""
        with pytest.raises(CaptureError):
            verify_database(work_dir / "absent.sqlite")


class TestArchiveBuilder:
    """Tests for ArchiveBuilder.build."""

    def test_no_side_files_in_archive(self, live_tree, work_dir):
        """Archives never carry WAL, SHM or journal files."""
        assert (live_tree / "pds.sqlite-wal").exists()
        (live_tree / "actors" / "ab" / "orphan.sqlite-journal").write_bytes(b"j")

        built = ArchiveBuilder(live_tree, work_dir).build(TS)
        members = list_members(built.path)

        assert "pds.sqlite" in members
        assert "actors/ab/did-plc-abc/store.sqlite" in members
        assert "blobs/did-plc-abc/bafyblob" in members
        assert not any(m.endswith(("-wal", "-shm", "-journal")) for m in members)

    def test_databases_intact_after_extraction(self, live_tree, work_dir, tmp_path):
        """Every database in the archive opens and passes integrity_check."""
        built = ArchiveBuilder(live_tree, work_dir).build(TS)
        assert built.databases == ["actors/ab/did-plc-abc/store.sqlite", "pds.sqlite"]
        assert built.size_bytes == built.path.stat().st_size

        out = tmp_path / "out"
        extract_archive(built.path, out)

        verify_database(out / "pds.sqlite")
        verify_database(out / "actors" / "ab" / "did-plc-abc" / "store.sqlite")
        assert count_rows(out / "pds.sqlite") == 25
        assert count_rows(out / "actors" / "ab" / "did-plc-abc" / "store.sqlite") == 7
        assert (out / "blobs" / "did-plc-abc" / "bafyblob").read_bytes() == (
            b"\x00\x01blob-content" * 100
        )

    def test_staging_removed_after_build(self, live_tree, work_dir):
        """Only the archive is left behind after a successful build."""
        builder = ArchiveBuilder(live_tree, work_dir)
        built = builder.build(TS)
        assert not builder.staging_path(TS).exists()
        assert [p.name for p in work_dir.iterdir()] == [built.path.name]

        builder.cleanup(TS)
        assert list(work_dir.iterdir()) == []

    def test_excluded_paths(self, live_tree, tmp_path):
        """A work dir inside the data root and the sentinel are not archived."""
        work_dir = live_tree / ".work"
        sentinel = live_tree / ".restore-complete"
        sentinel.touch()

        built = ArchiveBuilder(live_tree, work_dir, exclude=(sentinel,)).build(TS)
        members = list_members(built.path)

        assert ".restore-complete" not in members
        assert not any(m.startswith(".work") for m in members)

    def test_live_database_unchanged(self, live_tree, work_dir):
        """Building never modifies the live data root."""
        before = sorted(p.relative_to(live_tree) for p in live_tree.rglob("*"))
        ArchiveBuilder(live_tree, work_dir).build(TS)
        after = sorted(p.relative_to(live_tree) for p in live_tree.rglob("*"))
        assert before == after
        assert count_rows(live_tree / "pds.sqlite") == 25

    def test_missing_data_dir(self, tmp_path, work_dir):
        """A missing data root fails staging."""
        with pytest.raises(ArchiveError):
            ArchiveBuilder(tmp_path / "absent", work_dir).build(TS)

    def test_capture_failure_cleans_up(self, live_tree, work_dir):
        """A database that cannot be captured leaves no artifacts."""
        (live_tree / "extra.sqlite").write_bytes(b"not a database at all" * 10)
        builder = ArchiveBuilder(live_tree, work_dir)
        with pytest.raises(CaptureError):
            builder.build(TS)
        assert list(work_dir.iterdir()) == []

    def test_vanished_database_skipped(self, live_tree, work_dir, monkeypatch):
        """A database deleted after discovery is left out, not recreated."""
        gone = live_tree / "actors" / "ab" / "did-plc-gone" / "store.sqlite"
        builder = ArchiveBuilder(live_tree, work_dir)
        discovered = builder.find_databases()
        monkeypatch.setattr(builder, "find_databases", lambda: sorted(discovered + [gone]))

        built = builder.build(TS)

        assert built.databases == ["actors/ab/did-plc-abc/store.sqlite", "pds.sqlite"]
        assert not gone.exists()
        assert not gone.parent.exists()
        assert not any("did-plc-gone" in m for m in list_members(built.path))

    def test_cleanup_all(self, live_tree, work_dir):
        """cleanup() without a timestamp removes every leftover."""
        builder = ArchiveBuilder(live_tree, work_dir)
        builder.build(TS)
        builder.stage("20250101-020015")
        builder.cleanup()
        assert list(work_dir.iterdir()) == []


class TestArchiveCodec:
    """Tests for the tar+zstd codec."""

    def test_extract_rejects_garbage(self, tmp_path):
        """Non-archive bytes raise ArchiveError."""
        bogus = tmp_path / "bogus.tar.zst"
        bogus.write_bytes(b"this is not zstd")
        with pytest.raises(ArchiveError):
            extract_archive(bogus, tmp_path / "out")
