"""
Streaming tar + zstd archive codec.

Archives are a plain tar stream (entries relative to ".") wrapped in a single
zstd frame, equivalent to `tar -C <dir> -I "zstd -3" -cf <archive> .`, so they
can also be unpacked by hand with `zstd -d -c <archive> | tar -x -C <dir>`.
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

import zstandard as zstd

logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Building or extracting an archive failed."""

    pass


def pack_tree(source_dir: Path | str, archive_path: Path | str, level: int = 3) -> int:
    """Compress a directory tree into a .tar.zst archive.

    Args:
        source_dir: Directory whose contents are archived
        archive_path: Destination archive file
        level: zstd compression level

    Returns:
        Size of the written archive in bytes

    Raises:
        ArchiveError: If reading the tree or writing the archive fails
    """
    archive_path = Path(archive_path)
    cctx = zstd.ZstdCompressor(level=level)

    try:
        with open(archive_path, "wb") as fh:
            with cctx.stream_writer(fh, closefd=False) as compressor:
                with tarfile.open(fileobj=compressor, mode="w|") as tar:
                    tar.add(str(source_dir), arcname=".")
        return archive_path.stat().st_size
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        raise ArchiveError(f"Cannot write {archive_path}: {e}") from e


def extract_archive(archive_path: Path | str, dest_dir: Path | str) -> None:
    """Extract a .tar.zst archive into dest_dir.

    Members that would land outside dest_dir (absolute paths, "..", links
    pointing out of the tree) are rejected by the tarfile "data" filter.

    Raises:
        ArchiveError: If the archive is empty, truncated, or not a tar.zst
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dctx = zstd.ZstdDecompressor()

    try:
        with open(archive_path, "rb") as fh:
            with dctx.stream_reader(fh) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    tar.extractall(str(dest_dir), filter="data")
    except (tarfile.TarError, zstd.ZstdError) as e:
        raise ArchiveError(f"Cannot extract {archive_path}: {e}") from e


def list_members(archive_path: Path | str) -> list[str]:
    """Return the member names of an archive, normalized without a leading './'."""
    dctx = zstd.ZstdDecompressor()
    names = []
    try:
        with open(archive_path, "rb") as fh:
            with dctx.stream_reader(fh) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    for member in tar:
                        name = member.name
                        if name.startswith("./"):
                            name = name[2:]
                        if name and name != ".":
                            names.append(name)
    except (tarfile.TarError, zstd.ZstdError) as e:
        raise ArchiveError(f"Cannot read {archive_path}: {e}") from e
    return names
