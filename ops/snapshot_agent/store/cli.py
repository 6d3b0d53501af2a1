"""
Object store client that delegates to the storage management CLI.

Each operation runs one `az storage blob ...` command. Authentication uses the
account key when one is configured and the CLI's logged-in identity otherwise
(`--auth-mode login`), which is how operators run the audit tool from a
workstation.

Invariants:
    - A non-zero CLI exit raises StoreCommandError with stderr attached
    - Temporary files used for upload/download are always removed
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from .base import ObjectInfo, ObjectNotFoundError, StoreCommandError, StoreError

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("BlobNotFound", "The specified blob does not exist")


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_list_output(output: bytes) -> list[ObjectInfo]:
    """Parse the JSON printed by `az storage blob list -o json`."""
    try:
        entries = json.loads(output.decode("utf-8") or "[]")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StoreError(f"Malformed CLI list output: {e}") from e

    objects = []
    for entry in entries:
        name = entry.get("name")
        if not name:
            continue
        props = entry.get("properties") or {}
        size = props.get("contentLength")
        objects.append(
            ObjectInfo(
                key=name,
                last_modified=_parse_timestamp(props.get("lastModified")),
                size=int(size) if size is not None else None,
            )
        )
    return objects


class CliObjectStore:
    """ObjectStore implementation backed by the `az` CLI.

    Attributes:
        account_name: Storage account name
        container: Container holding the archives
        cli_path: Executable to run

    Example:
        >>> store = CliObjectStore("acct", "pds-sqlite", account_key=key)
        >>> objects = await store.list("snapshots/default/")
    """

    def __init__(
        self,
        account_name: str,
        container: str,
        account_key: str | None = None,
        cli_path: str = "az",
    ) -> None:
        self.account_name = account_name
        self.container = container
        self.cli_path = cli_path
        self._account_key = account_key

    def _auth_args(self) -> list[str]:
        args = ["--account-name", self.account_name]
        if self._account_key:
            args += ["--account-key", self._account_key]
        else:
            args += ["--auth-mode", "login"]
        return args

    async def _run(self, action: str, *args: str) -> bytes:
        argv = [
            self.cli_path,
            "storage",
            "blob",
            action,
            *self._auth_args(),
            "--container-name",
            self.container,
            *args,
        ]
        # argv holds the account key; log the action only
        logger.debug(f"Running {self.cli_path} storage blob {action}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StoreError(f"Cannot run {self.cli_path}: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace")
            if any(marker in message for marker in _NOT_FOUND_MARKERS):
                raise ObjectNotFoundError(f"Blob not found ({action})")
            raise StoreCommandError(f"storage blob {action} failed", process.returncode, message)
        return stdout

    async def list(self, prefix: str) -> list[ObjectInfo]:
        output = await self._run("list", "--prefix", prefix, "--num-results", "*", "-o", "json")
        return parse_list_output(output)

    async def upload(self, key: str, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(suffix=".upload")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            await self._run(
                "upload",
                "--name",
                key,
                "--file",
                tmp_name,
                "--overwrite",
                "true",
                "-o",
                "none",
            )
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    async def download(self, key: str) -> bytes:
        fd, tmp_name = tempfile.mkstemp(suffix=".download")
        os.close(fd)
        try:
            await self._run(
                "download",
                "--name",
                key,
                "--file",
                tmp_name,
                "--overwrite",
                "true",
                "-o",
                "none",
            )
            return Path(tmp_name).read_bytes()
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    async def delete(self, key: str) -> None:
        await self._run("delete", "--name", key)

    async def close(self) -> None:
        pass
