"""
Snapshot producer loop.

The Snapshotter periodically archives the live data root and uploads the
archive to the object store, then prunes old archives. Each iteration walks
the stages

    IDLE -> STAGING -> CAPTURING -> PACKAGING -> UPLOADING -> PRUNING -> IDLE

Snapshot format:
    <container>/<prefix>/<namespace>/snap-<YYYYMMDD-HHMMSS>.tar.zst

Invariants:
    - Iterations never overlap; a slow iteration delays the next one
    - Iteration starts follow a fixed wall-clock interval (start + interval)
    - A failed iteration is logged and discarded; the loop keeps running
    - Staging trees and local archives are removed after every iteration
    - Two iterations never produce the same archive key

How to change safely:
    - Keep blocking work (copy, capture, compression) in the executor
    - Test shutdown during a long iteration
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from ..store.base import ObjectStore
from .builder import ArchiveBuilder
from .keys import TIMESTAMP_FORMAT, archive_key, format_timestamp
from .retention import RetentionResult, enforce_retention

logger = logging.getLogger(__name__)


class IterationStage(Enum):
    """Stage of a snapshot iteration."""

    IDLE = "idle"
    STAGING = "staging"
    CAPTURING = "capturing"
    PACKAGING = "packaging"
    UPLOADING = "uploading"
    PRUNING = "pruning"


class SnapshotError(Exception):
    """A snapshot iteration failed.

    Attributes:
        stage: Stage in which the iteration failed
        iteration: Iteration number (1-based)
    """

    def __init__(self, message: str, stage: IterationStage, iteration: int) -> None:
        super().__init__(f"Iteration {iteration} failed during {stage.value}: {message}")
        self.stage = stage
        self.iteration = iteration


@dataclass
class SnapshotResult:
    """Result of a successful iteration.

    Attributes:
        iteration: Iteration number (1-based)
        key: Uploaded object key
        size_bytes: Archive size
        databases: Captured databases, relative to the data root
        retention: Retention outcome
        duration_ms: Iteration duration
    """

    iteration: int
    key: str
    size_bytes: int
    databases: list[str] = field(default_factory=list)
    retention: RetentionResult = field(default_factory=RetentionResult)
    duration_ms: int = 0


class Snapshotter:
    """Produces, uploads and prunes snapshot archives on a fixed interval.

    Attributes:
        builder: ArchiveBuilder for the live data root
        store: Object store client
        prefix: Key prefix
        namespace: Tenant namespace
        interval_seconds: Interval between iteration starts
        retain_count: Archives kept per namespace

    Example:
        >>> snapshotter = Snapshotter(builder, store, "snapshots", "default")
        >>> await snapshotter.start()  # Runs until stopped
    """

    def __init__(
        self,
        builder: ArchiveBuilder,
        store: ObjectStore,
        prefix: str,
        namespace: str,
        interval_seconds: int = 15,
        retain_count: int = 200,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the snapshotter.

        Args:
            builder: Archive builder
            store: Object store client
            prefix: Key prefix for archives
            namespace: Tenant namespace under the prefix
            interval_seconds: Interval between iteration starts
            retain_count: Archives kept per namespace
            clock: Returns the current UTC time (injectable for tests)
        """
        self.builder = builder
        self.store = store
        self.prefix = prefix
        self.namespace = namespace
        self.interval_seconds = interval_seconds
        self.retain_count = retain_count
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._running = False
        self._stop_event = asyncio.Event()
        self._stage = IterationStage.IDLE
        self._iterations = 0
        self._succeeded = 0
        self._failed = 0
        self._last_timestamp: str | None = None
        self._last_key: str | None = None

    @property
    def namespace_prefix(self) -> str:
        return f"{self.prefix}/{self.namespace}/"

    async def start(self) -> None:
        """Start the snapshot loop. Returns only after stop() or cancellation."""
        if self._running:
            logger.warning("Snapshotter already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info(
            f"Starting continuous snapshot loop (interval {self.interval_seconds}s)",
            extra={
                "namespace_prefix": self.namespace_prefix,
                "retain_count": self.retain_count,
            },
        )

        loop = asyncio.get_running_loop()
        try:
            while self._running:
                started = loop.time()
                try:
                    await self.run_once()
                except SnapshotError as e:
                    logger.error(
                        f"Snapshot iteration failed: {e}",
                        exc_info=True,
                        extra={"iteration": e.iteration, "stage": e.stage.value},
                    )

                next_start = max(started + self.interval_seconds, loop.time())
                await self._wait(next_start - loop.time())

        except asyncio.CancelledError:
            logger.info("Snapshotter cancelled")
            raise
        finally:
            self._running = False
            self.builder.cleanup()

    async def stop(self) -> None:
        """Stop the snapshot loop after the current iteration or wait."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping snapshotter")

    async def _wait(self, delay: float) -> None:
        if delay <= 0 or not self._running:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _next_timestamp(self) -> str:
        timestamp = format_timestamp(self._clock())
        while timestamp == self._last_timestamp:
            # Same second as the previous archive; wait for the clock to move on
            await asyncio.sleep(1.0 - (time.time() % 1.0))
            timestamp = format_timestamp(self._clock())

        if self._last_timestamp is not None and timestamp < self._last_timestamp:
            previous = datetime.strptime(self._last_timestamp, TIMESTAMP_FORMAT)
            advanced = format_timestamp(
                previous.replace(tzinfo=timezone.utc) + timedelta(seconds=1)
            )
            logger.warning(
                f"Clock moved backwards: {timestamp} < {self._last_timestamp}, using {advanced}",
                extra={"timestamp": advanced},
            )
            timestamp = advanced

        self._last_timestamp = timestamp
        return timestamp

    async def run_once(self) -> SnapshotResult:
        """Run a single snapshot iteration.

        Returns:
            SnapshotResult for the uploaded archive

        Raises:
            SnapshotError: If any stage fails; artifacts are already cleaned up
        """
        self._iterations += 1
        iteration = self._iterations
        start_time = time.time()
        loop = asyncio.get_running_loop()
        timestamp = await self._next_timestamp()
        key = archive_key(self.prefix, self.namespace, timestamp)

        try:
            self._stage = IterationStage.STAGING
            logger.info(f"Creating staging copy of {self.builder.data_dir}")
            staging = await loop.run_in_executor(None, self.builder.stage, timestamp)

            self._stage = IterationStage.CAPTURING
            logger.info("Refreshing SQLite backups")
            databases = await loop.run_in_executor(None, self.builder.capture, staging)

            self._stage = IterationStage.PACKAGING
            logger.info("Packaging snapshot")
            built = await loop.run_in_executor(None, self.builder.package, staging, timestamp)
            built.databases = databases

            self._stage = IterationStage.UPLOADING
            logger.info(f"Uploading {key} ({built.size_bytes} bytes)")
            data = await loop.run_in_executor(None, built.path.read_bytes)
            await self.store.upload(key, data)
            self._last_key = key

            self._stage = IterationStage.PRUNING
            logger.info(f"Enforcing retention (keep last {self.retain_count})")
            listing = await self.store.list(self.namespace_prefix)
            retention = await enforce_retention(self.store, listing, self.retain_count)

        except Exception as e:
            self._failed += 1
            raise SnapshotError(str(e), self._stage, iteration) from e

        finally:
            self._stage = IterationStage.IDLE
            self.builder.cleanup(timestamp)

        self._succeeded += 1
        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Created snapshot",
            extra={
                "iteration": iteration,
                "key": key,
                "size_bytes": built.size_bytes,
                "databases": len(databases),
                "deleted": len(retention.deleted),
                "duration_ms": duration_ms,
            },
        )

        return SnapshotResult(
            iteration=iteration,
            key=key,
            size_bytes=built.size_bytes,
            databases=databases,
            retention=retention,
            duration_ms=duration_ms,
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Get snapshotter statistics."""
        return {
            "running": self._running,
            "stage": self._stage.value,
            "iterations": self._iterations,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "last_key": self._last_key,
        }
