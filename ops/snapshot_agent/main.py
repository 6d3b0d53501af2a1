"""
Snapshot agent - Main entry point.

This module runs the snapshot producer alongside the primary workload:
- Waits for the restore sentinel (written by snapshot-restore)
- Runs the snapshot loop (data root -> object store) until terminated

Usage:
    snapshot-agent           # continuous loop
    snapshot-agent --once    # single iteration, for scheduled jobs

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - No snapshot is taken before the restore sentinel exists
    - SIGTERM/SIGINT interrupt the wait or the in-flight iteration
    - Local staging artifacts are removed on shutdown

How to change safely:
    - Test shutdown sequence thoroughly
    - Keep --once exit codes stable; schedulers alert on them
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .config import AgentConfig, ConfigError
from .snapshot import ArchiveBuilder, SnapshotError, Snapshotter
from .store import ObjectStore, create_object_store

logger = logging.getLogger(__name__)


def setup_logging(config: AgentConfig, level: str | None = None) -> None:
    """Configure logging based on configuration.

    Args:
        config: Agent configuration
        level: Override for the configured log level
    """
    level_name = (level or config.observability.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def wait_for_restore(sentinel_path: Path | str, poll_seconds: float = 2) -> None:
    """Block until the restore sentinel exists."""
    sentinel = Path(sentinel_path)
    while not sentinel.exists():
        logger.info(f"Waiting for restore sentinel at {sentinel}")
        await asyncio.sleep(poll_seconds)


class Agent:
    """Snapshot agent orchestrator.

    Attributes:
        config: Agent configuration
        store: Object store client
        builder: Archive builder for the data root
        snapshotter: Snapshot loop

    Example:
        >>> agent = Agent(config)
        >>> await agent.start()
        >>> # Agent is running until request_shutdown()
        >>> await agent.stop()
    """

    def __init__(self, config: AgentConfig, store: ObjectStore | None = None) -> None:
        """Initialize the agent.

        Args:
            config: Agent configuration
            store: Optional object store client (built from config if not provided)
        """
        self.config = config
        self.store = store or create_object_store(config.store)
        self.builder = ArchiveBuilder(
            data_dir=config.snapshot.data_dir,
            work_dir=config.snapshot.work_dir,
            db_patterns=config.snapshot.db_patterns,
            busy_timeout_ms=config.snapshot.busy_timeout_ms,
            compression_level=config.snapshot.compression_level,
            exclude=(config.restore.sentinel_path,),
        )
        self.snapshotter = Snapshotter(
            builder=self.builder,
            store=self.store,
            prefix=config.store.prefix,
            namespace=config.store.namespace,
            interval_seconds=config.snapshot.interval_seconds,
            retain_count=config.snapshot.retain_count,
        )
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Wait for restore, then run the snapshot loop until shutdown."""
        logger.info("Starting snapshot agent")
        self.config.log_config()

        self._task = asyncio.create_task(self._run())
        shutdown = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({self._task, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown.cancel()

        if self._task.done() and not self._task.cancelled():
            # Surface unexpected loop exits
            self._task.result()

    async def _run(self) -> None:
        await wait_for_restore(
            self.config.restore.sentinel_path,
            self.config.snapshot.restore_wait_poll_seconds,
        )
        await self.snapshotter.start()

    async def run_once(self) -> bool:
        """Run a single iteration (job mode).

        Returns:
            True if the iteration succeeded
        """
        logger.info("Running single snapshot iteration")
        try:
            result = await self.snapshotter.run_once()
        except SnapshotError as e:
            logger.error(f"Snapshot iteration failed: {e}", exc_info=True)
            return False
        finally:
            self.builder.cleanup()
        logger.info(f"Backup iteration complete: {result.key}")
        return True

    async def stop(self) -> None:
        """Stop the agent gracefully."""
        logger.info("Stopping snapshot agent")
        await self.snapshotter.stop()

        if self._task and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

        self.builder.cleanup()
        await self.store.close()
        logger.info("Snapshot agent stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Snapshot the live data root to object storage")
    parser.add_argument("--once", action="store_true", help="Run one iteration and exit")
    args = parser.parse_args()

    # Load configuration
    try:
        config = AgentConfig.from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    agent = Agent(config)

    if args.once:
        try:
            ok = loop.run_until_complete(agent.run_once())
        finally:
            loop.run_until_complete(agent.store.close())
            loop.close()
        sys.exit(0 if ok else 1)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        agent.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(agent.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(agent.stop())
        loop.close()


if __name__ == "__main__":
    main()
