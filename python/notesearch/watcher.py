"""
Watcher - Change detection for the Joplin database.

Polls the modification time of the database file and its write-ahead
log. A delta update runs once the database has been quiet for the
debounce window, so a burst of saves from the editor costs one update.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

from .config import get_config, SearchConfig


logger = logging.getLogger(__name__)


class DeltaTarget(Protocol):
    """What the watcher needs from the orchestrator."""

    async def get_db_path(self) -> Optional[Path]: ...

    async def run_delta_update(self) -> object: ...


def _read_mtime(db_path: Path) -> Optional[int]:
    """Latest mtime (ns) of the database and its -wal file, or None if neither exists."""
    latest = None
    for path in (db_path, db_path.with_name(db_path.name + "-wal")):
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            continue
        latest = mtime if latest is None else max(latest, mtime)
    return latest


class ChangeWatcher:
    """
    Polling watcher with debouncing.

    Every poll compares the observed mtime with the last one. A change
    (re)starts the quiet-period timer; when the timer expires the
    orchestrator's delta update is awaited. The first observation of a
    database only records a baseline.
    """

    def __init__(
        self,
        orchestrator: DeltaTarget,
        config: SearchConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._orchestrator = orchestrator
        self._clock = clock

        self._db_path: Optional[Path] = None
        self._last_mtime: Optional[int] = None
        self._last_change: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def has_pending_change(self) -> bool:
        return self._last_change is not None

    async def poll_once(self) -> bool:
        """
        Run one poll cycle.

        Returns:
            True if a delta update was triggered
        """
        db_path = await self._orchestrator.get_db_path()
        if db_path is None:
            return False

        if db_path != self._db_path:
            # New database: start over with a fresh baseline
            self._db_path = db_path
            self._last_mtime = None
            self._last_change = None

        now = self._clock()
        mtime = _read_mtime(db_path)
        if mtime is None:
            return False

        if self._last_mtime is None:
            self._last_mtime = mtime
            return False

        if mtime != self._last_mtime:
            logger.debug(f"Database modified: {db_path}")
            self._last_mtime = mtime
            self._last_change = now
            return False

        if self._last_change is None or now - self._last_change < self.config.quiet_period_s:
            return False

        self._last_change = None
        logger.info("Database quiet; running delta update")
        await self._orchestrator.run_delta_update()
        return True

    async def run(self) -> None:
        """Poll until cancelled."""
        logger.info(f"Watching for database changes every {self.config.poll_interval_s:.0f}s")
        while True:
            try:
                await self.poll_once()
            except OSError as e:
                logger.warning(f"Poll failed: {e}")
            await asyncio.sleep(self.config.poll_interval_s)

    def start(self) -> None:
        """Start polling in the background."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        """Stop polling."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Watcher stopped")

    async def wait_closed(self) -> None:
        """Block until the watcher is stopped."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
