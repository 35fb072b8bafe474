"""Background sync scheduling for feedsync."""

import asyncio
import logging
from enum import Enum

from feedsync.config import DEFAULT_SYNC_INTERVAL_MINUTES, validate_interval
from feedsync.engine import SyncEngine, SyncInProgressError
from feedsync.models import CycleSummary

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class Scheduler:
    """Runs sync cycles periodically without ever overlapping them.

    The interval is measured from the end of one cycle to the start of the
    next. Stopping is cooperative: a cycle already in flight runs to
    completion before the loop exits.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES,
    ):
        self.engine = engine
        self.interval_minutes = validate_interval(interval_minutes)
        self.cycles_run = 0
        self.cycles_skipped = 0
        self.last_summary: CycleSummary | None = None
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> SchedulerState:
        if self._task is not None and not self._task.done():
            return SchedulerState.RUNNING
        return SchedulerState.STOPPED

    def start(self, interval_minutes: int | None = None) -> asyncio.Task:
        """Start the background loop on the running event loop.

        The first cycle fires immediately. Returns the loop's task.

        Raises:
            ConfigError: If ``interval_minutes`` is not a valid interval.
        """
        if interval_minutes is not None:
            self.interval_minutes = validate_interval(interval_minutes)
        if self.state is SchedulerState.RUNNING:
            logger.warning("Scheduler already running")
            return self._task

        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    def stop(self) -> None:
        """Ask the loop to exit once any in-flight cycle has completed."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        """Wait for the loop to exit after stop()."""
        if self._task is not None:
            await self._task

    async def run_once(self) -> CycleSummary | None:
        """Run one scheduled cycle, or skip it if another cycle is running."""
        try:
            summary = await self.engine.run_cycle(due_only=True)
        except SyncInProgressError:
            self.cycles_skipped += 1
            logger.info("Scheduled sync skipped: another sync is in progress")
            return None
        except Exception as e:
            logger.error("Sync cycle failed: %s", e)
            return None

        self.cycles_run += 1
        self.last_summary = summary
        return summary

    async def _run(self) -> None:
        logger.info("Scheduler started (interval: %d min)", self.interval_minutes)
        stop_event = self._stop_event
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.interval_minutes * 60
                )
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")
