"""Auto-sync scheduler.

Runs ``SyncCoordinator.sync`` on an interval with APScheduler. Scheduled runs
go through the same single-flight gate as manual ones, so a tick that lands
while a sync is running is simply skipped.
"""

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notesync.core.errors import AlreadyInProgress
from notesync.core.service import SyncService

logger = logging.getLogger(__name__)

JOB_ID = "auto_sync"


class AutoSyncScheduler:
    """Manages the periodic auto-sync job."""

    def __init__(self, service: SyncService):
        """Initialize the scheduler.

        Args:
            service: Sync service whose coordinator is run on each tick
        """
        self.service = service
        self.scheduler = AsyncIOScheduler()
        self._running = False
        self.last_result: dict | None = None

    @property
    def is_running(self) -> bool:
        """Return True if the scheduler is actively running."""
        return self._running

    @property
    def next_run_time(self) -> datetime | None:
        job = self.scheduler.get_job(JOB_ID) if self._running else None
        return job.next_run_time if job else None

    async def start(self) -> None:
        """Start the scheduler with the configured interval."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        sync_config = self.service.config.sync
        if sync_config.auto_sync:
            self.scheduler.add_job(
                self._execute_sync,
                trigger=IntervalTrigger(minutes=sync_config.interval_minutes),
                id=JOB_ID,
                replace_existing=True,
                name="Auto-sync",
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        self._running = True

        if sync_config.auto_sync:
            logger.info(f"Auto-sync scheduled every {sync_config.interval_minutes} minute(s)")
        else:
            logger.info("Auto-sync disabled")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False

        logger.info("Scheduler stopped")

    async def _execute_sync(self) -> None:
        """Run one scheduled sync."""
        logger.debug("Auto-sync tick")
        result = await self.service.coordinator.sync(strategy=self.service.config.sync.strategy)
        self.last_result = result.to_dict()

        if result.success:
            return
        if result.error == AlreadyInProgress.code:
            logger.debug("Auto-sync skipped: a sync is already running")
        else:
            logger.warning("Auto-sync failed: %s", result.message)

    async def run_now(self) -> None:
        """Trigger the job immediately (used for sync on startup)."""
        try:
            await self._execute_sync()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Startup sync failed: %s", exc)
