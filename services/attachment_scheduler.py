"""
Netyora Chat - Attachment Sweep Scheduler
Runs the expiration sweep on startup and then at a fixed cadence
"""
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.attachment_service import attachment_service
from core.config import settings
from core.logging import get_logger
from core.sentry import capture_exception

logger = get_logger("netyora.chat.scheduler")

SWEEP_JOB_ID = "attachment_sweep"


class AttachmentSweepScheduler:
    """
    Wraps an AsyncIOScheduler with a single interval job.
    A run never overlaps the previous one (max_instances=1).
    """

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._initialized = False

    def initialize(self):
        """Start the scheduler and queue an immediate first sweep."""
        if self._initialized:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run_sweep,
            trigger=IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        self.scheduler.start()
        self._initialized = True
        logger.info(
            f"Attachment sweep scheduled every {settings.SWEEP_INTERVAL_MINUTES} minutes",
            action="scheduler_init",
        )

    def shutdown(self):
        """Shutdown the scheduler gracefully."""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Attachment sweep scheduler shutdown", action="scheduler_shutdown")
        self._initialized = False

    async def _run_sweep(self):
        try:
            await attachment_service.run_partitioned_sweep()
        except Exception as e:
            logger.exception(f"Attachment sweep failed: {e}", action="attachment_sweep_failed")
            capture_exception(e)


# Singleton instance
attachment_scheduler = AttachmentSweepScheduler()
