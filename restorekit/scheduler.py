"""
APScheduler configuration for restorekit maintenance jobs.

Manages:
- Daily retention policy enforcement (runs inside the watch-mode event loop)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from restorekit.backup.retention import RetentionManager

logger = logging.getLogger(__name__)

RETENTION_JOB_ID = 'retention_cleanup'


class MaintenanceScheduler:
    """
    Owns the APScheduler instance used in watch mode.

    ``start`` must be called from a running event loop; the retention job
    runs the (blocking) cleanup in a worker thread.
    """

    def __init__(self, retention: RetentionManager, hour: int = 2, timezone: str = 'UTC'):
        self.retention = retention
        self.hour = hour
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None

    def init(self) -> AsyncIOScheduler:
        """Create the scheduler and register the retention job."""
        if self.scheduler is not None:
            return self.scheduler

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        self.scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=self.timezone)

        # Retention cleanup (daily, default 2 AM UTC)
        self.scheduler.add_job(
            func=self.run_retention,
            trigger=CronTrigger(hour=self.hour, minute=0),
            id=RETENTION_JOB_ID,
            name='Daily Retention Cleanup',
            replace_existing=True
        )

        return self.scheduler

    def start(self):
        scheduler = self.init()

        if scheduler.running:
            logger.info(f"Scheduler already running (state={scheduler.state})")
            return

        scheduler.start()
        logger.info("APScheduler started")
        for job in self.get_scheduled_jobs():
            logger.info(f"  - {job['id']}: {job['name']} (next run: {job['next_run_time'] or 'N/A'})")

    def shutdown(self):
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("APScheduler stopped")

    async def run_retention(self) -> Dict[str, Any]:
        logger.info("Running scheduled retention cleanup")
        return await asyncio.to_thread(self.retention.apply_all)

    def get_scheduled_jobs(self) -> List[Dict[str, Any]]:
        """
        List currently scheduled jobs.

        Returns:
            List of dicts with id, name and next_run_time (ISO string or None)
        """
        if self.scheduler is None:
            return []

        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run_time': next_run.isoformat() if next_run else None
            })
        return jobs
