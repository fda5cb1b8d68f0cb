"""
APScheduler configuration and job scheduling for Sealback.

Manages:
- Scheduled backups (one cron job per source that declares a schedule)
- Daily retention policy enforcement
"""

import asyncio
import logging
from typing import Callable, List, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from sealback.backup.executor import BackupOrchestrator
from sealback.backup.retention import RetentionCleaner
from sealback.config import BackupConfig
from sealback.models import Source

JOB_DEFAULTS = {
    'coalesce': True,  # Combine multiple pending instances into one
    'max_instances': 1,  # Only one instance of a job at a time
    'misfire_grace_time': 300  # 5 minutes grace period for misfires
}


class BackupScheduler:
    """
    Runs sources on their cron schedules.

    Each scheduled run builds a fresh orchestrator through
    `orchestrator_factory`, so runs of different sources never share
    running state.
    """

    def __init__(self, orchestrator_factory: Callable[[], BackupOrchestrator], config: BackupConfig,
                 logger: Optional[logging.Logger] = None, scheduler: Optional[BaseScheduler] = None):
        """
        Args:
            orchestrator_factory: Returns a new BackupOrchestrator
            config: Validated configuration
            logger: Logger to report to
            scheduler: APScheduler instance (default: BlockingScheduler in UTC)
        """
        self.orchestrator_factory = orchestrator_factory
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.scheduler = scheduler or BlockingScheduler(job_defaults=JOB_DEFAULTS, timezone='UTC')
        self.cleaner = RetentionCleaner(config.backup_dir, logger=self.logger)
        self._add_jobs()

    def _add_jobs(self) -> None:
        for index, source in enumerate(self.config.sources):
            if not source.schedule:
                continue
            try:
                trigger = CronTrigger.from_crontab(source.schedule, timezone='UTC')
            except ValueError as e:
                self.logger.error(f"Invalid schedule for {source.type} ({source.schedule}): {e}")
                continue

            self.scheduler.add_job(
                func=self.run_source,
                args=[source],
                trigger=trigger,
                id=f"backup_{source.type}_{index}",
                name=f"Backup: {source.type} ({source.path})",
                replace_existing=True
            )
            self.logger.info(f"Scheduled backup of {source.type}: {source.schedule}")

        # Add retention policy job (runs daily at 2 AM UTC)
        self.scheduler.add_job(
            func=self.enforce_retention,
            trigger=CronTrigger(hour=2, minute=0, timezone='UTC'),
            id='retention_cleanup',
            name='Daily Retention Cleanup',
            replace_existing=True
        )

    def run_source(self, source: Source) -> None:
        """Back up one source; failures are logged, never raised into the scheduler."""
        self.logger.info(f"Scheduler executing backup of {source.type}")
        orchestrator = self.orchestrator_factory()
        try:
            asyncio.run(orchestrator.run_sources([source]))
        except Exception as e:
            self.logger.error(f"Scheduled backup of {source.type} failed: {e}")
            return
        self.logger.info(f"Scheduled backup of {source.type} completed")

    def enforce_retention(self) -> None:
        self.cleaner.clean_all(self.config.sources)

    def start(self) -> None:
        """Start the scheduler; blocks when using the default BlockingScheduler."""
        jobs = self.get_scheduled_jobs()
        self.logger.info(f"Starting scheduler with {len(jobs)} jobs")
        for job in jobs:
            self.logger.info(f"  - {job['id']}: {job['name']} ({job['trigger']})")
        self.scheduler.start()

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            self.logger.info("Scheduler stopped")

    def get_scheduled_jobs(self) -> List[dict]:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })
        return jobs
