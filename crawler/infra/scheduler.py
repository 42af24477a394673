"""
APScheduler wrapper for the crawl tick and housekeeping jobs.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter


logger = logging.getLogger(__name__)

# overlapping ticks must reach the run guard so it can report the skip
JOB_DEFAULTS = {
    "coalesce": False,
    "max_instances": 3,
    "misfire_grace_time": 60,
}


def cron_trigger(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Five-field crontab expression to an APScheduler trigger.

    Raises ``ValueError`` for anything croniter rejects or for six-field
    (seconds) expressions.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields (minute hour day month weekday): '{expression}'")
    if not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression: '{expression}'")
    return CronTrigger.from_crontab(expression, timezone=timezone)


class Scheduler:
    """In-memory AsyncIOScheduler; jobs are re-registered on every start."""

    def __init__(self, timezone: str = "UTC"):
        self._timezone = timezone
        self._scheduler = AsyncIOScheduler(job_defaults=dict(JOB_DEFAULTS), timezone=timezone)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Scheduler started ({self._timezone})")

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def add_cron_job(
        self,
        func: Callable[[], Awaitable[Any]],
        cron_expression: str,
        job_id: str,
        name: Optional[str] = None,
    ) -> None:
        """Run ``func`` on a crontab schedule, replacing any job with the same id."""
        trigger = cron_trigger(cron_expression, self._timezone)
        self._scheduler.add_job(func, trigger=trigger, id=job_id, name=name or job_id, replace_existing=True)
        logger.info(f"Added cron job: {job_id} ({cron_expression})")

    def add_interval_job(
        self,
        func: Callable[[], Awaitable[Any]],
        seconds: int,
        job_id: str,
    ) -> None:
        if seconds <= 0:
            raise ValueError(f"Interval must be positive, got {seconds}s")
        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self._timezone),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.info(f"Added interval job: {job_id} (every {seconds}s)")

    def next_run(self, job_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(job_id)
        # pending jobs (scheduler not started yet) have no next_run_time
        return getattr(job, "next_run_time", None) if job else None

    def list_jobs(self) -> Dict[str, Dict[str, Any]]:
        return {
            job.id: {
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        }
