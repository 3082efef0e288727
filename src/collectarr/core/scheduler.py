"""APScheduler wrapper for cron-driven jobs."""

from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger


class Scheduler:
    """Thin wrapper around AsyncIOScheduler keyed by job name."""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(timezone=timezone)

    def add_cron_job(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        cron_expression: str,
        args: Optional[list[Any]] = None,
    ) -> None:
        """
        Schedule (or reschedule) a coroutine with a crontab expression.

        Args:
            name: Unique job name
            func: Coroutine function to run
            cron_expression: Five-field crontab expression
            args: Positional arguments passed to func
        """
        trigger = CronTrigger.from_crontab(cron_expression, timezone=self.timezone)
        self._scheduler.add_job(
            func,
            trigger=trigger,
            args=args or [],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug(f"[Scheduler] {name}: {cron_expression}")

        if not self._scheduler.running:
            self._scheduler.start()

    def remove_job(self, name: str) -> None:
        """Remove a job if scheduled."""
        if self._scheduler.get_job(name):
            self._scheduler.remove_job(name)

    def list_jobs(self) -> list[dict[str, Optional[str]]]:
        """List scheduled jobs with their next run time (ISO format)."""
        return [
            {
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self._scheduler.get_jobs()
        ]

    def stop(self) -> None:
        """Shut the scheduler down without waiting for running jobs."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
