"""APScheduler-based maintenance job service."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Interval job scheduler running on the application's event loop.

    Jobs are bound methods of live services, so they are kept in memory
    and registered again on every start.
    """

    def __init__(self, timezone_name: str = "UTC") -> None:
        """
        Initialize the scheduler service.

        Args:
            timezone_name: Scheduler timezone
        """
        self._timezone = timezone_name
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Get or create the scheduler instance."""
        if self._scheduler is None:
            self._scheduler = self._create_scheduler()
        return self._scheduler

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        job_defaults = {
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,  # Prevent overlapping runs
            "misfire_grace_time": 60,
        }

        scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults=job_defaults,
            timezone=self._timezone,
        )

        logger.info(f"Scheduler configured, timezone={self._timezone}")
        return scheduler

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.warning("Scheduler is already running")

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler.

        Args:
            wait: Wait for running jobs to complete
        """
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown complete")

    def add_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        interval_minutes: float,
        args: tuple[Any, ...] | None = None,
        kwargs: dict[str, Any] | None = None,
        run_immediately: bool = False,
    ) -> None:
        """
        Add an interval-based job to the scheduler.

        Args:
            job_id: Unique identifier for the job
            func: Function or coroutine function to execute
            interval_minutes: Minutes between runs
            args: Positional arguments for the function
            kwargs: Keyword arguments for the function
            run_immediately: Run the job immediately after adding
        """
        trigger = IntervalTrigger(minutes=interval_minutes, timezone=self._timezone)

        self.scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=job_id,
            args=args or (),
            kwargs=kwargs or {},
            replace_existing=True,
        )

        logger.info(f"Job '{job_id}' added with {interval_minutes}m interval")

        if run_immediately:
            self.run_job_now(job_id)

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a job from the scheduler.

        Returns:
            True if job was removed, False if not found
        """
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Job '{job_id}' removed")
        return True

    def run_job_now(self, job_id: str) -> bool:
        """
        Trigger immediate execution of a job.

        Returns:
            True if the job exists
        """
        job = self.scheduler.get_job(job_id)
        if job is None:
            logger.warning(f"Job '{job_id}' not found")
            return False

        job.modify(next_run_time=datetime.now(timezone.utc))
        logger.info(f"Job '{job_id}' triggered for immediate execution")
        return True

    def list_jobs(self) -> list[dict[str, Any]]:
        """
        List all scheduled jobs.

        Returns:
            List of job status dicts
        """
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": getattr(job, "next_run_time", None),
                "pending": job.pending,
            }
            for job in self.scheduler.get_jobs()
        ]

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None and self._scheduler.running
