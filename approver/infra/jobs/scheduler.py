"""APScheduler-based job scheduler for periodic tasks.

Provides scheduling infrastructure for:
- The approval timeout sweep

Design principles:
- Use AsyncIOScheduler for async compatibility
- One instance of a job at a time, missed runs coalesced
- Job outcomes logged through a scheduler event listener
"""

import logging
from collections.abc import Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from approver.config import Settings

logger = logging.getLogger(__name__)

TIMEOUT_SWEEP_JOB_ID = "approval_timeout_sweep"


class JobScheduler:
    """APScheduler-based job scheduler for periodic tasks.

    Example:
        scheduler = JobScheduler(settings)
        scheduler.add_timeout_sweep_job(sweeper.run_scheduled_pass)
        await scheduler.start()

        # Shutdown
        await scheduler.shutdown()
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize job scheduler.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,  # One instance at a time
                "misfire_grace_time": settings.timeout_check_interval_seconds,
            },
        )

        self.scheduler.add_listener(
            self._on_job_executed,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR,
        )

        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the scheduler.

        Must be awaited from inside a running event loop.

        Raises:
            RuntimeError: If scheduler already started
        """
        if self._started:
            raise RuntimeError("Scheduler already started")

        self.scheduler.start()
        self._started = True

        logger.info(
            "Job scheduler started",
            extra={"job_count": len(self.scheduler.get_jobs())},
        )

    async def shutdown(self, wait: bool = False) -> None:
        """Stop the scheduler.

        No further jobs are launched once this returns. Coroutine jobs that are
        already running are not awaited here; their owners must join them.

        Args:
            wait: Passed through to APScheduler
        """
        if not self._started:
            return

        logger.info("Shutting down job scheduler...")

        self.scheduler.shutdown(wait=wait)
        self._started = False

        logger.info("Job scheduler stopped")

    def add_timeout_sweep_job(
        self,
        job_func: Callable,
        interval_seconds: int | None = None,
    ) -> str:
        """Add the periodic approval timeout sweep.

        Args:
            job_func: Async function to execute
            interval_seconds: Sweep interval (default: from settings)

        Returns:
            Job ID
        """
        interval = interval_seconds or self.settings.timeout_check_interval_seconds

        job = self.scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(seconds=interval),
            id=TIMEOUT_SWEEP_JOB_ID,
            name="Approval Timeout Sweep",
            replace_existing=True,
        )

        logger.info(
            f"Added timeout sweep job (interval: {interval}s)",
            extra={"job_id": job.id, "interval_seconds": interval},
        )

        return job.id

    def remove_job(self, job_id: str) -> None:
        """Remove a scheduled job.

        Args:
            job_id: Job identifier
        """
        self.scheduler.remove_job(job_id)
        logger.info(f"Removed job {job_id}", extra={"job_id": job_id})

    def get_job_status(self, job_id: str) -> dict | None:
        """Get job status.

        Args:
            job_id: Job identifier

        Returns:
            Job status dict or None if job not found
        """
        job = self.scheduler.get_job(job_id)
        if not job:
            return None

        return {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "pending": job.pending,
        }

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        if event.exception:
            logger.error(
                f"Job {event.job_id} failed",
                extra={"job_id": event.job_id, "error": str(event.exception)},
                exc_info=event.exception,
            )
        else:
            logger.debug(
                f"Job {event.job_id} executed successfully",
                extra={"job_id": event.job_id},
            )


__all__ = ["JobScheduler", "TIMEOUT_SWEEP_JOB_ID"]
