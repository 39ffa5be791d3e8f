"""Background cancellation of approval requests nobody answered.

A periodic pass finds pending records older than the configured timeout and
cancels each one through the regular cancellation path, attributed to the
system. The pass runs as an APScheduler interval job; ``stop`` prevents new
passes and then waits for one that is already running.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from approver.config import Settings
from approver.domain.exceptions import DomainError, PersistenceError
from approver.domain.models import (
    TIMEOUT_CANCEL_REASON,
    ApprovalRecord,
    ApprovalStatus,
    now_millis,
)
from approver.domain.services.approval import ApprovalService
from approver.infra.jobs.scheduler import JobScheduler
from approver.infra.kv.records import RecordStore
from approver.infra.observability import metrics, set_correlation_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one sweep pass."""

    eligible: int = 0
    canceled: int = 0
    failed: int = 0


class TimeoutSweeper:
    """Periodically cancels pending approvals that exceeded the timeout.

    Example:
        sweeper = TimeoutSweeper(service, store, JobScheduler(settings), settings)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        service: ApprovalService,
        store: RecordStore,
        scheduler: JobScheduler,
        settings: Settings,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.service = service
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self.clock = clock or now_millis

        self._pass_lock = asyncio.Lock()
        self._stopping = False
        self._job_id: str | None = None

    async def start(self) -> None:
        """Register the sweep job and start the scheduler if needed."""
        self._stopping = False
        self._job_id = self.scheduler.add_timeout_sweep_job(self.run_scheduled_pass)
        if not self.scheduler.running:
            await self.scheduler.start()

        logger.info(
            "Timeout sweeper started",
            extra={
                "job_id": self._job_id,
                "interval_seconds": self.settings.timeout_check_interval_seconds,
                "timeout_seconds": self.settings.approval_timeout_seconds,
            },
        )

    async def stop(self) -> None:
        """Stop future passes, then wait for an in-flight pass to finish."""
        self._stopping = True
        if self._job_id and self.scheduler.get_job_status(self._job_id):
            self.scheduler.remove_job(self._job_id)
        self._job_id = None
        await self.scheduler.shutdown(wait=False)

        async with self._pass_lock:
            pass

        logger.info("Timeout sweeper stopped")

    async def run_scheduled_pass(self) -> None:
        """Scheduled entry point; never lets an exception escape."""
        if self._stopping:
            return

        try:
            await self.sweep_once()
        except Exception as e:
            logger.error(
                "Timeout sweep pass failed",
                extra={"job_id": self._job_id, "error": str(e)},
                exc_info=True,
            )

    async def sweep_once(self) -> SweepResult:
        """Cancel every pending record older than the timeout.

        Returns:
            Counts of eligible, canceled and failed records

        Raises:
            PersistenceError: If the pending scan itself fails
        """
        async with self._pass_lock:
            set_correlation_id(f"sweep-{uuid.uuid4()}")
            now = self.clock()

            try:
                stale = await self.store.list_pending_older_than(
                    self.settings.approval_timeout_millis, now
                )
            except PersistenceError:
                metrics.record_sweep(0, 0, 0, success=False)
                raise

            canceled = 0
            failed = 0
            for record in stale:
                if await self._cancel_with_retry(record):
                    canceled += 1
                else:
                    failed += 1

            result = SweepResult(eligible=len(stale), canceled=canceled, failed=failed)
            metrics.record_sweep(result.eligible, result.canceled, result.failed)

            if result.eligible:
                logger.info(
                    "Timeout sweep completed",
                    extra={
                        "eligible_count": result.eligible,
                        "canceled_count": result.canceled,
                        "failed_count": result.failed,
                    },
                )
            else:
                logger.debug("Timeout sweep found no expired approvals")

            return result

    async def _cancel_with_retry(self, record: ApprovalRecord) -> bool:
        attempts = 1 + self.settings.timeout_cancel_retry_attempts
        error: DomainError | None = None

        for attempt in range(1, attempts + 1):
            try:
                await self.service.cancel_approval(
                    record.code,
                    record.requester_id,
                    TIMEOUT_CANCEL_REASON,
                    timed_out=True,
                )
                return True
            except PersistenceError as e:
                error = e
            except DomainError as e:
                error = e
                break

            # The primary record is written before the indexes, so a failed
            # save may already have canceled it.
            if await self._finish_partial_cancel(record):
                return True

            if attempt < attempts:
                logger.warning(
                    "Retrying timeout cancellation after storage failure",
                    extra={
                        "approval_id": record.id,
                        "approval_code": record.code,
                        "attempt": attempt,
                        "error": str(error),
                    },
                )

        logger.error(
            "Failed to auto-cancel timed out approval",
            extra={
                "approval_id": record.id,
                "approval_code": record.code,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        return False

    async def _finish_partial_cancel(self, record: ApprovalRecord) -> bool:
        """Complete a timeout cancel whose record write landed before a failure."""
        try:
            current = await self.store.get_by_id(record.id)
        except DomainError as e:
            logger.warning(
                "Failed to reload approval after storage failure",
                extra={"approval_id": record.id, "error": str(e)},
            )
            return False

        if (
            current.status != ApprovalStatus.CANCELED
            or current.canceled_reason != TIMEOUT_CANCEL_REASON
        ):
            return False

        logger.info(
            "Timed out approval was canceled despite a storage failure",
            extra={"approval_id": current.id, "approval_code": current.code},
        )
        await self.service.announce_timeout(current)
        return True


__all__ = ["SweepResult", "TimeoutSweeper"]
