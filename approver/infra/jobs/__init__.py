"""Background job scheduling."""

from approver.infra.jobs.scheduler import TIMEOUT_SWEEP_JOB_ID, JobScheduler

__all__ = ["JobScheduler", "TIMEOUT_SWEEP_JOB_ID"]
