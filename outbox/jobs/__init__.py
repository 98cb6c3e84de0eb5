"""Job scheduling on top of the task queue."""

from outbox.jobs.job import Chain, Job, JobManager, JobParameters

__all__ = ["Chain", "Job", "JobManager", "JobParameters"]
