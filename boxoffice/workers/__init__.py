"""Background job scheduling."""
from .jobs import build_jobs, build_scheduler
from .scheduler import JobConfig, ScheduledJob, Scheduler

__all__ = ["JobConfig", "ScheduledJob", "Scheduler", "build_jobs", "build_scheduler"]
