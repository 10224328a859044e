"""
In-process cron scheduler for background jobs.

Each registered job runs in its own asyncio task that sleeps until the
next cron occurrence (evaluated in the configured timezone) and then runs
the job. A failing run is logged and counted; it never stops the job's
loop or affects any other job.
"""
import asyncio
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo

import structlog
from croniter import croniter

from boxoffice.database.models import utcnow
from boxoffice.exceptions import JobNotFoundError
from boxoffice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

JobTask = Callable[[], Awaitable[Any]]


@dataclass
class JobConfig:
    """Declaration of a scheduled job."""

    name: str
    schedule: str
    task: JobTask
    enabled: bool = True
    env_key: Optional[str] = None


@dataclass
class ScheduledJob:
    """A registered job and its run history."""

    config: JobConfig
    enabled: bool = True
    handle: Optional["asyncio.Task[None]"] = None
    run_count: int = 0
    failure_count: int = 0
    last_run_at: Optional[datetime] = None
    last_duration_ms: Optional[float] = None
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None
    last_result: Any = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def running(self) -> bool:
        """True while the job's schedule loop is active."""
        return self.handle is not None and not self.handle.done()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.config.schedule,
            "enabled": self.enabled,
            "running": self.running,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_duration_ms": self.last_duration_ms,
            "last_error": self.last_error,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }


class Scheduler:
    """
    Registry of cron jobs with isolated execution.

    Jobs disabled by flag or environment stay visible in the status and can
    be run manually, but are never scheduled. Invalid cron expressions and
    duplicate names are rejected at registration.
    """

    def __init__(
        self,
        enabled: bool = True,
        timezone: str = "UTC",
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.enabled = enabled
        self.timezone = ZoneInfo(timezone)
        self.environ = environ if environ is not None else os.environ
        self._jobs: Dict[str, ScheduledJob] = {}
        self._started = False

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    def register_job(self, config: JobConfig) -> bool:
        """
        Register a job.

        Returns:
            bool: True if the job will be scheduled on ``start()``
        """
        if config.name in self._jobs:
            logger.warning("scheduler_job_duplicate", job=config.name)
            return False

        if not croniter.is_valid(config.schedule):
            logger.error("scheduler_job_invalid_schedule", job=config.name, schedule=config.schedule)
            return False

        enabled = config.enabled
        if config.env_key and self.environ.get(config.env_key, "").lower() == "false":
            logger.info("scheduler_job_disabled_by_env", job=config.name, env_key=config.env_key)
            enabled = False

        job = ScheduledJob(config=config, enabled=enabled)
        self._jobs[config.name] = job
        if self._started and enabled and self.enabled:
            self._spawn(job)

        logger.info(
            "scheduler_job_registered",
            job=config.name,
            schedule=config.schedule,
            enabled=enabled,
        )
        return enabled

    def start(self) -> None:
        """Start the schedule loop of every enabled job. Requires a running event loop."""
        if not self.enabled:
            logger.info("scheduler_disabled")
            return
        if self._started:
            return

        self._started = True
        for job in self._jobs.values():
            if job.enabled:
                self._spawn(job)

        logger.info(
            "scheduler_started",
            timezone=str(self.timezone),
            jobs=[job.name for job in self._jobs.values() if job.running],
        )

    async def stop(self) -> None:
        """Cancel every schedule loop and wait for them to finish."""
        handles = [job.handle for job in self._jobs.values() if job.handle is not None]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        for job in self._jobs.values():
            job.handle = None
            job.next_run_at = None
        self._started = False
        logger.info("scheduler_stopped", jobs_stopped=len(handles))

    def get_status(self) -> List[Dict[str, Any]]:
        """Status of every registered job."""
        return [job.to_dict() for job in self._jobs.values()]

    async def run_job(self, name: str) -> ScheduledJob:
        """
        Run a job now, outside its schedule.

        Raises:
            JobNotFoundError: If no job is registered under ``name``
        """
        job = self._jobs.get(name)
        if job is None:
            raise JobNotFoundError(f"Job {name} not found", job=name)
        await self._execute(job, trigger="manual")
        return job

    def _spawn(self, job: ScheduledJob) -> None:
        job.handle = asyncio.create_task(self._run_forever(job), name=f"scheduler:{job.name}")

    async def _run_forever(self, job: ScheduledJob) -> None:
        while True:
            delay = self._seconds_until_next(job)
            await asyncio.sleep(delay)
            await self._execute(job)

    def _seconds_until_next(self, job: ScheduledJob, now: Optional[datetime] = None) -> float:
        now = (now or utcnow()).astimezone(self.timezone)
        next_run = croniter(job.config.schedule, now).get_next(datetime)
        job.next_run_at = next_run
        return max((next_run - now).total_seconds(), 0.0)

    async def _execute(self, job: ScheduledJob, trigger: str = "schedule") -> bool:
        log = logger.bind(job=job.name, trigger=trigger)
        log.info("scheduler_job_started")
        start_time = time.perf_counter()
        job.last_run_at = utcnow()
        job.run_count += 1

        success = True
        try:
            job.last_result = await job.config.task()
            job.last_error = None
        except Exception as e:
            success = False
            job.last_result = None
            job.failure_count += 1
            job.last_error = str(e)
            log.error("scheduler_job_failed", error=str(e), exc_info=True)

        duration = time.perf_counter() - start_time
        job.last_duration_ms = round(duration * 1000, 2)
        metrics.record_job_run(job.name, success, duration)
        if success:
            log.info("scheduler_job_completed", duration_ms=job.last_duration_ms)
        return success
