"""
In-process job scheduler for periodic and cron-style jobs.

The scheduler owns its clock: ``run_pending()`` evaluates which jobs are due
at ``clock.now()`` and runs them synchronously, which makes schedules fully
deterministic under a ManualClock. ``start()``/``stop()`` wrap the same
evaluation in an asyncio loop that runs each due job in a worker thread,
never overlapping two runs of the same job.

Cron expressions use the standard five fields
(minute hour day_of_month month_of_year day_of_week) and are parsed with
celery's crontab.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from celery.schedules import crontab

from courier.src.utils.clock import Clock, SystemClock
from courier.src.utils.logging_config import get_logger


logger = get_logger("scheduler")


def parse_cron(expression: str) -> crontab:
    """
    Parse a five-field cron expression.

    Raises:
        ValueError: If the expression is malformed
    """
    fields = expression.strip().split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except Exception as e:
        raise ValueError(f"Invalid cron expression {expression!r}: {e}") from e


def cron_matches(schedule: crontab, moment: datetime) -> bool:
    """Whether ``moment`` (minute resolution) falls on the schedule."""
    # crontab counts days of week from Sunday = 0
    day_of_week = (moment.weekday() + 1) % 7
    return (
        moment.minute in schedule.minute
        and moment.hour in schedule.hour
        and moment.day in schedule.day_of_month
        and moment.month in schedule.month_of_year
        and day_of_week in schedule.day_of_week
    )


@dataclass
class IntervalJob:
    name: str
    func: Callable[[], object]
    interval: timedelta
    next_run_at: datetime

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_run_at

    def mark_run(self, now: datetime) -> None:
        self.next_run_at = now + self.interval


@dataclass
class CronJob:
    name: str
    func: Callable[[], object]
    expression: str
    schedule: crontab
    last_fired: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        minute = now.replace(second=0, microsecond=0)
        return minute != self.last_fired and cron_matches(self.schedule, minute)

    def mark_run(self, now: datetime) -> None:
        self.last_fired = now.replace(second=0, microsecond=0)


@dataclass
class JobRun:
    """Result of one job execution inside run_pending()."""
    name: str
    ok: bool
    error: Optional[str] = None


@dataclass
class _Jobs:
    interval: Dict[str, IntervalJob] = field(default_factory=dict)
    cron: Dict[str, CronJob] = field(default_factory=dict)

    def all(self):
        return list(self.interval.values()) + list(self.cron.values())


class Scheduler:
    """
    Owned scheduler with an injected clock.

    Usage:
        >>> scheduler = Scheduler(clock=ManualClock(datetime(2025, 1, 6, 8, 0)))
        >>> scheduler.add_cron_job("daily-digest", "0 8 * * *", run_daily_digest)
        >>> [run.name for run in scheduler.run_pending()]
        ['daily-digest']
    """

    def __init__(self, clock: Optional[Clock] = None, poll_interval: float = 1.0):
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self._jobs = _Jobs()
        self._running: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _check_name(self, name: str) -> None:
        if name in self._jobs.interval or name in self._jobs.cron:
            raise ValueError(f"Job already registered: {name}")

    def add_interval_job(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], object],
        run_immediately: bool = True,
    ) -> IntervalJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._check_name(name)
        interval = timedelta(seconds=interval_seconds)
        now = self.clock.now()
        job = IntervalJob(
            name=name,
            func=func,
            interval=interval,
            next_run_at=now if run_immediately else now + interval,
        )
        self._jobs.interval[name] = job
        logger.info(f"Registered interval job '{name}' every {interval_seconds}s")
        return job

    def add_cron_job(self, name: str, expression: str, func: Callable[[], object]) -> CronJob:
        self._check_name(name)
        job = CronJob(name=name, func=func, expression=expression, schedule=parse_cron(expression))
        self._jobs.cron[name] = job
        logger.info(f"Registered cron job '{name}' ({expression})")
        return job

    @property
    def job_names(self) -> List[str]:
        return [job.name for job in self._jobs.all()]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _due_jobs(self, now: datetime):
        return [
            job for job in self._jobs.all()
            if job.name not in self._running and job.is_due(now)
        ]

    def _execute(self, job) -> JobRun:
        try:
            job.func()
        except Exception as e:
            logger.error(f"Scheduled job '{job.name}' failed: {e}", exc_info=True)
            return JobRun(name=job.name, ok=False, error=str(e))
        return JobRun(name=job.name, ok=True)

    def run_pending(self) -> List[JobRun]:
        """
        Run every job due at the current clock time, in registration order.

        A failing job is logged and does not prevent the others from running.

        Returns:
            One JobRun per executed job
        """
        now = self.clock.now()
        runs = []
        for job in self._due_jobs(now):
            job.mark_run(now)
            runs.append(self._execute(job))
        return runs

    async def _run_in_thread(self, job) -> None:
        try:
            await asyncio.to_thread(self._execute, job)
        finally:
            self._running.discard(job.name)

    async def _loop(self) -> None:
        logger.info("Scheduler started", extra={"jobs": self.job_names})
        while not self._shutdown_event.is_set():
            now = self.clock.now()
            for job in self._due_jobs(now):
                job.mark_run(now)
                self._running.add(job.name)
                task = asyncio.create_task(self._run_in_thread(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")

    async def start(self) -> None:
        """Start the scheduling loop on the running event loop."""
        if self.is_running:
            return
        self._shutdown_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop scheduling and wait for in-flight job runs to finish."""
        if self._loop_task is None:
            return
        self._shutdown_event.set()
        await self._loop_task
        self._loop_task = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()
