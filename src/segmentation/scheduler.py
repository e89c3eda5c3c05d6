"""
Maintenance Scheduler.

Runs the periodic passes that keep definitions and profiles current:
- refresh-definitions: reload the definition cache
- past-event-recompute: recount "last N days" counting rules
- date-expr-recompute: resync segments using relative date expressions

Each job runs in its own asyncio task at a fixed rate. Job bodies are
synchronous service calls executed in a worker thread. A failing run is
logged and counted and the job keeps its schedule; stop() only prevents
future runs.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from .core.config import SegmentationSettings, get_settings
from .core.errors import MaintenanceError
from .core.logging import get_logger, with_context

if TYPE_CHECKING:
    from .service import SegmentService

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def seconds_until_hour_utc(hour: int, now: datetime | None = None) -> float:
    """
    Seconds from now until the next occurrence of hour:00 UTC.

    Returns 0 when now is exactly on the hour.
    """
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target < now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


@dataclass
class ScheduledJob:
    """A periodic job: first run after initial_delay, then every period seconds."""

    name: str
    func: Callable[[], Any]
    initial_delay: float
    period: float

    # Runtime state
    runs: int = field(default=0, repr=False)
    failures: int = field(default=0, repr=False)
    last_run: datetime | None = field(default=None, repr=False)
    last_error: str | None = field(default=None, repr=False)

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "period_seconds": self.period,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerMetrics:
    """Metrics for the maintenance scheduler."""

    runs: int = 0
    failures: int = 0
    uptime_seconds: float = 0.0


@dataclass
class MaintenanceScheduler:
    """
    Fixed-rate scheduler for maintenance jobs.

    Usage:
        scheduler = create_maintenance_scheduler(service)
        await scheduler.start()
        # ... run until shutdown
        await scheduler.stop()
    """

    jobs: list[ScheduledJob] = field(default_factory=list)

    # Runtime state
    _tasks: dict[str, asyncio.Task] = field(default_factory=dict, repr=False)
    _running: bool = field(default=False, repr=False)
    _start_time: datetime | None = field(default=None, repr=False)
    _metrics: SchedulerMetrics = field(default_factory=SchedulerMetrics, repr=False)

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running

    @property
    def metrics(self) -> SchedulerMetrics:
        """Get scheduler metrics."""
        if self._start_time:
            self._metrics.uptime_seconds = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return self._metrics

    def add_job(self, name: str, func: Callable[[], Any], initial_delay: float, period: float) -> ScheduledJob:
        """Register a job; jobs added while running start immediately."""
        if period <= 0:
            raise ValueError(f"Job {name} needs a positive period, got {period}")
        job = ScheduledJob(name=name, func=func, initial_delay=max(initial_delay, 0.0), period=period)
        self.jobs.append(job)
        if self._running:
            self._tasks[name] = asyncio.create_task(self._run_periodic(job))
        return job

    def get_job(self, name: str) -> ScheduledJob | None:
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    async def start(self) -> None:
        """Start one task per registered job."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._start_time = datetime.now(timezone.utc)

        for job in self.jobs:
            self._tasks[job.name] = asyncio.create_task(self._run_periodic(job))
            logger.info(
                "Scheduled %s: first run in %.1fs, then every %.1fs",
                job.name,
                job.initial_delay,
                job.period,
            )

    async def stop(self) -> None:
        """
        Stop scheduling future runs.

        A run already executing in its worker thread is left to finish.
        """
        if not self._running:
            return

        self._running = False
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        logger.info("Scheduler stopped")

    async def run_job(self, job: ScheduledJob) -> bool:
        """
        Run a job once, logging and counting any failure.

        Returns:
            True if the run succeeded
        """
        log = with_context(logger, task=job.name)
        job.last_run = datetime.now(timezone.utc)
        job.runs += 1
        self._metrics.runs += 1

        try:
            await asyncio.to_thread(job.func)
        except MaintenanceError as e:
            job.failures += 1
            job.last_error = str(e)
            self._metrics.failures += 1
            log.error(
                "Job %s finished with %d failed item(s)",
                job.name,
                len(e.failed),
                extra={"failed": e.failed},
            )
            return False
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            self._metrics.failures += 1
            log.error("Job %s failed: %s", job.name, e, exc_info=True)
            return False

        job.last_error = None
        return True

    async def _run_periodic(self, job: ScheduledJob) -> None:
        """Fixed-rate loop for one job."""
        try:
            await asyncio.sleep(job.initial_delay)
            while self._running:
                started = time.monotonic()
                await self.run_job(job)
                elapsed = time.monotonic() - started
                await asyncio.sleep(max(job.period - elapsed, 0.0))
        except asyncio.CancelledError:
            pass

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "running": self._running,
            "uptime_seconds": self.metrics.uptime_seconds if self._start_time else 0,
            "jobs": [job.get_status() for job in self.jobs],
            "metrics": {
                "runs": self._metrics.runs,
                "failures": self._metrics.failures,
            },
        }


def create_maintenance_scheduler(
    service: SegmentService,
    settings: SegmentationSettings | None = None,
    now: datetime | None = None,
) -> MaintenanceScheduler:
    """
    Build the scheduler with the three maintenance jobs of a service.

    Args:
        service: Service whose passes are scheduled
        settings: Timing settings (defaults to get_settings())
        now: Reference time for the date expression job's first run
    """
    settings = settings or get_settings()
    scheduler = MaintenanceScheduler()

    scheduler.add_job(
        "refresh-definitions",
        service.refresh_definitions,
        initial_delay=0.0,
        period=settings.segment_refresh_interval_seconds,
    )
    scheduler.add_job(
        "past-event-recompute",
        service.recalculate_past_event_conditions,
        initial_delay=settings.task_execution_period * SECONDS_PER_DAY,
        period=settings.task_execution_period * SECONDS_PER_DAY,
    )
    scheduler.add_job(
        "date-expr-recompute",
        service.recalculate_date_expr_segments,
        initial_delay=seconds_until_hour_utc(settings.daily_date_expr_evaluation_hour_utc, now),
        period=SECONDS_PER_DAY,
    )
    return scheduler
