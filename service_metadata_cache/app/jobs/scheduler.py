"""
Job registrations and a minimal asyncio scheduler for cache refresh jobs.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from shared.logging import get_logger, set_job_key


class TriggerKind(str, Enum):
    """How a job is triggered."""
    FIXED_TIME = "fixed_time"
    FIXED_INTERVAL = "fixed_interval"


def parse_daily_time(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM`` (UTC) into hour and minute."""
    try:
        hour_str, minute_str = value.split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Daily trigger time must be HH:MM, got {value!r}")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Daily trigger time out of range: {value!r}")
    return hour, minute


def seconds_until_daily(now: datetime, hour: int, minute: int) -> float:
    """Seconds from ``now`` until the next HH:MM UTC."""
    now = now.astimezone(timezone.utc)
    next_run = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


@dataclass
class JobRegistration:
    """A job: an async callable plus when to run it."""
    job_key: str
    trigger_kind: TriggerKind
    trigger_value: Union[str, int]
    target: Callable[[], Awaitable[Any]]
    run_on_start: bool = False

    def __post_init__(self):
        if self.trigger_kind == TriggerKind.FIXED_TIME:
            parse_daily_time(str(self.trigger_value))
        elif int(self.trigger_value) <= 0:
            raise ValueError(f"Interval for job {self.job_key} must be positive")

    def seconds_until_next_run(self, now: datetime) -> float:
        if self.trigger_kind == TriggerKind.FIXED_TIME:
            hour, minute = parse_daily_time(str(self.trigger_value))
            return seconds_until_daily(now, hour, minute)
        return float(self.trigger_value)

    def describe(self) -> Dict[str, Any]:
        return {
            "job_key": self.job_key,
            "trigger_kind": self.trigger_kind.value,
            "trigger_value": self.trigger_value,
            "target": getattr(self.target, "__qualname__", repr(self.target)),
        }


class JobScheduler:
    """Fires registered jobs on their triggers until stopped.

    A failing job is logged and fires again on its next trigger.
    """

    def __init__(
        self,
        registrations: Optional[List[JobRegistration]] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics=None
    ):
        self.logger = get_logger("metadata_cache.scheduler")
        self.clock = clock
        self.sleep = sleep
        self.metrics = metrics
        self.registrations: Dict[str, JobRegistration] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.running = False
        for registration in registrations or []:
            self.register(registration)

    def register(self, registration: JobRegistration):
        if registration.job_key in self.registrations:
            raise ValueError(f"Job {registration.job_key} is already registered")
        self.registrations[registration.job_key] = registration

    def jobs(self) -> List[Dict[str, Any]]:
        return [registration.describe() for registration in self.registrations.values()]

    async def run_job(self, job_key: str) -> Any:
        """Run one job now; errors propagate to the caller."""
        registration = self.registrations[job_key]
        set_job_key(job_key)
        try:
            self.logger.info("Running job", job_key=job_key)
            return await registration.target()
        finally:
            set_job_key(None)

    async def start(self):
        """Start one loop per registered job."""
        if self.running:
            return
        self.running = True
        for job_key, registration in self.registrations.items():
            self._tasks[job_key] = asyncio.create_task(self._job_loop(registration))
        self.logger.info("Job scheduler started", jobs=list(self.registrations))

    async def stop(self):
        """Cancel every job loop and wait for them to finish."""
        self.running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self.logger.info("Job scheduler stopped")

    async def _run_logged(self, registration: JobRegistration):
        try:
            await self.run_job(registration.job_key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Job failed", job_key=registration.job_key, error=str(e), exc_info=True)
            if self.metrics:
                self.metrics.record_error("job_failed")

    async def _job_loop(self, registration: JobRegistration):
        if registration.run_on_start:
            await self._run_logged(registration)

        while self.running:
            delay = registration.seconds_until_next_run(self.clock())
            self.logger.debug("Next job run scheduled", job_key=registration.job_key, delay_seconds=delay)
            await self.sleep(delay)
            if not self.running:
                break
            await self._run_logged(registration)
