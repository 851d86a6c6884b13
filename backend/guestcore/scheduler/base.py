"""
Scheduler backend interface - domain-agnostic timed jobs.

The app layer plugs in a concrete backend (APScheduler in production,
ManualScheduler in tests). Components that own timers register jobs under
ids they control and remove them on teardown.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging
import threading

from guestcore.scheduler.clock import Clock, ManualClock

logger = logging.getLogger(__name__)


class ISchedulerBackend(ABC):
    """Scheduler backend interface."""

    @abstractmethod
    def add_job(
        self,
        job_id: str,
        func: Callable,
        trigger: str,
        **trigger_args,
    ) -> None:
        """Add (or replace) a job.

        Args:
            job_id: Unique job id
            func: Callable to run
            trigger: 'date' (run_date=...) or 'interval' (seconds=/minutes=...)
            **trigger_args: Trigger parameters
        """

    @abstractmethod
    def remove_job(self, job_id: str) -> None:
        """Remove a job; unknown ids are ignored."""

    @abstractmethod
    def get_jobs(self) -> List[Dict]:
        """All jobs, each with at least id, trigger, next_run_time."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Dict]:
        """One job or None."""

    def has_job(self, job_id: str) -> bool:
        return self.get_job(job_id) is not None

    def shutdown(self) -> None:
        """Stop the backend."""


@dataclass
class _ManualJob:
    job_id: str
    func: Callable
    trigger: str
    next_run: datetime
    interval: Optional[timedelta] = None


def _interval_from_args(trigger_args: Dict) -> timedelta:
    interval = timedelta(
        weeks=trigger_args.get("weeks", 0),
        days=trigger_args.get("days", 0),
        hours=trigger_args.get("hours", 0),
        minutes=trigger_args.get("minutes", 0),
        seconds=trigger_args.get("seconds", 0),
    )
    if interval <= timedelta(0):
        raise ValueError("interval trigger needs a positive period")
    return interval


class ManualScheduler(ISchedulerBackend):
    """
    Clock-driven scheduler.

    Jobs run only from run_pending()/advance(), on the calling thread, in
    due-time order. Used by tests and by single-threaded embeddings that
    pump the runtime themselves.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or ManualClock()
        self._jobs: Dict[str, _ManualJob] = {}
        self._lock = threading.RLock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def add_job(self, job_id: str, func: Callable, trigger: str, **trigger_args) -> None:
        now = self._clock.now()
        if trigger == "date":
            run_date = trigger_args.get("run_date", now)
            job = _ManualJob(job_id=job_id, func=func, trigger=trigger, next_run=run_date)
        elif trigger == "interval":
            interval = _interval_from_args(trigger_args)
            job = _ManualJob(
                job_id=job_id, func=func, trigger=trigger, next_run=now + interval, interval=interval
            )
        else:
            raise ValueError(f"Unsupported trigger: {trigger}")

        with self._lock:
            self._jobs[job_id] = job
        logger.debug(f"Job added: {job_id} ({trigger}, next run {job.next_run.isoformat()})")

    def remove_job(self, job_id: str) -> None:
        with self._lock:
            removed = self._jobs.pop(job_id, None)
        if removed is not None:
            logger.debug(f"Job removed: {job_id}")

    def get_jobs(self) -> List[Dict]:
        with self._lock:
            return [self._job_to_dict(job) for job in self._jobs.values()]

    def get_job(self, job_id: str) -> Optional[Dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._job_to_dict(job) if job else None

    def run_pending(self) -> int:
        """
        Run every job due at the current clock time.

        Returns:
            Number of job executions.
        """
        executed = 0
        while True:
            now = self._clock.now()
            with self._lock:
                due = sorted(
                    (job for job in self._jobs.values() if job.next_run <= now),
                    key=lambda j: j.next_run,
                )
                if not due:
                    return executed
                job = due[0]
                if job.interval is None:
                    del self._jobs[job.job_id]
                else:
                    job.next_run = job.next_run + job.interval

            try:
                job.func()
            except Exception as e:
                logger.error(f"Job {job.job_id} failed: {e}", exc_info=True)
            executed += 1

    def advance(self, seconds: float = 0, **kwargs) -> int:
        """Advance the underlying ManualClock and run due jobs."""
        if not isinstance(self._clock, ManualClock):
            raise TypeError("advance() requires a ManualClock")
        self._clock.advance(timedelta(seconds=seconds, **kwargs))
        return self.run_pending()

    def shutdown(self) -> None:
        with self._lock:
            self._jobs.clear()

    @staticmethod
    def _job_to_dict(job: _ManualJob) -> Dict:
        return {
            "id": job.job_id,
            "name": job.job_id,
            "trigger": job.trigger,
            "next_run_time": job.next_run.isoformat(),
            "status": "active",
        }


__all__ = ["ISchedulerBackend", "ManualScheduler"]
