"""
APScheduler backend - production implementation of ISchedulerBackend
"""
import logging
from typing import Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from guestcore.scheduler.base import ISchedulerBackend

logger = logging.getLogger(__name__)


class APSchedulerBackend(ISchedulerBackend):
    """Hold-expiry timers and periodic sweeps on a BackgroundScheduler."""

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("APScheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("APScheduler shut down")

    def add_job(
        self,
        job_id: str,
        func: Callable,
        trigger: str,
        **trigger_args,
    ) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            **trigger_args,
        )
        logger.debug(f"Job added: {job_id} ({trigger})")

    def remove_job(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
            logger.debug(f"Job removed: {job_id}")
        except JobLookupError:
            # date jobs are dropped by APScheduler once they have fired
            logger.debug(f"Job already gone: {job_id}")

    def get_jobs(self) -> List[Dict]:
        return [self._job_to_dict(j) for j in self._scheduler.get_jobs()]

    def get_job(self, job_id: str) -> Optional[Dict]:
        job = self._scheduler.get_job(job_id)
        if job is None:
            return None
        return self._job_to_dict(job)

    @staticmethod
    def _job_to_dict(job) -> Dict:
        next_run = getattr(job, "next_run_time", None)
        return {
            "id": job.id,
            "trigger": str(job.trigger),
            "next_run_time": next_run.isoformat() if next_run else None,
        }
