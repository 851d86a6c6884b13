"""
Scheduler interface - domain-agnostic timed jobs and clocks.

The app layer supplies a concrete ISchedulerBackend (APScheduler etc.).
"""
from guestcore.scheduler.base import ISchedulerBackend, ManualScheduler
from guestcore.scheduler.clock import Clock, SystemClock, ManualClock, epoch_ms

__all__ = [
    "ISchedulerBackend",
    "ManualScheduler",
    "Clock",
    "SystemClock",
    "ManualClock",
    "epoch_ms",
]
