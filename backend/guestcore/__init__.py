"""
guestcore - domain-agnostic runtime layer

Building blocks the guest dashboard runtime is assembled from:
- engine: event bus, rule engine, state machine, saga
- scheduler: scheduler backend interface and clocks

Usage:
    >>> from guestcore.engine import EventBus, Saga
    >>> from guestcore.scheduler import ManualScheduler, ManualClock
"""

from guestcore.engine import (
    Event,
    EventBus,
    Rule,
    RuleContext,
    RuleEngine,
    Saga,
    SagaResult,
    StateMachine,
    StateMachineConfig,
    StateTransition,
)
from guestcore.scheduler import (
    Clock,
    ISchedulerBackend,
    ManualClock,
    ManualScheduler,
    SystemClock,
)

__version__ = "0.1.0"

__all__ = [
    "Event",
    "EventBus",
    "Rule",
    "RuleContext",
    "RuleEngine",
    "Saga",
    "SagaResult",
    "StateMachine",
    "StateMachineConfig",
    "StateTransition",
    "Clock",
    "ISchedulerBackend",
    "ManualClock",
    "ManualScheduler",
    "SystemClock",
]
