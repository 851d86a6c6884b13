"""
guestcore/engine - runtime engines

- event_bus: in-process publish/subscribe
- rule_engine: scoped trigger rules
- state_machine: validated state transitions
- saga: multi-step operations with compensating rollback

Usage:
    >>> from guestcore.engine import EventBus, RuleEngine, StateMachine, Saga
"""

from guestcore.engine.event_bus import (
    EventId,
    EventHandler,
    Event,
    PublishResult,
    EventBus,
)

from guestcore.engine.rule_engine import (
    RuleContext,
    RuleCondition,
    AlwaysCondition,
    ExpressionCondition,
    Rule,
    RuleEngine,
)

from guestcore.engine.state_machine import (
    StateTransition,
    StateMachineConfig,
    StateMachine,
)

from guestcore.engine.saga import (
    SagaStep,
    SagaResult,
    Saga,
)

__all__ = [
    # event bus
    "EventId",
    "EventHandler",
    "Event",
    "PublishResult",
    "EventBus",
    # rules
    "RuleContext",
    "RuleCondition",
    "AlwaysCondition",
    "ExpressionCondition",
    "Rule",
    "RuleEngine",
    # state machine
    "StateTransition",
    "StateMachineConfig",
    "StateMachine",
    # saga
    "SagaStep",
    "SagaResult",
    "Saga",
]
