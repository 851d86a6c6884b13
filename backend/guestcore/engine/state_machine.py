"""
guestcore/engine/state_machine.py

State machine engine - validated transitions keyed by (state, trigger).
"""
from typing import Dict, List, Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)


@dataclass
class StateTransition:
    """
    Transition definition.

    Attributes:
        from_state: Source state
        to_state: Target state
        trigger: Triggering action
    """

    from_state: str
    to_state: str
    trigger: str


@dataclass
class StateMachineConfig:
    """
    State machine configuration.

    Attributes:
        name: Machine name
        states: All states
        transitions: Allowed transitions
        initial_state: Starting state
        terminal_states: States with no outgoing transitions
    """

    name: str
    states: List[str]
    transitions: List[StateTransition]
    initial_state: str
    terminal_states: List[str] = field(default_factory=list)


class StateMachine:
    """
    State machine.

    A transition is accepted only when the current state declares the
    trigger and the trigger leads to the requested target state.

    Example:
        >>> machine = StateMachine(
        ...     config=StateMachineConfig(
        ...         name="Reservation",
        ...         states=["requested", "held"],
        ...         transitions=[StateTransition("requested", "held", "hold")],
        ...         initial_state="requested",
        ...     )
        ... )
        >>> machine.transition_to("held", "hold")
        True
    """

    def __init__(self, config: StateMachineConfig, state: Optional[str] = None):
        self._config = config
        self._current_state = state if state is not None else config.initial_state
        self._transition_map: Dict[str, Dict[str, StateTransition]] = {}

        # (from_state, trigger) -> transition
        for t in config.transitions:
            self._transition_map.setdefault(t.from_state, {})[t.trigger] = t

    @property
    def current_state(self) -> str:
        return self._current_state

    @property
    def is_terminal(self) -> bool:
        return self._current_state in self._config.terminal_states

    def can_transition_to(self, target_state: str, trigger: str) -> bool:
        if target_state not in self._config.states:
            return False

        transition = self._transition_map.get(self._current_state, {}).get(trigger)
        return transition is not None and transition.to_state == target_state

    def transition_to(self, target_state: str, trigger: str) -> bool:
        """
        Apply a transition.

        Returns:
            True if the transition was applied.
        """
        if not self.can_transition_to(target_state, trigger):
            logger.warning(
                f"{self._config.name}: invalid transition {self._current_state} -> {target_state} (trigger: {trigger})"
            )
            return False

        previous_state = self._current_state
        self._current_state = target_state
        logger.debug(f"{self._config.name}: {previous_state} -> {target_state} (trigger: {trigger})")
        return True


__all__ = [
    "StateTransition",
    "StateMachineConfig",
    "StateMachine",
]
