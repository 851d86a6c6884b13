"""
guestcore/engine/saga.py

Saga engine - ordered steps with compensating rollback.
Each executed step records its result; when a later step fails, the
compensations of the executed steps run in reverse order.
"""
from typing import Any, Callable, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
import logging
import uuid

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    """
    One saga step.

    Attributes:
        name: Step name (used in logs and results)
        action: Forward operation; its return value is kept as the step result
        compensation: Reversal, called with the step result
        result: Return value of the action once executed
        executed: Whether the action completed
        compensated: Whether the compensation completed
    """

    name: str
    action: Callable[[], Any]
    compensation: Optional[Callable[[Any], None]] = None
    result: Any = None
    executed: bool = False
    compensated: bool = False


@dataclass
class SagaResult:
    """
    Outcome of a saga run.

    Attributes:
        saga_id: Unique saga id
        succeeded: True if every step executed
        completed_steps: Names of executed steps, in order
        failed_step: Name of the step that raised
        error: The exception raised by the failed step
        compensated_steps: Names of steps rolled back, in rollback order
        compensation_errors: (step name, exception) for failed compensations
        results: Step results keyed by step name
    """

    saga_id: str
    succeeded: bool
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[Exception] = None
    compensated_steps: List[str] = field(default_factory=list)
    compensation_errors: List[tuple] = field(default_factory=list)
    results: dict = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def rolled_back(self) -> bool:
        return bool(self.compensated_steps)


class Saga:
    """
    Saga - a multi-step operation that is either fully applied or compensated.

    Example:
        >>> saga = Saga("checkout")
        >>> saga.add_step("hold", lambda: ledger.place_hold(...), lambda r: ledger.cancel(r.id))
        >>> saga.add_step("buy", lambda: inventory.purchase_batch(lines))
        >>> result = saga.execute()
    """

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.name = name
        self.saga_id = saga_id or str(uuid.uuid4())
        self._steps: List[SagaStep] = []
        self._executed = False

    @property
    def steps(self) -> List[SagaStep]:
        return list(self._steps)

    def add_step(
        self,
        name: str,
        action: Callable[[], Any],
        compensation: Optional[Callable[[Any], None]] = None,
    ) -> "Saga":
        if self._executed:
            raise RuntimeError(f"Saga {self.saga_id} already executed")
        self._steps.append(SagaStep(name=name, action=action, compensation=compensation))
        return self

    def execute(self) -> SagaResult:
        """
        Run every step in order.

        Exceptions raised by a step are captured in the result rather than
        propagated; compensation failures are logged and collected, and the
        remaining compensations still run.
        """
        if self._executed:
            raise RuntimeError(f"Saga {self.saga_id} already executed")
        self._executed = True

        result = SagaResult(saga_id=self.saga_id, succeeded=False)

        for step in self._steps:
            try:
                step.result = step.action()
                step.executed = True
                result.completed_steps.append(step.name)
                result.results[step.name] = step.result
            except Exception as e:
                result.failed_step = step.name
                result.error = e
                logger.warning(f"Saga {self.name}[{self.saga_id}] step '{step.name}' failed: {e}")
                self._compensate(result)
                result.finished_at = datetime.utcnow()
                return result

        result.succeeded = True
        result.finished_at = datetime.utcnow()
        logger.info(f"Saga {self.name}[{self.saga_id}] completed ({len(self._steps)} steps)")
        return result

    def _compensate(self, result: SagaResult) -> None:
        for step in reversed(self._steps):
            if not step.executed or step.compensation is None:
                continue
            try:
                step.compensation(step.result)
                step.compensated = True
                result.compensated_steps.append(step.name)
            except Exception as e:
                result.compensation_errors.append((step.name, e))
                logger.error(
                    f"Saga {self.name}[{self.saga_id}] compensation for '{step.name}' failed: {e}",
                    exc_info=True,
                )

        if result.compensated_steps:
            logger.info(
                f"Saga {self.name}[{self.saga_id}] rolled back: {', '.join(result.compensated_steps)}"
            )


__all__ = [
    "SagaStep",
    "SagaResult",
    "Saga",
]
