"""
guestcore/engine/rule_engine.py

Rule engine - scoped rule registration and evaluation.
Rules are indexed by scope (for example a zone kind) and fire their action
when the condition holds for a given context.
"""
from typing import Callable, Dict, List, Any
from dataclasses import dataclass, field
from abc import ABC, abstractmethod
import logging

logger = logging.getLogger(__name__)


@dataclass
class RuleContext:
    """
    Rule execution context.

    Attributes:
        entity: Subject of the evaluation (dict or object)
        entity_type: Scope the rules are looked up by
        action: What happened to the entity (e.g. "entered")
        metadata: Additional metadata
    """

    entity: Any
    entity_type: str
    action: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class RuleCondition(ABC):
    """Rule condition interface."""

    @abstractmethod
    def evaluate(self, context: RuleContext) -> bool:
        raise NotImplementedError


class AlwaysCondition(RuleCondition):
    """Condition that always holds."""

    def evaluate(self, context: RuleContext) -> bool:
        return True

    def __repr__(self) -> str:
        return "AlwaysCondition()"


class ExpressionCondition(RuleCondition):
    """
    Simple attribute expression, e.g. "zone_id == 'hotel-main'".

    Only `==` and `!=` against the entity's attributes (or dict keys) are
    supported; there is no eval.
    """

    def __init__(self, expression: str):
        self._expression = expression

    @property
    def expression(self) -> str:
        return self._expression

    @staticmethod
    def _get_attr_value(entity: Any, attr_name: str) -> Any:
        value = entity
        for part in attr_name.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                value = getattr(value, part, None)
            if value is None:
                return None
        return value

    def evaluate(self, context: RuleContext) -> bool:
        for operator in (" == ", " != "):
            if operator in self._expression:
                attr, value = self._expression.split(operator, 1)
                attr_value = self._get_attr_value(context.entity, attr.strip())
                expected = value.strip().strip("'\"")
                matches = str(attr_value) == expected
                return matches if operator == " == " else not matches

        logger.warning(f"Unsupported expression: {self._expression}")
        return False

    def __repr__(self) -> str:
        return f"ExpressionCondition({self._expression})"


@dataclass
class Rule:
    """
    Rule definition.

    Attributes:
        rule_id: Unique rule id
        name: Rule name
        description: Rule description
        scope: Scope the rule is indexed under
        condition: Rule condition
        action: Callable run when the rule fires
        priority: Higher runs first
        enabled: Disabled rules are skipped
    """

    rule_id: str
    name: str
    description: str
    scope: str
    condition: RuleCondition
    action: Callable[[RuleContext], None]
    priority: int = 0
    enabled: bool = True


class RuleEngine:
    """
    Rule engine.

    Features:
    - Registration
    - Scope index
    - Priority ordering
    - Action failures are logged and do not stop other rules

    Example:
        >>> engine = RuleEngine()
        >>> engine.register_rule(Rule(
        ...     rule_id="lodging-entered-room-delivery",
        ...     name="Room delivery",
        ...     description="Enable room delivery on arrival",
        ...     scope="lodging:entered",
        ...     condition=AlwaysCondition(),
        ...     action=enable_room_delivery,
        ... ))
        >>> engine.evaluate(RuleContext(entity=zone, entity_type="lodging:entered", action="entered"))
    """

    def __init__(self):
        self._rules: Dict[str, Rule] = {}
        self._scope_rules: Dict[str, List[str]] = {}

    def register_rule(self, rule: Rule) -> None:
        """
        Register a rule.

        Raises:
            ValueError: If the rule_id already exists.
        """
        if rule.rule_id in self._rules:
            raise ValueError(f"Rule {rule.rule_id} already exists")

        self._rules[rule.rule_id] = rule
        self._scope_rules.setdefault(rule.scope, []).append(rule.rule_id)
        logger.debug(f"Rule {rule.rule_id} registered for scope {rule.scope}")

    def list_rules(self) -> List[Rule]:
        return list(self._rules.values())

    def matching_rules(self, context: RuleContext) -> List[Rule]:
        """Enabled rules of the context's scope whose condition holds, highest priority first."""
        matched = []
        rules = [self._rules[rid] for rid in self._scope_rules.get(context.entity_type, [])]
        rules = sorted((r for r in rules if r.enabled), key=lambda r: r.priority, reverse=True)
        for rule in rules:
            try:
                if rule.condition.evaluate(context):
                    matched.append(rule)
            except Exception as e:
                logger.error(f"Error evaluating rule {rule.rule_id}: {e}", exc_info=True)
        return matched

    def evaluate(self, context: RuleContext) -> List[Rule]:
        """
        Evaluate rules for the context's scope and run matching actions.

        Returns:
            Rules whose actions ran successfully.
        """
        triggered = []

        for rule in self.matching_rules(context):
            try:
                rule.action(context)
                triggered.append(rule)
                logger.info(f"Rule {rule.rule_id} triggered for {context.entity_type}/{context.action}")
            except Exception as e:
                logger.error(f"Error executing rule {rule.rule_id}: {e}", exc_info=True)

        return triggered


__all__ = [
    "RuleContext",
    "RuleCondition",
    "AlwaysCondition",
    "ExpressionCondition",
    "Rule",
    "RuleEngine",
]
