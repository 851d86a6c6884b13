"""
Orchestration engine
Expands a guest intent into ledger operations and state mutations, applies
them all-or-nothing through a saga, and runs geofence trigger rules.

Ordering inside an intent is fixed: reservations, then purchases, then
preferences, then cart changes. Validation of every operation happens
before the first mutation.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
import logging
import threading
import uuid

from guestcore.engine.event_bus import Event, EventBus
from guestcore.engine.rule_engine import AlwaysCondition, ExpressionCondition, Rule, RuleContext, RuleEngine
from guestcore.engine.saga import Saga
from guestcore.scheduler.clock import Clock, SystemClock
from guest_dashboard.errors import CapacityExceeded, DashboardError, InvalidMutation
from guest_dashboard.inventory import InventoryLedger, PurchaseLine, merge_lines
from guest_dashboard.loaders import TriggerAction, TriggerRuleConfig
from guest_dashboard.location import ZONE_ENTERED, ZONE_EXITED
from guest_dashboard.models.domain import (
    CartItem,
    NotificationLevel,
    Reservation,
    ResourceKind,
    StockReason,
    TimeWindow,
)
from guest_dashboard.mutations import (
    CartItemAdded,
    CartItemRemoved,
    FeatureToggled,
    NotificationAdded,
    PreferenceCleared,
    PreferenceSet,
)
from guest_dashboard.reservations import ReservationLedger
from guest_dashboard.state import StateAuthority, notification

logger = logging.getLogger(__name__)

GENERIC_USER_MESSAGE = "Something went wrong, please try again"

_MISSING = object()


# ============== Intent operations ==============

@dataclass(frozen=True)
class ReserveSlot:
    """Book a vehicle or a time-boxed service."""

    resource_kind: ResourceKind
    resource_id: str
    window: TimeWindow
    confirm: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReserveItem:
    """Hold units of a stock-backed item."""

    item_id: str
    quantity: int
    confirm: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PurchaseItems:
    lines: Tuple[PurchaseLine, ...]


@dataclass(frozen=True)
class SetPreference:
    key: str
    value: Any


@dataclass(frozen=True)
class AddToCart:
    item: CartItem


Operation = Union[ReserveSlot, ReserveItem, PurchaseItems, SetPreference, AddToCart]

_PHASES = {
    ReserveSlot: 0,
    ReserveItem: 0,
    PurchaseItems: 1,
    SetPreference: 2,
    AddToCart: 3,
}


@dataclass(frozen=True)
class Intent:
    """A guest action made of one or more operations."""

    holder_id: str
    operations: Tuple[Operation, ...]
    intent_id: str = field(default_factory=lambda: f"INT-{uuid.uuid4().hex[:10]}")


@dataclass(frozen=True)
class IntentError:
    operation: str
    code: str
    message: str
    user_message: str
    alternatives: Tuple[TimeWindow, ...] = ()


@dataclass(frozen=True)
class OrchestrationResult:
    success: bool
    intent_id: str
    reservations: Tuple[Reservation, ...] = ()
    errors: Tuple[IntentError, ...] = ()
    version: int = 0
    rolled_back: bool = False


def _operation_name(index: int, op: Operation) -> str:
    return f"{index}:{type(op).__name__}"


def _to_error(name: str, exc: Exception) -> IntentError:
    if isinstance(exc, DashboardError):
        return IntentError(
            operation=name,
            code=type(exc).__name__,
            message=str(exc),
            user_message=exc.user_message,
            alternatives=tuple(getattr(exc, "alternatives", ())),
        )
    return IntentError(operation=name, code=type(exc).__name__, message=str(exc),
                       user_message=GENERIC_USER_MESSAGE)


class OrchestrationEngine:
    """
    Orchestration engine.

    Collaborators are passed in; when an event bus is given the engine
    subscribes to zone.entered / zone.exited for trigger rules.
    """

    def __init__(self, state: StateAuthority, reservations: ReservationLedger,
                 inventory: InventoryLedger, event_bus: Optional[EventBus] = None,
                 clock: Optional[Clock] = None,
                 trigger_rules: Optional[Iterable[TriggerRuleConfig]] = None):
        self._state = state
        self._reservations = reservations
        self._inventory = inventory
        self._event_bus = event_bus
        self._clock = clock or SystemClock()

        self._rules = RuleEngine()
        self._entered: Set[str] = set()
        self._trigger_lock = threading.Lock()
        self._unsubscribers: List[Callable[[], None]] = []

        for rule in trigger_rules or []:
            self.register_trigger_rule(rule)

        if event_bus is not None:
            self._unsubscribers.append(event_bus.subscribe(ZONE_ENTERED, self.on_zone_transition))
            self._unsubscribers.append(event_bus.subscribe(ZONE_EXITED, self.on_zone_transition))

    # ============== Intents ==============

    def submit_intent(self, intent: Intent) -> OrchestrationResult:
        """
        Validate, then apply an intent.

        Errors never propagate: they are reported in the result with a
        user-facing message, and everything applied so far is compensated.
        """
        if not intent.operations:
            return self._failed(intent, [IntentError("intent", "InvalidMutation",
                                                     "Intent has no operations",
                                                     "Nothing to do")])

        errors = self._validate(intent)
        if errors:
            logger.info(f"Intent {intent.intent_id} rejected: {[e.message for e in errors]}")
            return self._failed(intent, errors)

        saga = Saga(f"intent:{intent.intent_id}")
        ordered = sorted(enumerate(intent.operations), key=lambda pair: _PHASES[type(pair[1])])
        for index, op in ordered:
            action, compensation = self._step_for(intent, op)
            saga.add_step(_operation_name(index, op), action, compensation)

        outcome = saga.execute()
        if not outcome.succeeded:
            error = _to_error(outcome.failed_step, outcome.error)
            if not isinstance(outcome.error, DashboardError):
                logger.error(f"Intent {intent.intent_id} failed unexpectedly: {outcome.error}",
                             exc_info=outcome.error)
            self._notify(NotificationLevel.ERROR, "Request failed", error.user_message)
            return self._failed(intent, [error], rolled_back=outcome.rolled_back)

        reservations = tuple(
            r for r in outcome.results.values() if isinstance(r, Reservation)
        )
        logger.info(f"Intent {intent.intent_id} applied ({len(intent.operations)} operations)")
        return OrchestrationResult(
            success=True,
            intent_id=intent.intent_id,
            reservations=reservations,
            version=self._state.version,
        )

    def _failed(self, intent: Intent, errors: List[IntentError], rolled_back: bool = False) -> OrchestrationResult:
        return OrchestrationResult(
            success=False,
            intent_id=intent.intent_id,
            errors=tuple(errors),
            version=self._state.version,
            rolled_back=rolled_back,
        )

    def _validate(self, intent: Intent) -> List[IntentError]:
        """Check every operation against the ledgers without mutating anything."""
        errors: List[IntentError] = []
        planned_windows: Dict[Tuple[ResourceKind, str], List[TimeWindow]] = {}
        planned_units: Dict[str, int] = {}

        if not intent.holder_id:
            errors.append(IntentError("intent", "InvalidMutation", "holder_id is required",
                                      "Please sign in again"))

        # Reservations first, so purchases see the units they will hold.
        ordered = sorted(enumerate(intent.operations), key=lambda pair: _PHASES.get(type(pair[1]), 99))
        for index, op in ordered:
            name = _operation_name(index, op)
            try:
                if isinstance(op, ReserveSlot):
                    kind = ResourceKind(op.resource_kind)
                    if kind.is_stock_backed:
                        raise InvalidMutation("Use ReserveItem for stock-backed resources")
                    key = (kind, op.resource_id)
                    if not self._reservations.check_available(kind, op.resource_id, op.window):
                        raise CapacityExceeded(
                            f"{kind.value} {op.resource_id} is not available for the requested window",
                            op.resource_id,
                            user_message="This time slot is no longer available",
                            alternatives=self._reservations.suggest_alternatives(kind, op.resource_id, op.window),
                        )
                    for other in planned_windows.get(key, []):
                        if op.window.overlaps(other):
                            raise CapacityExceeded(
                                f"{op.resource_id} requested twice for overlapping windows",
                                op.resource_id,
                                user_message="This time slot is no longer available",
                            )
                    planned_windows.setdefault(key, []).append(op.window)

                elif isinstance(op, ReserveItem):
                    if op.quantity <= 0:
                        raise InvalidMutation(f"Quantity for {op.item_id} must be positive")
                    wanted = planned_units.get(op.item_id, 0) + op.quantity
                    if self._inventory.get_item(op.item_id) is None:
                        raise InvalidMutation(f"Unknown item: {op.item_id}")
                    if wanted > self._inventory.sellable(op.item_id):
                        raise CapacityExceeded(f"Not enough {op.item_id} to hold {wanted}", op.item_id)
                    planned_units[op.item_id] = wanted

                elif isinstance(op, PurchaseItems):
                    lines = merge_lines(op.lines)
                    if not lines:
                        raise InvalidMutation("Purchase has no lines")
                    for line in lines:
                        if self._inventory.get_item(line.item_id) is None:
                            raise InvalidMutation(f"Unknown item: {line.item_id}")
                    problems = self._inventory.validate_batch(lines)
                    if problems:
                        raise CapacityExceeded("; ".join(problems))
                    for line in lines:
                        wanted = planned_units.get(line.item_id, 0) + line.quantity
                        if wanted > self._inventory.sellable(line.item_id):
                            raise CapacityExceeded(
                                f"Not enough {line.item_id} for {wanted} units", line.item_id
                            )
                        planned_units[line.item_id] = wanted

                elif isinstance(op, SetPreference):
                    if not op.key:
                        raise InvalidMutation("Preference key is required")

                elif isinstance(op, AddToCart):
                    if op.item.quantity <= 0:
                        raise InvalidMutation(f"Cart item {op.item.id} needs a positive quantity")
                    if op.item.price < 0:
                        raise InvalidMutation(f"Cart item {op.item.id} has a negative price")

                else:
                    raise InvalidMutation(f"Unknown operation: {type(op).__name__}")
            except DashboardError as e:
                errors.append(_to_error(name, e))
            except (TypeError, ValueError) as e:
                errors.append(_to_error(name, InvalidMutation(str(e))))

        return errors

    def _step_for(self, intent: Intent, op: Operation) -> Tuple[Callable[[], Any], Callable[[Any], None]]:
        if isinstance(op, ReserveSlot):
            def reserve_slot():
                held = self._reservations.place_hold(
                    op.resource_kind, op.resource_id, intent.holder_id,
                    window=op.window, metadata={**op.metadata, "intent_id": intent.intent_id},
                )
                return self._reservations.confirm(held.id) if op.confirm else held
            return reserve_slot, self._release_reservation

        if isinstance(op, ReserveItem):
            def reserve_item():
                held = self._reservations.place_hold(
                    ResourceKind.INVENTORY, op.item_id, intent.holder_id,
                    quantity=op.quantity, metadata={**op.metadata, "intent_id": intent.intent_id},
                )
                return self._reservations.confirm(held.id) if op.confirm else held
            return reserve_item, self._release_reservation

        if isinstance(op, PurchaseItems):
            lines = merge_lines(op.lines)

            def purchase():
                if not self._inventory.purchase_batch(lines):
                    raise CapacityExceeded("Purchase batch no longer fits available stock")
                return lines

            def restock(applied: List[PurchaseLine]) -> None:
                for line in applied:
                    self._inventory.adjust_stock(line.item_id, line.quantity, StockReason.RESTOCK)
            return purchase, restock

        if isinstance(op, SetPreference):
            def set_preference():
                previous = self._state.current_snapshot().preferences.get(op.key, _MISSING)
                self._state.dispatch(PreferenceSet(key=op.key, value=op.value, source="orchestration"))
                return previous

            def restore_preference(previous: Any) -> None:
                if previous is _MISSING:
                    self._state.dispatch(PreferenceCleared(key=op.key, source="orchestration"))
                else:
                    self._state.dispatch(PreferenceSet(key=op.key, value=previous, source="orchestration"))
            return set_preference, restore_preference

        def add_to_cart():
            self._state.dispatch(CartItemAdded(item=op.item, source="orchestration"))
            return op.item

        def remove_from_cart(item: CartItem) -> None:
            self._state.dispatch(CartItemRemoved(cart_item_id=item.id, source="orchestration"))
        return add_to_cart, remove_from_cart

    def _release_reservation(self, reservation: Reservation) -> None:
        self._reservations.cancel(reservation.id, reason="rollback")

    # ============== Geofence triggers ==============

    def register_trigger_rule(self, config: TriggerRuleConfig) -> None:
        """Index a trigger rule under "<zone kind>:<transition>"."""
        self._rules.register_rule(
            Rule(
                rule_id=config.id,
                name=config.id,
                description=config.description,
                scope=f"{config.zone_kind.value}:{config.transition}",
                condition=ExpressionCondition(config.when) if config.when else AlwaysCondition(),
                action=lambda ctx, actions=tuple(config.actions): self._run_actions(actions, ctx),
                priority=config.priority,
                enabled=config.enabled,
            )
        )

    def trigger_rules(self) -> List[Rule]:
        return self._rules.list_rules()

    def on_zone_transition(self, event: Event) -> List[str]:
        """
        Run the trigger rules for a zone.entered / zone.exited event.

        A zone's entry rules fire once until an exit for that zone is seen.

        Returns:
            Ids of rules that ran.
        """
        transition = event.event_type.rsplit(".", 1)[-1]
        zone_id = event.data.get("zone_id")
        zone_kind = event.data.get("zone_kind")
        if not zone_id:
            logger.warning(f"Ignoring zone event without zone_id: {event.data}")
            return []

        with self._trigger_lock:
            if transition == "entered":
                if not zone_kind:
                    logger.warning(f"Ignoring zone entry without zone_kind: {event.data}")
                    return []
                if zone_id in self._entered:
                    logger.debug(f"Zone {zone_id} already entered, triggers skipped")
                    return []
                self._entered.add(zone_id)
            elif transition == "exited":
                if zone_id not in self._entered:
                    return []
                self._entered.discard(zone_id)
                if not zone_kind:
                    logger.warning(f"Zone {zone_id} exited without zone_kind, exit rules skipped")
                    return []
            else:
                return []

        context = RuleContext(
            entity=dict(event.data),
            entity_type=f"{zone_kind}:{transition}",
            action=transition,
            metadata={"event_id": event.event_id},
        )
        fired = self._rules.evaluate(context)
        return [rule.rule_id for rule in fired]

    def _run_actions(self, actions: Tuple[TriggerAction, ...], context: RuleContext) -> None:
        for action in actions:
            if action.type == "enable_feature":
                self._state.dispatch(FeatureToggled(feature=action.feature, enabled=True, source="trigger"))
            elif action.type == "disable_feature":
                self._state.dispatch(FeatureToggled(feature=action.feature, enabled=False, source="trigger"))
            elif action.type == "set_preference":
                self._state.dispatch(PreferenceSet(key=action.key, value=action.value, source="trigger"))
            elif action.type == "notify":
                self._notify(NotificationLevel.INFO, action.title or context.entity.get("zone_name") or "",
                             action.message)

    def _notify(self, level: NotificationLevel, title: str, message: str) -> None:
        self._state.dispatch(
            NotificationAdded(notification=notification(level, title, message, self._clock),
                              source="orchestration")
        )

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()


__all__ = [
    "AddToCart",
    "Intent",
    "IntentError",
    "OrchestrationEngine",
    "OrchestrationResult",
    "PurchaseItems",
    "ReserveItem",
    "ReserveSlot",
    "SetPreference",
]
