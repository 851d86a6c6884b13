"""
State authority
Single source of truth for the guest session. Mutations are applied one at a
time through a serialized queue; every applied mutation bumps the version
by exactly one and republishes the full immutable snapshot.
"""
from collections import deque
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Mapping, Optional, Tuple, Type
import logging
import threading
import uuid

from guestcore.scheduler.clock import Clock, SystemClock
from guest_dashboard.errors import InvalidMutation, StaleSnapshot
from guest_dashboard.models.domain import (
    CartItem,
    CartItemType,
    GuestTier,
    InventoryAlert,
    InventorySummary,
    Notification,
    Reservation,
    ZonePresence,
)
from guest_dashboard.mutations import (
    CartCleared,
    CartItemAdded,
    CartItemQuantitySet,
    CartItemRemoved,
    FeatureToggled,
    GuestTierSet,
    InventorySynced,
    LocationAvailabilityChanged,
    Mutation,
    NotificationAdded,
    NotificationRead,
    PreferenceCleared,
    PreferenceSet,
    ReservationUpdated,
    UndoLast,
    ZonePresenceUpdated,
)

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_EMPTY: Mapping[str, Any] = MappingProxyType({})

TIER_DISCOUNTS = {
    GuestTier.STANDARD: Decimal("0"),
    GuestTier.SILVER: Decimal("0.05"),
    GuestTier.GOLD: Decimal("0.10"),
    GuestTier.PLATINUM: Decimal("0.15"),
}
BUNDLE_DISCOUNT = Decimal("0.10")
MAX_NOTIFICATIONS = 50

Subscriber = Callable[["AppState"], None]


@dataclass(frozen=True)
class CartState:
    items: Tuple[CartItem, ...] = ()
    guest_tier: GuestTier = GuestTier.STANDARD
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    fees: Decimal = Decimal("0.00")
    discounts: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class AppState:
    """Immutable snapshot of the session."""

    cart: CartState = field(default_factory=CartState)
    active_reservations: Tuple[Reservation, ...] = ()
    zone_presence: Mapping[str, ZonePresence] = field(default_factory=lambda: _EMPTY)
    inventory_summary: Mapping[str, InventorySummary] = field(default_factory=lambda: _EMPTY)
    alerts: Tuple[InventoryAlert, ...] = ()
    features: FrozenSet[str] = frozenset()
    preferences: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    notifications: Tuple[Notification, ...] = ()
    location_available: bool = True
    version: int = 0

    def reservation(self, reservation_id: str) -> Optional[Reservation]:
        for r in self.active_reservations:
            if r.id == reservation_id:
                return r
        return None

    def is_inside(self, zone_id: str) -> bool:
        presence = self.zone_presence.get(zone_id)
        return bool(presence and presence.is_inside)


def calculate_cart(items: Tuple[CartItem, ...], tier: GuestTier,
                   tax_rate: Decimal, service_fee: Decimal) -> CartState:
    """Totals: tax on subtotal, flat fee when non-empty, tier + bundle discounts."""
    subtotal = sum((item.price * item.quantity for item in items), Decimal("0"))
    tax = subtotal * tax_rate
    fees = service_fee if items else Decimal("0")

    rate = TIER_DISCOUNTS.get(tier, Decimal("0"))
    if any(item.type == CartItemType.BUNDLE for item in items):
        rate += BUNDLE_DISCOUNT
    discounts = subtotal * rate

    total = subtotal + tax + fees - discounts
    return CartState(
        items=items,
        guest_tier=tier,
        subtotal=subtotal.quantize(_CENT, ROUND_HALF_UP),
        tax=tax.quantize(_CENT, ROUND_HALF_UP),
        fees=fees.quantize(_CENT, ROUND_HALF_UP),
        discounts=discounts.quantize(_CENT, ROUND_HALF_UP),
        total=total.quantize(_CENT, ROUND_HALF_UP),
    )


class StateAuthority:
    """
    Serialized state store.

    dispatch() may be called from any thread. One mutation is fully applied
    and published before the next is taken. A dispatch issued while another
    drain is running (from a subscriber or another thread) is queued behind
    it instead of nesting or blocking.

    Example:
        >>> authority = StateAuthority()
        >>> unsubscribe = authority.subscribe(lambda snap: print(snap.version))
        >>> authority.dispatch(FeatureToggled(feature="room_delivery", enabled=True))
        1
    """

    def __init__(self, clock: Optional[Clock] = None, tax_rate: float = 0.08,
                 service_fee: float = 2.5, undo_history_size: int = 20,
                 initial_state: Optional[AppState] = None):
        self._clock = clock or SystemClock()
        self._tax_rate = Decimal(str(tax_rate))
        self._service_fee = Decimal(str(service_fee))

        self._state = initial_state or AppState()
        self._subscribers: List[Subscriber] = []
        self._queue: Deque[Mutation] = deque()
        self._draining = False
        self._lock = threading.RLock()
        self._undo_history: Deque[Tuple[CartState, Mapping[str, Any]]] = deque(maxlen=undo_history_size)

        self._reducers: Dict[Type[Mutation], Callable[[AppState, Any], AppState]] = {
            CartItemAdded: self._reduce_cart_item_added,
            CartItemRemoved: self._reduce_cart_item_removed,
            CartItemQuantitySet: self._reduce_cart_item_quantity,
            CartCleared: self._reduce_cart_cleared,
            GuestTierSet: self._reduce_guest_tier,
            ReservationUpdated: self._reduce_reservation_updated,
            InventorySynced: self._reduce_inventory_synced,
            ZonePresenceUpdated: self._reduce_zone_presence,
            LocationAvailabilityChanged: self._reduce_location_availability,
            FeatureToggled: self._reduce_feature_toggled,
            PreferenceSet: self._reduce_preference_set,
            PreferenceCleared: self._reduce_preference_cleared,
            NotificationAdded: self._reduce_notification_added,
            NotificationRead: self._reduce_notification_read,
            UndoLast: self._reduce_undo,
        }

    # ============== Public API ==============

    @property
    def version(self) -> int:
        with self._lock:
            return self._state.version

    def current_snapshot(self) -> AppState:
        with self._lock:
            return self._state

    def can_undo(self) -> bool:
        with self._lock:
            return bool(self._undo_history)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a snapshot subscriber.

        Returns:
            Function removing the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def dispatch(self, mutation: Mutation, expected_version: Optional[int] = None) -> int:
        """
        Apply a mutation.

        The first caller drains the queue and publishes each snapshot with
        the state lock released, so subscribers may read other components.
        A dispatch arriving during a drain, from a subscriber or from another
        thread, is queued and returns at once; the running drain applies it.

        Args:
            mutation: A registered Mutation subclass instance
            expected_version: Optional optimistic-concurrency guard

        Returns:
            The snapshot version this mutation produces.

        Raises:
            InvalidMutation: unknown mutation type
            StaleSnapshot: expected_version given and not current
        """
        if type(mutation) not in self._reducers:
            raise InvalidMutation(f"Unknown mutation type: {type(mutation).__name__}")

        def _check_version() -> None:
            if expected_version is not None and expected_version != self._state.version:
                raise StaleSnapshot(expected_version, self._state.version)

        return self._submit(mutation, _check_version)

    # ============== Internals ==============

    def _submit(self, mutation: Mutation, guard: Optional[Callable[[], None]] = None) -> int:
        with self._lock:
            if guard is not None:
                guard()

            self._queue.append(mutation)
            if self._draining:
                return self._state.version + len(self._queue)
            self._draining = True

        own_version = None
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._draining = False
                        return own_version
                    snapshot = self._apply(self._queue.popleft())
                    subscribers = list(self._subscribers)
                if own_version is None:
                    own_version = snapshot.version
                self._publish(snapshot, subscribers)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _apply(self, mutation: Mutation) -> AppState:
        reducer = self._reducers[type(mutation)]
        previous = self._state
        try:
            reduced = reducer(previous, mutation)
        except InvalidMutation as e:
            # Still counted as applied so versions stay gap-free.
            logger.warning(f"Mutation {type(mutation).__name__} had no effect: {e}")
            reduced = previous

        if mutation.undoable and reduced is not previous:
            self._undo_history.append((previous.cart, previous.preferences))

        self._state = replace(reduced, version=previous.version + 1)
        logger.debug(f"Applied {type(mutation).__name__} -> version {self._state.version}")
        return self._state

    def _publish(self, snapshot: AppState, subscribers: List[Subscriber]) -> None:
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(
                    f"State subscriber {getattr(callback, '__name__', callback)!r} failed: {e}",
                    exc_info=True,
                )

    def _cart(self, items: Tuple[CartItem, ...], tier: GuestTier) -> CartState:
        return calculate_cart(items, tier, self._tax_rate, self._service_fee)

    # ============== Reducers ==============

    def _reduce_cart_item_added(self, state: AppState, m: CartItemAdded) -> AppState:
        if m.item.quantity <= 0:
            raise InvalidMutation("Cart item quantity must be positive")
        item = m.item if m.item.added_at else replace(m.item, added_at=self._clock.now())
        items = tuple(i for i in state.cart.items if i.id != item.id) + (item,)
        return replace(state, cart=self._cart(items, state.cart.guest_tier))

    def _reduce_cart_item_removed(self, state: AppState, m: CartItemRemoved) -> AppState:
        items = tuple(i for i in state.cart.items if i.id != m.cart_item_id)
        if len(items) == len(state.cart.items):
            return state
        return replace(state, cart=self._cart(items, state.cart.guest_tier))

    def _reduce_cart_item_quantity(self, state: AppState, m: CartItemQuantitySet) -> AppState:
        if m.quantity <= 0:
            return self._reduce_cart_item_removed(state, CartItemRemoved(cart_item_id=m.cart_item_id))
        if not any(i.id == m.cart_item_id for i in state.cart.items):
            raise InvalidMutation(f"Cart item {m.cart_item_id} not found")
        items = tuple(
            replace(i, quantity=m.quantity) if i.id == m.cart_item_id else i
            for i in state.cart.items
        )
        return replace(state, cart=self._cart(items, state.cart.guest_tier))

    def _reduce_cart_cleared(self, state: AppState, m: CartCleared) -> AppState:
        if not state.cart.items:
            return state
        return replace(state, cart=self._cart((), state.cart.guest_tier))

    def _reduce_guest_tier(self, state: AppState, m: GuestTierSet) -> AppState:
        return replace(state, cart=self._cart(state.cart.items, m.tier))

    def _reduce_reservation_updated(self, state: AppState, m: ReservationUpdated) -> AppState:
        others = tuple(r for r in state.active_reservations if r.id != m.reservation.id)
        if m.reservation.state.holds_capacity:
            others = others + (m.reservation,)
        return replace(state, active_reservations=others)

    def _reduce_inventory_synced(self, state: AppState, m: InventorySynced) -> AppState:
        return replace(
            state,
            inventory_summary=MappingProxyType({s.item_id: s for s in m.summary}),
            alerts=tuple(m.alerts),
        )

    def _reduce_zone_presence(self, state: AppState, m: ZonePresenceUpdated) -> AppState:
        return replace(
            state,
            zone_presence=MappingProxyType({p.zone_id: p for p in m.presence}),
            location_available=True,
        )

    def _reduce_location_availability(self, state: AppState, m: LocationAvailabilityChanged) -> AppState:
        if m.available:
            return replace(state, location_available=True)
        # Proximity features are disabled; bookings stay untouched.
        return replace(state, location_available=False, zone_presence=_EMPTY)

    def _reduce_feature_toggled(self, state: AppState, m: FeatureToggled) -> AppState:
        features = set(state.features)
        if m.enabled:
            features.add(m.feature)
        else:
            features.discard(m.feature)
        return replace(state, features=frozenset(features))

    def _reduce_preference_set(self, state: AppState, m: PreferenceSet) -> AppState:
        if not m.key:
            raise InvalidMutation("Preference key is required")
        preferences = dict(state.preferences)
        preferences[m.key] = m.value
        return replace(state, preferences=MappingProxyType(preferences))

    def _reduce_preference_cleared(self, state: AppState, m: PreferenceCleared) -> AppState:
        if m.key not in state.preferences:
            return state
        preferences = dict(state.preferences)
        del preferences[m.key]
        return replace(state, preferences=MappingProxyType(preferences))

    def _reduce_notification_added(self, state: AppState, m: NotificationAdded) -> AppState:
        notifications = (m.notification,) + state.notifications
        return replace(state, notifications=notifications[:MAX_NOTIFICATIONS])

    def _reduce_notification_read(self, state: AppState, m: NotificationRead) -> AppState:
        notifications = tuple(
            replace(n, read=True) if m.notification_id in (None, n.id) else n
            for n in state.notifications
        )
        return replace(state, notifications=notifications)

    def _reduce_undo(self, state: AppState, m: UndoLast) -> AppState:
        if not self._undo_history:
            raise InvalidMutation("Nothing to undo")
        cart, preferences = self._undo_history.pop()
        return replace(
            state,
            cart=self._cart(cart.items, state.cart.guest_tier),
            preferences=preferences,
        )

    def undo(self, strict: bool = False) -> int:
        """
        Undo the last cart/preference change; produces a new version.

        By default an empty history is applied as a counted no-op. With
        strict=True it raises InvalidMutation instead; the check and the
        enqueue share one lock hold, and undos already queued count against
        the history.
        """
        def _has_history() -> None:
            queued = sum(1 for m in self._queue if isinstance(m, UndoLast))
            if len(self._undo_history) <= queued:
                raise InvalidMutation("Nothing to undo")

        return self._submit(UndoLast(source="undo"), _has_history if strict else None)


def notification(level, title: str, message: str, clock: Optional[Clock] = None) -> Notification:
    """Build a Notification with a fresh id."""
    return Notification(
        id=uuid.uuid4().hex[:12],
        level=level,
        title=title,
        message=message,
        created_at=(clock or SystemClock()).now(),
    )


__all__ = [
    "AppState",
    "CartState",
    "StateAuthority",
    "calculate_cart",
    "notification",
]
