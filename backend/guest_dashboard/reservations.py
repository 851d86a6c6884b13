"""
Reservation ledger
Lifecycle of holds and bookings over vehicles, time-boxed services and
stock-backed inventory units.

    REQUESTED -> HELD -> CONFIRMED -> COMPLETED
                  |          |
                  v          v
               EXPIRED   CANCELLED   (cancel allowed from any non-final state)

Conflict evaluation is serialized by the ledger lock, so when two requests
race for the last unit the first to pass the check wins and the second is
re-evaluated against the updated ledger.
"""
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import logging
import threading
import uuid

from guestcore.engine.event_bus import EventBus
from guestcore.engine.state_machine import StateMachine, StateMachineConfig, StateTransition
from guestcore.scheduler.base import ISchedulerBackend, ManualScheduler
from guestcore.scheduler.clock import Clock, SystemClock
from guest_dashboard.errors import CapacityExceeded, InvalidMutation
from guest_dashboard.models.domain import (
    Reservation,
    ReservationState,
    ResourceKind,
    TimeWindow,
)
from guest_dashboard.mutations import ReservationUpdated
from guest_dashboard.persistence import PersistenceRecord, PersistenceSink

logger = logging.getLogger(__name__)

DEFAULT_HOLD_TTL_SECONDS = 300

ALTERNATIVE_COUNT = 3
ALTERNATIVE_STEP = timedelta(hours=1)
ALTERNATIVE_SEARCH_STEPS = 24

_BLOCKING = (ReservationState.HELD, ReservationState.CONFIRMED)

_PERSISTED_STATES = (
    ReservationState.CONFIRMED,
    ReservationState.CANCELLED,
    ReservationState.COMPLETED,
)


# ============== State machine ==============

def _reservation_machine_config() -> StateMachineConfig:
    s = ReservationState
    cancellable = (s.REQUESTED, s.HELD, s.CONFIRMED, s.EXPIRED)
    transitions = [
        StateTransition(from_state=s.REQUESTED.value, to_state=s.HELD.value, trigger="hold"),
        StateTransition(from_state=s.HELD.value, to_state=s.CONFIRMED.value, trigger="confirm"),
        StateTransition(from_state=s.HELD.value, to_state=s.EXPIRED.value, trigger="expire"),
        StateTransition(from_state=s.CONFIRMED.value, to_state=s.COMPLETED.value, trigger="complete"),
    ]
    transitions += [
        StateTransition(from_state=state.value, to_state=s.CANCELLED.value, trigger="cancel")
        for state in cancellable
    ]
    return StateMachineConfig(
        name="Reservation",
        states=[state.value for state in s],
        transitions=transitions,
        initial_state=s.REQUESTED.value,
        terminal_states=[s.COMPLETED.value, s.CANCELLED.value],
    )


_MACHINE_CONFIG = _reservation_machine_config()


def _hold_job_id(reservation_id: str) -> str:
    return f"hold-expiry:{reservation_id}"


class ReservationLedger:
    """
    Reservation ledger.

    Collaborators are injected:
    - inventory: InventoryLedger backing INVENTORY reservations
    - state: StateAuthority receiving ReservationUpdated mutations
    - scheduler/clock: hold TTL timers (owned by this ledger, cleared by close())
    - event_bus: receives "reservation.<state>" events
    - persistence: receives confirmed/cancelled/completed records
    """

    def __init__(self, inventory=None, state=None,
                 scheduler: Optional[ISchedulerBackend] = None,
                 clock: Optional[Clock] = None,
                 event_bus: Optional[EventBus] = None,
                 persistence: Optional[PersistenceSink] = None,
                 hold_ttl_seconds: int = DEFAULT_HOLD_TTL_SECONDS):
        if hold_ttl_seconds <= 0:
            raise ValueError("hold_ttl_seconds must be positive")
        self._inventory = inventory
        self._state = state
        self._clock = clock or getattr(scheduler, "clock", None) or SystemClock()
        self._scheduler = scheduler or ManualScheduler(self._clock)
        self._event_bus = event_bus
        self._persistence = persistence
        self._hold_ttl = timedelta(seconds=hold_ttl_seconds)

        self._records: Dict[str, Reservation] = {}
        self._machines: Dict[str, StateMachine] = {}
        self._timers: Dict[str, str] = {}  # reservation_id -> job_id
        self._lock = threading.RLock()
        self._closed = False

    @property
    def hold_ttl(self) -> timedelta:
        return self._hold_ttl

    # ============== Queries ==============

    def get(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            return self._records.get(reservation_id)

    def list(self, holder_id: Optional[str] = None, resource_id: Optional[str] = None,
             states: Optional[Iterable[ReservationState]] = None) -> List[Reservation]:
        wanted = set(states) if states is not None else None
        with self._lock:
            records = list(self._records.values())
        return [
            r for r in records
            if (holder_id is None or r.holder_id == holder_id)
            and (resource_id is None or r.resource_id == resource_id)
            and (wanted is None or r.state in wanted)
        ]

    def active(self) -> List[Reservation]:
        """HELD and CONFIRMED reservations."""
        return self.list(states=(ReservationState.HELD, ReservationState.CONFIRMED))

    def pending_timers(self) -> List[str]:
        with self._lock:
            return list(self._timers.values())

    # ============== Conflict checks ==============

    def _blocking(self, kind: ResourceKind, resource_id: str, states: Tuple[ReservationState, ...],
                  exclude_id: Optional[str]) -> List[Reservation]:
        return [
            r for r in self._records.values()
            if r.resource_kind == kind
            and r.resource_id == resource_id
            and r.state in states
            and r.id != exclude_id
        ]

    def _check_capacity(self, kind: ResourceKind, resource_id: str, window: Optional[TimeWindow],
                        quantity: int, states: Tuple[ReservationState, ...],
                        exclude_id: Optional[str] = None) -> None:
        """
        Raises:
            CapacityExceeded: the candidate conflicts with a blocking reservation
        """
        blocking = self._blocking(kind, resource_id, states, exclude_id)

        if kind.is_stock_backed:
            item = self._inventory.get_item(resource_id) if self._inventory else None
            if item is None or not item.is_active:
                raise CapacityExceeded(f"Item {resource_id} is not available", resource_id)
            committed = sum(r.quantity for r in blocking)
            if committed + quantity > item.stock:
                raise CapacityExceeded(
                    f"Item {resource_id}: {committed} committed + {quantity} requested exceeds stock {item.stock}",
                    resource_id,
                )
            return

        for existing in blocking:
            if window.overlaps(existing.window):
                raise CapacityExceeded(
                    f"{kind.value} {resource_id} is already booked "
                    f"[{existing.window.start.isoformat()}, {existing.window.end.isoformat()})",
                    resource_id,
                    user_message="This time slot is no longer available",
                    alternatives=self._alternatives(kind, resource_id, window, exclude_id),
                )

    def _window_free(self, kind: ResourceKind, resource_id: str, window: TimeWindow,
                     exclude_id: Optional[str]) -> bool:
        return not any(
            window.overlaps(r.window) for r in self._blocking(kind, resource_id, _BLOCKING, exclude_id)
        )

    def _alternatives(self, kind: ResourceKind, resource_id: str, window: TimeWindow,
                      exclude_id: Optional[str] = None, count: int = ALTERNATIVE_COUNT) -> List[TimeWindow]:
        found: List[TimeWindow] = []
        for step in range(1, ALTERNATIVE_SEARCH_STEPS + 1):
            shift = ALTERNATIVE_STEP * step
            candidate = TimeWindow(start=window.start + shift, end=window.end + shift)
            if self._window_free(kind, resource_id, candidate, exclude_id):
                found.append(candidate)
                if len(found) == count:
                    break
        return found

    def suggest_alternatives(self, kind: ResourceKind, resource_id: str, window: TimeWindow,
                             count: int = ALTERNATIVE_COUNT,
                             exclude_id: Optional[str] = None) -> List[TimeWindow]:
        """
        Free windows of the same length, searched forward in hourly steps.

        Stock-backed resources have no windows, so nothing is suggested.
        """
        kind = ResourceKind(kind)
        if kind.is_stock_backed:
            return []
        self._validate_shape(kind, resource_id, window, 0)
        with self._lock:
            return self._alternatives(kind, resource_id, window, exclude_id, count)

    def check_available(self, kind: ResourceKind, resource_id: str, window: Optional[TimeWindow] = None,
                        quantity: int = 0, exclude_id: Optional[str] = None) -> bool:
        """Read-only: would a hold for this candidate pass right now?"""
        kind = ResourceKind(kind)
        self._validate_shape(kind, resource_id, window, quantity)
        with self._lock:
            try:
                self._check_capacity(
                    kind, resource_id, window, quantity,
                    (ReservationState.HELD, ReservationState.CONFIRMED), exclude_id,
                )
            except CapacityExceeded:
                return False
        return True

    def remaining_capacity(self, item_id: str) -> int:
        """Units of a stock-backed resource not held or confirmed."""
        with self._lock:
            item = self._inventory.get_item(item_id) if self._inventory else None
            if item is None:
                return 0
            committed = sum(
                r.quantity for r in self._blocking(
                    ResourceKind.INVENTORY, item_id,
                    (ReservationState.HELD, ReservationState.CONFIRMED), None,
                )
            )
            return max(0, item.stock - committed)

    def _validate_shape(self, kind: ResourceKind, resource_id: str,
                        window: Optional[TimeWindow], quantity: int) -> None:
        if not resource_id:
            raise InvalidMutation("resource_id is required")
        if kind.is_stock_backed:
            if quantity <= 0:
                raise InvalidMutation("Stock-backed reservations need a positive quantity")
            if self._inventory is None:
                raise InvalidMutation("No inventory ledger configured")
        else:
            if window is None or not window.is_valid:
                raise InvalidMutation(f"{kind.value} reservations need a window with start < end")

    # ============== Lifecycle ==============

    def request(self, resource_kind: ResourceKind, resource_id: str, holder_id: str,
                window: Optional[TimeWindow] = None, quantity: int = 0,
                metadata: Optional[Mapping[str, Any]] = None) -> Reservation:
        """Create a REQUESTED reservation (no capacity taken yet)."""
        kind = ResourceKind(resource_kind)
        self._validate_shape(kind, resource_id, window, quantity)
        if not holder_id:
            raise InvalidMutation("holder_id is required")

        now = self._clock.now()
        reservation = Reservation(
            id=f"RSV-{uuid.uuid4().hex[:12]}",
            resource_kind=kind,
            resource_id=resource_id,
            holder_id=holder_id,
            state=ReservationState.REQUESTED,
            window=None if kind.is_stock_backed else window,
            quantity=quantity if kind.is_stock_backed else 0,
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._ensure_open()
            self._records[reservation.id] = reservation
            self._machines[reservation.id] = StateMachine(_MACHINE_CONFIG)
            self._publish_state(reservation)
        logger.debug(f"Reservation requested: {reservation.id} ({kind.value} {resource_id})")
        return reservation

    def hold(self, reservation_id: str, ttl_seconds: Optional[float] = None) -> Reservation:
        """
        REQUESTED -> HELD.

        Raises:
            CapacityExceeded: overlap (time-boxed) or insufficient stock
            InvalidMutation: unknown reservation or not in REQUESTED
        """
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise InvalidMutation("ttl_seconds must be positive")
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self._hold_ttl
        with self._lock:
            self._ensure_open()
            current = self._require(reservation_id)
            if current.state == ReservationState.HELD:
                return current
            if current.state != ReservationState.REQUESTED:
                raise InvalidMutation(f"Reservation {reservation_id} is {current.state.value}, cannot hold")

            self._check_capacity(
                current.resource_kind, current.resource_id, current.window, current.quantity,
                (ReservationState.HELD, ReservationState.CONFIRMED), reservation_id,
            )

            if current.resource_kind.is_stock_backed:
                self._inventory.reserve_units(current.resource_id, current.quantity)

            expires_at = self._clock.now() + ttl
            held = self._transition(current, ReservationState.HELD, "hold", hold_expires_at=expires_at)
            self._schedule_expiry(reservation_id, expires_at)

        logger.info(f"Reservation {reservation_id} held until {expires_at.isoformat()}")
        self._emit(held)
        return held

    def place_hold(self, resource_kind: ResourceKind, resource_id: str, holder_id: str,
                   window: Optional[TimeWindow] = None, quantity: int = 0,
                   metadata: Optional[Mapping[str, Any]] = None,
                   ttl_seconds: Optional[float] = None) -> Reservation:
        """request() + hold(); a request that fails the check is cancelled."""
        requested = self.request(resource_kind, resource_id, holder_id, window, quantity, metadata)
        try:
            return self.hold(requested.id, ttl_seconds)
        except CapacityExceeded:
            self.cancel(requested.id, reason="capacity_exceeded")
            raise

    def confirm(self, reservation_id: str) -> Reservation:
        """
        HELD -> CONFIRMED; confirming a CONFIRMED reservation returns it unchanged.

        Capacity is re-evaluated against CONFIRMED reservations. The losing
        hold is cancelled and CapacityExceeded raised.

        Raises:
            CapacityExceeded: another confirmation took the capacity first
            InvalidMutation: not HELD (or the hold already lapsed)
        """
        with self._lock:
            self._ensure_open()
            current = self._require(reservation_id)
            if current.state == ReservationState.CONFIRMED:
                return current
            if current.state != ReservationState.HELD:
                raise InvalidMutation(
                    f"Reservation {reservation_id} is {current.state.value}, cannot confirm",
                    user_message="This hold has ended, please book again",
                )

            failure: Optional[Exception] = None
            if current.hold_expires_at is not None and current.hold_expires_at <= self._clock.now():
                ended = self._expire_locked(current)
                failure = InvalidMutation(
                    f"Hold {reservation_id} lapsed before confirmation",
                    user_message="This hold has expired, please book again",
                )
            else:
                try:
                    self._check_capacity(
                        current.resource_kind, current.resource_id, current.window, current.quantity,
                        (ReservationState.CONFIRMED,), reservation_id,
                    )
                except CapacityExceeded as e:
                    ended = self._cancel_locked(current, "capacity_exceeded")
                    failure = e

            if failure is None:
                self._cancel_timer(reservation_id)
                confirmed = self._transition(
                    current, ReservationState.CONFIRMED, "confirm", hold_expires_at=None
                )

        if failure is not None:
            logger.warning(f"Confirmation of {reservation_id} failed: {failure}")
            self._emit(ended)
            raise failure

        logger.info(f"Reservation {reservation_id} confirmed")
        self._emit(confirmed)
        return confirmed

    def cancel(self, reservation_id: str, reason: str = "") -> Reservation:
        """
        Cancel from any state except COMPLETED; cancelling twice is a no-op.

        Raises:
            InvalidMutation: unknown reservation or already COMPLETED
        """
        with self._lock:
            current = self._require(reservation_id)
            if current.state == ReservationState.CANCELLED:
                return current
            if self._machines[reservation_id].is_terminal:
                raise InvalidMutation(f"Reservation {reservation_id} is {current.state.value}, cannot cancel")
            cancelled = self._cancel_locked(current, reason)

        logger.info(f"Reservation {reservation_id} cancelled ({reason or 'no reason'})")
        self._emit(cancelled)
        return cancelled

    def modify(self, reservation_id: str, window: Optional[TimeWindow] = None,
               quantity: Optional[int] = None) -> Reservation:
        """
        Reschedule a time-boxed reservation or change a stock-backed quantity.

        HELD and CONFIRMED reservations are re-checked against every other
        blocking reservation under the ledger lock. On conflict the
        reservation is left untouched.

        Raises:
            CapacityExceeded: the new window overlaps or the new quantity exceeds stock
            InvalidMutation: unknown reservation, ended reservation, or a change
                that does not fit the resource kind
        """
        with self._lock:
            self._ensure_open()
            current = self._require(reservation_id)
            if current.state not in (ReservationState.REQUESTED, *_BLOCKING):
                raise InvalidMutation(f"Reservation {reservation_id} is {current.state.value}, cannot modify")

            kind = current.resource_kind
            if kind.is_stock_backed:
                if window is not None or quantity is None:
                    raise InvalidMutation("Stock-backed reservations can only change quantity")
                new_window, new_quantity = None, quantity
            else:
                if quantity is not None or window is None:
                    raise InvalidMutation(f"{kind.value} reservations can only change window")
                new_window, new_quantity = window, 0
            self._validate_shape(kind, current.resource_id, new_window, new_quantity)

            if current.state.holds_capacity:
                self._check_capacity(kind, current.resource_id, new_window, new_quantity, _BLOCKING, reservation_id)
                delta = new_quantity - current.quantity
                if kind.is_stock_backed and delta > 0:
                    self._inventory.reserve_units(current.resource_id, delta)
                elif kind.is_stock_backed and delta < 0:
                    self._inventory.release_units(current.resource_id, -delta)

            metadata = dict(current.metadata)
            metadata["modifications"] = metadata.get("modifications", 0) + 1
            modified = replace(
                current, window=new_window, quantity=new_quantity,
                updated_at=self._clock.now(), metadata=metadata,
            )
            self._records[reservation_id] = modified
            self._publish_state(modified)
            self._persist(modified, kind="reservation.modified")

        logger.info(f"Reservation {reservation_id} modified")
        self._emit(modified, "reservation.modified")
        return modified

    def complete(self, reservation_id: str) -> Reservation:
        """
        CONFIRMED -> COMPLETED. Stock-backed units are purchased from inventory.

        Raises:
            InvalidMutation: not CONFIRMED
        """
        with self._lock:
            current = self._require(reservation_id)
            if current.state == ReservationState.COMPLETED:
                return current
            if current.state != ReservationState.CONFIRMED:
                raise InvalidMutation(f"Reservation {reservation_id} is {current.state.value}, cannot complete")
            if current.resource_kind.is_stock_backed:
                self._inventory.fulfil_reserved(current.resource_id, current.quantity)
            completed = self._transition(current, ReservationState.COMPLETED, "complete")

        logger.info(f"Reservation {reservation_id} completed")
        self._emit(completed)
        return completed

    def expire(self, reservation_id: str) -> bool:
        """
        Timer callback: HELD -> EXPIRED.

        Returns:
            False when the reservation already left HELD (confirmed or
            cancelled first), which makes a late timer a no-op.
        """
        with self._lock:
            current = self._records.get(reservation_id)
            if current is None or current.state != ReservationState.HELD:
                self._timers.pop(reservation_id, None)
                return False
            expired = self._expire_locked(current)

        logger.info(f"Reservation {reservation_id} expired")
        self._emit(expired)
        return True

    def expire_due(self, now: Optional[datetime] = None) -> List[Reservation]:
        """Expire every HELD reservation whose TTL has elapsed."""
        now = now or self._clock.now()
        with self._lock:
            due = [
                r.id for r in self._records.values()
                if r.state == ReservationState.HELD and r.hold_expires_at is not None and r.hold_expires_at <= now
            ]
        expired = []
        for reservation_id in due:
            if self.expire(reservation_id):
                expired.append(self._records[reservation_id])
        return expired

    def close(self) -> None:
        """Cancel every TTL timer owned by this ledger."""
        with self._lock:
            for job_id in list(self._timers.values()):
                self._scheduler.remove_job(job_id)
            self._timers.clear()
            self._closed = True
        logger.info("Reservation ledger closed")

    # ============== Internals ==============

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidMutation("Reservation ledger is closed")

    def _require(self, reservation_id: str) -> Reservation:
        reservation = self._records.get(reservation_id)
        if reservation is None:
            raise InvalidMutation(f"Unknown reservation: {reservation_id}")
        return reservation

    def _transition(self, current: Reservation, target: ReservationState, trigger: str,
                    **changes) -> Reservation:
        machine = self._machines[current.id]
        if not machine.transition_to(target.value, trigger):
            raise InvalidMutation(
                f"Reservation {current.id}: {current.state.value} -> {target.value} not allowed"
            )
        updated = replace(current, state=target, updated_at=self._clock.now(), **changes)
        self._records[current.id] = updated
        self._publish_state(updated)
        self._persist(updated)
        return updated

    def _release(self, reservation: Reservation) -> None:
        if reservation.state.holds_capacity and reservation.resource_kind.is_stock_backed:
            self._inventory.release_units(reservation.resource_id, reservation.quantity)

    def _cancel_locked(self, current: Reservation, reason: str) -> Reservation:
        self._cancel_timer(current.id)
        self._release(current)
        metadata = dict(current.metadata)
        if reason:
            metadata["cancel_reason"] = reason
        return self._transition(
            current, ReservationState.CANCELLED, "cancel", hold_expires_at=None, metadata=metadata
        )

    def _expire_locked(self, current: Reservation) -> Reservation:
        self._cancel_timer(current.id)
        self._release(current)
        return self._transition(current, ReservationState.EXPIRED, "expire", hold_expires_at=None)

    def _schedule_expiry(self, reservation_id: str, expires_at: datetime) -> None:
        job_id = _hold_job_id(reservation_id)
        self._scheduler.add_job(
            job_id,
            lambda: self.expire(reservation_id),
            "date",
            run_date=expires_at,
        )
        self._timers[reservation_id] = job_id

    def _cancel_timer(self, reservation_id: str) -> None:
        job_id = self._timers.pop(reservation_id, None)
        if job_id is not None:
            self._scheduler.remove_job(job_id)

    def _publish_state(self, reservation: Reservation) -> None:
        if self._state is not None:
            self._state.dispatch(ReservationUpdated(reservation=reservation, source="reservations"))

    def _persist(self, reservation: Reservation, kind: Optional[str] = None) -> None:
        if self._persistence is None or reservation.state not in _PERSISTED_STATES:
            return
        try:
            self._persistence.write(
                PersistenceRecord(
                    kind=kind or f"reservation.{reservation.state.value}",
                    entity_type="reservation",
                    entity_id=reservation.id,
                    payload=reservation_payload(reservation),
                    occurred_at=reservation.updated_at or self._clock.now(),
                )
            )
        except Exception as e:
            logger.error(f"Failed to enqueue persistence for {reservation.id}: {e}", exc_info=True)

    def _emit(self, reservation: Reservation, event_type: Optional[str] = None) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            event_type or f"reservation.{reservation.state.value}",
            reservation_payload(reservation),
            source="reservations",
        )


def reservation_payload(reservation: Reservation) -> Dict[str, Any]:
    """JSON-friendly view of a reservation."""
    return {
        "id": reservation.id,
        "resource_kind": reservation.resource_kind.value,
        "resource_id": reservation.resource_id,
        "holder_id": reservation.holder_id,
        "state": reservation.state.value,
        "window": (
            {"start": reservation.window.start.isoformat(), "end": reservation.window.end.isoformat()}
            if reservation.window else None
        ),
        "quantity": reservation.quantity,
        "hold_expires_at": reservation.hold_expires_at.isoformat() if reservation.hold_expires_at else None,
        "metadata": dict(reservation.metadata),
    }
