"""
State mutations
One frozen dataclass per mutation kind; StateAuthority has one reducer per
class. `metadata` is the free-form escape hatch every kind carries.
"""
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from guest_dashboard.models.domain import (
    CartItem,
    GuestTier,
    InventoryAlert,
    InventorySummary,
    Notification,
    Reservation,
    ZonePresence,
)


@dataclass(frozen=True)
class Mutation:
    """Base class for everything StateAuthority accepts."""

    metadata: Mapping[str, Any] = field(default_factory=dict, kw_only=True)
    source: str = field(default="", kw_only=True)

    # Mutations that edit guest-owned state can be undone.
    undoable = False


# ============== Cart ==============

@dataclass(frozen=True)
class CartItemAdded(Mutation):
    item: CartItem
    undoable = True


@dataclass(frozen=True)
class CartItemRemoved(Mutation):
    cart_item_id: str
    undoable = True


@dataclass(frozen=True)
class CartItemQuantitySet(Mutation):
    cart_item_id: str
    quantity: int
    undoable = True


@dataclass(frozen=True)
class CartCleared(Mutation):
    undoable = True


@dataclass(frozen=True)
class GuestTierSet(Mutation):
    tier: GuestTier


# ============== Ledgers ==============

@dataclass(frozen=True)
class ReservationUpdated(Mutation):
    """A reservation changed state; terminal states drop it from the active set."""

    reservation: Reservation


@dataclass(frozen=True)
class InventorySynced(Mutation):
    summary: Tuple[InventorySummary, ...]
    alerts: Tuple[InventoryAlert, ...]


# ============== Location ==============

@dataclass(frozen=True)
class ZonePresenceUpdated(Mutation):
    presence: Tuple[ZonePresence, ...]


@dataclass(frozen=True)
class LocationAvailabilityChanged(Mutation):
    available: bool
    reason: str = ""


# ============== Features / preferences ==============

@dataclass(frozen=True)
class FeatureToggled(Mutation):
    feature: str
    enabled: bool


@dataclass(frozen=True)
class PreferenceSet(Mutation):
    key: str
    value: Any
    undoable = True


@dataclass(frozen=True)
class PreferenceCleared(Mutation):
    key: str
    undoable = True


# ============== Notifications ==============

@dataclass(frozen=True)
class NotificationAdded(Mutation):
    notification: Notification


@dataclass(frozen=True)
class NotificationRead(Mutation):
    notification_id: Optional[str] = None  # None marks all as read


# ============== History ==============

@dataclass(frozen=True)
class UndoLast(Mutation):
    """Restore cart and preferences as they were before the last undoable mutation."""


__all__ = [
    "Mutation",
    "CartItemAdded",
    "CartItemRemoved",
    "CartItemQuantitySet",
    "CartCleared",
    "GuestTierSet",
    "ReservationUpdated",
    "InventorySynced",
    "ZonePresenceUpdated",
    "LocationAvailabilityChanged",
    "FeatureToggled",
    "PreferenceSet",
    "PreferenceCleared",
    "NotificationAdded",
    "NotificationRead",
    "UndoLast",
]
