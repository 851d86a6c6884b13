"""
Domain value types shared by the ledgers and the state authority.

All types are frozen; ledgers replace records instead of mutating them so
that snapshots handed to subscribers never change underneath them.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional


# ============== Inventory ==============

class StockReason(str, Enum):
    """Why stock changed"""
    RESTOCK = "restock"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    DAMAGE = "damage"
    EXPIRY = "expiry"


class AlertKind(str, Enum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    EXPIRING = "expiring"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    icon: Optional[str] = None


@dataclass(frozen=True)
class InventoryItem:
    """
    Purchasable item.

    Invariants: 0 <= stock <= max_stock and available == (stock > 0).
    """

    id: str
    category_id: str
    name: str
    price: Decimal
    stock: int
    max_stock: int
    min_stock: int = 0
    unit: str = "each"
    available: bool = True
    room_chargeable: bool = False
    expiry_date: Optional[date] = None
    is_active: bool = True


@dataclass(frozen=True)
class InventoryAlert:
    item_id: str
    kind: AlertKind
    message: str
    raised_at: datetime


@dataclass(frozen=True)
class StockAdjustment:
    """
    Outcome of adjust_stock.

    Attributes:
        requested: Signed change the caller asked for
        applied: Signed change actually applied after clamping
        clamped: True when applied != requested
    """

    item_id: str
    reason: StockReason
    previous_stock: int
    new_stock: int
    requested: int
    applied: int

    @property
    def clamped(self) -> bool:
        return self.applied != self.requested


@dataclass(frozen=True)
class InventorySummary:
    """Per-item view published in snapshots."""

    item_id: str
    name: str
    stock: int
    reserved: int
    sellable: int
    available: bool
    is_active: bool


# ============== Reservations ==============

class ResourceKind(str, Enum):
    """Reservable resource types"""
    VEHICLE = "vehicle"       # exclusive, vehicle-days
    SERVICE = "service"       # exclusive, time-boxed (spa slot, shuttle)
    INVENTORY = "inventory"   # stock-backed units

    @property
    def is_stock_backed(self) -> bool:
        return self is ResourceKind.INVENTORY


class ReservationState(str, Enum):
    REQUESTED = "requested"
    HELD = "held"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def holds_capacity(self) -> bool:
        return self in (ReservationState.HELD, ReservationState.CONFIRMED)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end). Naive datetimes are taken as UTC."""

    start: datetime
    end: datetime

    def __post_init__(self):
        for name in ("start", "end"):
            value = getattr(self, name)
            if value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and self.end > other.start

    @property
    def is_valid(self) -> bool:
        return self.start < self.end


@dataclass(frozen=True)
class Reservation:
    id: str
    resource_kind: ResourceKind
    resource_id: str
    holder_id: str
    state: ReservationState
    window: Optional[TimeWindow] = None
    quantity: int = 0
    hold_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


# ============== Session state ==============

class GuestTier(str, Enum):
    STANDARD = "standard"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class CartItemType(str, Enum):
    RIDE = "ride"
    HOTEL = "hotel"
    FOOD = "food"
    AMENITY = "amenity"
    TRANSPORT = "transport"
    SPA = "spa"
    BUNDLE = "bundle"


@dataclass(frozen=True)
class CartItem:
    id: str
    type: CartItemType
    service_id: str
    name: str
    price: Decimal
    quantity: int = 1
    scheduled_for: Optional[datetime] = None
    added_at: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ZonePresence:
    zone_id: str
    zone_kind: str
    is_inside: bool
    distance_meters: float
    direction: str
    eta_minutes: Optional[float] = None


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    id: str
    level: NotificationLevel
    title: str
    message: str
    created_at: datetime
    read: bool = False
