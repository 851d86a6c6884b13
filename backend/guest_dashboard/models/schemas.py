"""
Pydantic schemas
HTTP request validation and JSON views of the runtime objects
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field, model_validator

from guest_dashboard.geofence import Coordinates, PositionSample, ProximityResult, Zone
from guest_dashboard.inventory import PurchaseLine
from guest_dashboard.models.domain import (
    CartItem,
    CartItemType,
    InventoryAlert,
    ResourceKind,
    StockReason,
    TimeWindow,
)
from guest_dashboard.orchestration import (
    AddToCart,
    Intent,
    OrchestrationResult,
    PurchaseItems,
    ReserveItem,
    ReserveSlot,
    SetPreference,
)
from guest_dashboard.reservations import reservation_payload
from guest_dashboard.state import AppState


# ============== Intent Schemas ==============

class ReserveSlotIn(BaseModel):
    op: Literal["reserve_slot"]
    resource_kind: ResourceKind
    resource_id: str
    start: datetime
    end: datetime
    confirm: bool = False

    def to_operation(self) -> ReserveSlot:
        return ReserveSlot(
            resource_kind=self.resource_kind,
            resource_id=self.resource_id,
            window=TimeWindow(start=self.start, end=self.end),
            confirm=self.confirm,
        )


class ReserveItemIn(BaseModel):
    op: Literal["reserve_item"]
    item_id: str
    quantity: int = Field(..., gt=0)
    confirm: bool = False

    def to_operation(self) -> ReserveItem:
        return ReserveItem(item_id=self.item_id, quantity=self.quantity, confirm=self.confirm)


class PurchaseLineIn(BaseModel):
    item_id: str
    quantity: int = Field(..., gt=0)


class PurchaseItemsIn(BaseModel):
    op: Literal["purchase"]
    lines: List[PurchaseLineIn] = Field(..., min_length=1)

    def to_operation(self) -> PurchaseItems:
        return PurchaseItems(
            lines=tuple(PurchaseLine(item_id=l.item_id, quantity=l.quantity) for l in self.lines)
        )


class SetPreferenceIn(BaseModel):
    op: Literal["set_preference"]
    key: str = Field(..., min_length=1)
    value: Any = None

    def to_operation(self) -> SetPreference:
        return SetPreference(key=self.key, value=self.value)


class AddToCartIn(BaseModel):
    op: Literal["add_to_cart"]
    id: Optional[str] = None
    type: CartItemType
    service_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1)
    scheduled_for: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_operation(self) -> AddToCart:
        return AddToCart(
            item=CartItem(
                id=self.id or f"cart-{uuid.uuid4().hex[:10]}",
                type=self.type,
                service_id=self.service_id,
                name=self.name,
                price=self.price,
                quantity=self.quantity,
                scheduled_for=self.scheduled_for,
                metadata=dict(self.metadata),
            )
        )


OperationIn = Annotated[
    Union[ReserveSlotIn, ReserveItemIn, PurchaseItemsIn, SetPreferenceIn, AddToCartIn],
    Field(discriminator="op"),
]


class IntentRequest(BaseModel):
    holder_id: str = Field(..., min_length=1)
    operations: List[OperationIn] = Field(..., min_length=1)

    def to_intent(self) -> Intent:
        return Intent(
            holder_id=self.holder_id,
            operations=tuple(op.to_operation() for op in self.operations),
        )


# ============== Location Schemas ==============

class PositionIn(BaseModel):
    lat: float
    lon: float
    accuracy_meters: float = Field(default=10.0, ge=0)
    captured_at_ms: int
    speed_mps: Optional[float] = None
    heading_deg: Optional[float] = None

    def to_sample(self) -> PositionSample:
        return PositionSample(
            coords=Coordinates(lat=self.lat, lon=self.lon),
            accuracy_meters=self.accuracy_meters,
            captured_at_ms=self.captured_at_ms,
            speed_mps=self.speed_mps,
            heading_deg=self.heading_deg,
        )


# ============== Reservation Schemas ==============

class ReservationModifyIn(BaseModel):
    """New window for a time-boxed reservation, or new quantity for a stock-backed one."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    quantity: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def _check_fields(self) -> "ReservationModifyIn":
        if (self.start is None) != (self.end is None):
            raise ValueError("start and end must be given together")
        if self.start is None and self.quantity is None:
            raise ValueError("give a new window or a new quantity")
        return self

    @property
    def window(self) -> Optional[TimeWindow]:
        if self.start is None:
            return None
        return TimeWindow(start=self.start, end=self.end)


# ============== Inventory Schemas ==============

class StockAdjustIn(BaseModel):
    delta: int
    reason: StockReason


class SweepIn(BaseModel):
    write_off: bool = False


# ============== JSON views ==============

def zone_to_dict(zone: Zone) -> Dict[str, Any]:
    return {
        "id": zone.id,
        "name": zone.name,
        "kind": zone.kind.value,
        "lat": zone.center.lat,
        "lon": zone.center.lon,
        "radius_meters": zone.radius_meters,
        "metadata": dict(zone.metadata),
    }


def proximity_to_dict(result: ProximityResult) -> Dict[str, Any]:
    return {
        "zone_id": result.zone_id,
        "distance_meters": round(result.distance_meters, 2),
        "is_inside": result.is_inside,
        "direction": result.direction,
        "bearing_degrees": round(result.bearing_degrees, 1),
        "eta_minutes": round(result.eta_minutes, 1) if result.eta_minutes is not None else None,
    }


def alert_to_dict(alert: InventoryAlert) -> Dict[str, Any]:
    return {
        "item_id": alert.item_id,
        "kind": alert.kind.value,
        "message": alert.message,
        "raised_at": alert.raised_at.isoformat() if alert.raised_at else None,
    }


def result_to_dict(result: OrchestrationResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "intent_id": result.intent_id,
        "reservations": [reservation_payload(r) for r in result.reservations],
        "errors": [
            {
                "operation": e.operation,
                "code": e.code,
                "message": e.message,
                "user_message": e.user_message,
                "alternatives": [
                    {"start": w.start.isoformat(), "end": w.end.isoformat()} for w in e.alternatives
                ],
            }
            for e in result.errors
        ],
        "version": result.version,
        "rolled_back": result.rolled_back,
    }


def snapshot_to_dict(snapshot: AppState) -> Dict[str, Any]:
    cart = snapshot.cart
    return {
        "version": snapshot.version,
        "cart": {
            "items": [
                {
                    "id": item.id,
                    "type": item.type.value,
                    "service_id": item.service_id,
                    "name": item.name,
                    "price": str(item.price),
                    "quantity": item.quantity,
                }
                for item in cart.items
            ],
            "guest_tier": cart.guest_tier.value,
            "subtotal": str(cart.subtotal),
            "tax": str(cart.tax),
            "fees": str(cart.fees),
            "discounts": str(cart.discounts),
            "total": str(cart.total),
        },
        "active_reservations": [reservation_payload(r) for r in snapshot.active_reservations],
        "zone_presence": {
            zone_id: {
                "zone_kind": p.zone_kind,
                "is_inside": p.is_inside,
                "distance_meters": round(p.distance_meters, 2),
                "direction": p.direction,
                "eta_minutes": p.eta_minutes,
            }
            for zone_id, p in snapshot.zone_presence.items()
        },
        "inventory": {
            item_id: {
                "name": s.name,
                "stock": s.stock,
                "reserved": s.reserved,
                "sellable": s.sellable,
                "available": s.available,
            }
            for item_id, s in snapshot.inventory_summary.items()
        },
        "alerts": [alert_to_dict(a) for a in snapshot.alerts],
        "features": sorted(snapshot.features),
        "preferences": dict(snapshot.preferences),
        "notifications": [
            {
                "id": n.id,
                "level": n.level.value,
                "title": n.title,
                "message": n.message,
                "read": n.read,
            }
            for n in snapshot.notifications
        ],
        "location_available": snapshot.location_available,
    }
