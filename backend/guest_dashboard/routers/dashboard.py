"""
Guest dashboard routes
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from guest_dashboard.errors import (
    CapacityExceeded,
    DashboardError,
    InvalidMutation,
    LocationUnavailable,
    StaleSnapshot,
)
from guest_dashboard.loaders import ZoneConfig
from guest_dashboard.models.domain import ReservationState
from guest_dashboard.models.schemas import (
    IntentRequest,
    PositionIn,
    ReservationModifyIn,
    StockAdjustIn,
    SweepIn,
    alert_to_dict,
    proximity_to_dict,
    result_to_dict,
    snapshot_to_dict,
    zone_to_dict,
)
from guest_dashboard.reservations import reservation_payload
from guest_dashboard.runtime import GuestDashboardRuntime

router = APIRouter(prefix="/dashboard", tags=["Guest dashboard"])

_STATUS_BY_CODE = {
    CapacityExceeded.__name__: status.HTTP_409_CONFLICT,
    StaleSnapshot.__name__: status.HTTP_409_CONFLICT,
    InvalidMutation.__name__: status.HTTP_422_UNPROCESSABLE_ENTITY,
    LocationUnavailable.__name__: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_runtime(request: Request) -> GuestDashboardRuntime:
    return request.app.state.runtime


def _http_error(e: DashboardError) -> HTTPException:
    detail = {"code": type(e).__name__, "message": str(e), "user_message": e.user_message}
    alternatives = getattr(e, "alternatives", ())
    if alternatives:
        detail["alternatives"] = [{"start": w.start.isoformat(), "end": w.end.isoformat()} for w in alternatives]
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(type(e).__name__, status.HTTP_400_BAD_REQUEST),
        detail=detail,
    )


# ============== Snapshot ==============

@router.get("/snapshot")
def get_snapshot(runtime: GuestDashboardRuntime = Depends(get_runtime)):
    """Current state snapshot"""
    return snapshot_to_dict(runtime.state.current_snapshot())


@router.post("/undo")
def undo(runtime: GuestDashboardRuntime = Depends(get_runtime)):
    """Undo the last cart/preference change"""
    try:
        version = runtime.state.undo(strict=True)
    except DashboardError as e:
        raise _http_error(e)
    return {"version": version}


# ============== Intents ==============

@router.post("/intents")
def submit_intent(data: IntentRequest, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    """Submit a guest intent; all of its operations apply or none do"""
    result = runtime.orchestrator.submit_intent(data.to_intent())
    body = result_to_dict(result)
    if not result.success:
        codes = {e.code for e in result.errors}
        if CapacityExceeded.__name__ in codes:
            code = status.HTTP_409_CONFLICT
        else:
            code = status.HTTP_422_UNPROCESSABLE_ENTITY
        raise HTTPException(status_code=code, detail=body)
    return body


# ============== Location ==============

@router.post("/positions")
def post_position(data: PositionIn, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    """Offer a position sample and evaluate it if the rate limit allows"""
    accepted = runtime.tracker.offer(data.to_sample())
    results = runtime.tracker.process()
    if not runtime.tracker.available:
        raise _http_error(LocationUnavailable("Position sample could not be used"))
    return {
        "accepted": accepted,
        "evaluated": results is not None,
        "results": [proximity_to_dict(r) for r in results or []],
        "inside": sorted(runtime.tracker.inside_zones),
    }


@router.get("/zones")
def list_zones(runtime: GuestDashboardRuntime = Depends(get_runtime)):
    return [zone_to_dict(z) for z in runtime.zones.list_zones()]


@router.post("/zones", status_code=status.HTTP_201_CREATED)
def add_zone(data: ZoneConfig, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    try:
        zone = runtime.zones.add_zone(data.to_zone())
    except DashboardError as e:
        raise _http_error(e)
    return zone_to_dict(zone)


@router.delete("/zones/{zone_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_zone(zone_id: str, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    if not runtime.zones.remove_zone(zone_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Zone not found")


# ============== Reservations ==============

@router.get("/reservations")
def list_reservations(
    holder_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    state: Optional[List[ReservationState]] = Query(None),
    runtime: GuestDashboardRuntime = Depends(get_runtime),
):
    records = runtime.reservations.list(holder_id=holder_id, resource_id=resource_id, states=state)
    return [reservation_payload(r) for r in records]


@router.get("/reservations/{reservation_id}")
def get_reservation(reservation_id: str, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    reservation = runtime.reservations.get(reservation_id)
    if reservation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reservation not found")
    return reservation_payload(reservation)


@router.post("/reservations/{reservation_id}/confirm")
def confirm_reservation(reservation_id: str, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    try:
        return reservation_payload(runtime.reservations.confirm(reservation_id))
    except DashboardError as e:
        raise _http_error(e)


@router.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: str, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    try:
        return reservation_payload(runtime.reservations.cancel(reservation_id, reason="guest"))
    except DashboardError as e:
        raise _http_error(e)


@router.post("/reservations/{reservation_id}/modify")
def modify_reservation(reservation_id: str, data: ReservationModifyIn,
                       runtime: GuestDashboardRuntime = Depends(get_runtime)):
    """Reschedule a slot or change the quantity of an item reservation"""
    try:
        return reservation_payload(
            runtime.reservations.modify(reservation_id, window=data.window, quantity=data.quantity)
        )
    except DashboardError as e:
        raise _http_error(e)


@router.post("/reservations/{reservation_id}/complete")
def complete_reservation(reservation_id: str, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    try:
        return reservation_payload(runtime.reservations.complete(reservation_id))
    except DashboardError as e:
        raise _http_error(e)


# ============== Inventory ==============

@router.get("/inventory/alerts")
def list_alerts(item_id: Optional[str] = None, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    return [alert_to_dict(a) for a in runtime.inventory.alerts(item_id)]


@router.post("/inventory/sweep")
def sweep_inventory(data: SweepIn, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    """Re-evaluate expiry alerts, optionally writing off expired stock"""
    return [alert_to_dict(a) for a in runtime.inventory.sweep_expiry(write_off=data.write_off)]


@router.post("/inventory/{item_id}/adjust")
def adjust_stock(item_id: str, data: StockAdjustIn, runtime: GuestDashboardRuntime = Depends(get_runtime)):
    try:
        adjustment = runtime.inventory.adjust_stock(item_id, data.delta, data.reason)
    except DashboardError as e:
        raise _http_error(e)
    return {
        "item_id": adjustment.item_id,
        "reason": adjustment.reason.value,
        "previous_stock": adjustment.previous_stock,
        "new_stock": adjustment.new_stock,
        "requested": adjustment.requested,
        "applied": adjustment.applied,
        "clamped": adjustment.clamped,
    }
