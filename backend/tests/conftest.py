"""
Pytest configuration and shared fixtures
"""
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from guestcore.engine.event_bus import EventBus
from guestcore.scheduler.base import ManualScheduler
from guestcore.scheduler.clock import ManualClock, epoch_ms
from guest_dashboard.config import Settings
from guest_dashboard.geofence import Coordinates, PositionSample, Zone, ZoneKind, destination
from guest_dashboard.inventory import InventoryLedger
from guest_dashboard.loaders import load_trigger_rules_file
from guest_dashboard.main import create_app
from guest_dashboard.models.domain import Category, InventoryItem
from guest_dashboard.persistence import InMemoryPersistenceSink
from guest_dashboard.reservations import ReservationLedger
from guest_dashboard.runtime import GuestDashboardRuntime
from guest_dashboard.state import StateAuthority

HOTEL_CENTER = Coordinates(lat=33.4942, lon=-111.9261)
DINER_CENTER = Coordinates(lat=33.4950, lon=-111.9240)


def make_catalog():
    categories = [
        Category(id="beverages", name="Beverages"),
        Category(id="snacks", name="Snacks"),
        Category(id="amenities", name="Amenities"),
    ]
    items = [
        InventoryItem(id="bev-001", category_id="beverages", name="Sparkling water",
                      price=Decimal("4.00"), stock=24, max_stock=48, min_stock=12),
        InventoryItem(id="snk-001", category_id="snacks", name="Trail mix",
                      price=Decimal("5.00"), stock=20, max_stock=30, min_stock=5),
        InventoryItem(id="amn-001", category_id="amenities", name="Sunscreen",
                      price=Decimal("12.00"), stock=2, max_stock=10, min_stock=0),
        InventoryItem(id="bev-002", category_id="beverages", name="Cold brew",
                      price=Decimal("6.50"), stock=6, max_stock=24, min_stock=2,
                      expiry_date=date(2026, 1, 3)),
    ]
    return categories, items


def make_zones():
    return [
        Zone(id="hotel-main", name="Main hotel", kind=ZoneKind.LODGING,
             center=HOTEL_CENTER, radius_meters=150),
        Zone(id="restaurant-terrace", name="Terrace", kind=ZoneKind.DINING,
             center=DINER_CENTER, radius_meters=60),
    ]


def sample_at(coords: Coordinates, clock, accuracy: float = 5.0, speed=None) -> PositionSample:
    return PositionSample(
        coords=coords,
        accuracy_meters=accuracy,
        captured_at_ms=epoch_ms(clock.now()),
        speed_mps=speed,
    )


def far_from_hotel(meters: float = 2000) -> Coordinates:
    return destination(HOTEL_CENTER, 270.0, meters)


# ============== Core fixtures ==============

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def state(clock):
    return StateAuthority(clock=clock)


@pytest.fixture
def sink():
    return InMemoryPersistenceSink()


@pytest.fixture
def inventory(state, clock, sink):
    ledger = InventoryLedger(state=state, clock=clock, persistence=sink)
    ledger.load_catalog(*make_catalog())
    return ledger


@pytest.fixture
def reservations(inventory, state, scheduler, clock, event_bus, sink):
    ledger = ReservationLedger(
        inventory=inventory,
        state=state,
        scheduler=scheduler,
        clock=clock,
        event_bus=event_bus,
        persistence=sink,
        hold_ttl_seconds=300,
    )
    yield ledger
    ledger.close()


# ============== Runtime / API fixtures ==============

@pytest.fixture
def settings():
    return Settings(
        PERSISTENCE_ENABLED=False,
        LOCATION_MIN_INTERVAL_SECONDS=0,
        HOLD_TTL_SECONDS=300,
    )


@pytest.fixture
def runtime(settings, clock, scheduler, sink):
    rt = GuestDashboardRuntime(
        settings=settings,
        clock=clock,
        scheduler=scheduler,
        persistence=sink,
        zones=make_zones(),
        trigger_rules=load_trigger_rules_file(),
        catalog=make_catalog(),
    )
    yield rt
    rt.close()


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client
