"""
Runtime composition root
Builds every component from Settings and wires them together. No module
level singletons: callers hold the runtime and pass it where needed.
"""
from typing import Iterable, List, Optional, Sequence, Tuple
import logging

from guestcore.engine.event_bus import EventBus
from guestcore.scheduler.base import ISchedulerBackend
from guestcore.scheduler.clock import Clock, SystemClock
from guest_dashboard.config import Settings
from guest_dashboard.database import create_db_engine, create_session_factory, init_db
from guest_dashboard.geofence import GeofenceEngine, Zone, ZoneRegistry
from guest_dashboard.inventory import InventoryLedger
from guest_dashboard.loaders import (
    TriggerRuleConfig,
    load_catalog_file,
    load_trigger_rules_file,
    load_zones_file,
)
from guest_dashboard.location import LocationProvider, LocationTracker
from guest_dashboard.models.domain import Category, InventoryItem
from guest_dashboard.orchestration import OrchestrationEngine
from guest_dashboard.persistence import (
    AsyncPersistenceQueue,
    PersistenceSink,
    SqlAlchemyPersistenceSink,
)
from guest_dashboard.reservations import ReservationLedger
from guest_dashboard.scheduler_backend import APSchedulerBackend
from guest_dashboard.state import StateAuthority

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB = "inventory-expiry-sweep"
LOCATION_POLL_JOB = "location-poll"


class GuestDashboardRuntime:
    """
    Guest dashboard runtime.

    Everything is injectable for tests (clock, scheduler, persistence sink,
    zones, rules, catalog); anything not given is built from settings.

    Example:
        >>> with GuestDashboardRuntime(Settings()) as runtime:
        ...     runtime.orchestrator.submit_intent(intent)
    """

    def __init__(self, settings: Optional[Settings] = None,
                 clock: Optional[Clock] = None,
                 scheduler: Optional[ISchedulerBackend] = None,
                 persistence: Optional[PersistenceSink] = None,
                 location_provider: Optional[LocationProvider] = None,
                 zones: Optional[Iterable[Zone]] = None,
                 trigger_rules: Optional[Sequence[TriggerRuleConfig]] = None,
                 catalog: Optional[Tuple[List[Category], List[InventoryItem]]] = None):
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or APSchedulerBackend()
        self.location_provider = location_provider
        self._owns_persistence = persistence is None
        self.persistence = persistence if persistence is not None else self._build_persistence()
        self._started = False

        s = self.settings
        self.event_bus = EventBus()
        self.state = StateAuthority(
            clock=self.clock,
            tax_rate=s.TAX_RATE,
            service_fee=s.SERVICE_FEE,
            undo_history_size=s.UNDO_HISTORY_SIZE,
        )
        self.inventory = InventoryLedger(
            state=self.state,
            clock=self.clock,
            persistence=self.persistence,
            expiring_days=s.INVENTORY_EXPIRING_DAYS,
        )
        categories, items = catalog if catalog is not None else load_catalog_file(s.CATALOG_FILE)
        self.inventory.load_catalog(categories, items)

        self.zones = ZoneRegistry(zones if zones is not None else load_zones_file(s.ZONES_FILE))
        self.geofence = GeofenceEngine(
            zones=self.zones,
            clock=self.clock,
            staleness_seconds=s.LOCATION_STALENESS_SECONDS,
            walking_speed_kmh=s.WALKING_SPEED_KMH,
        )
        self.reservations = ReservationLedger(
            inventory=self.inventory,
            state=self.state,
            scheduler=self.scheduler,
            clock=self.clock,
            event_bus=self.event_bus,
            persistence=self.persistence,
            hold_ttl_seconds=s.HOLD_TTL_SECONDS,
        )
        self.tracker = LocationTracker(
            engine=self.geofence,
            state=self.state,
            event_bus=self.event_bus,
            clock=self.clock,
            min_interval_seconds=s.LOCATION_MIN_INTERVAL_SECONDS,
        )
        rules = trigger_rules if trigger_rules is not None else load_trigger_rules_file(s.TRIGGER_RULES_FILE)
        self.orchestrator = OrchestrationEngine(
            state=self.state,
            reservations=self.reservations,
            inventory=self.inventory,
            event_bus=self.event_bus,
            clock=self.clock,
            trigger_rules=rules,
        )
        logger.info(
            f"{s.APP_NAME} runtime built: {len(self.zones)} zones, "
            f"{len(self.inventory.list_items())} items, {len(rules)} trigger rules"
        )

    def _build_persistence(self) -> Optional[PersistenceSink]:
        if not self.settings.PERSISTENCE_ENABLED:
            return None
        engine = create_db_engine(self.settings.DATABASE_URL)
        init_db(engine)
        return AsyncPersistenceQueue(SqlAlchemyPersistenceSink(create_session_factory(engine)))

    # ============== Lifecycle ==============

    def start(self) -> None:
        """Register periodic jobs and start the scheduler."""
        if self._started:
            return
        s = self.settings
        self.inventory.sweep_expiry(write_off=s.EXPIRY_WRITE_OFF)
        self.scheduler.add_job(
            EXPIRY_SWEEP_JOB,
            lambda: self.inventory.sweep_expiry(write_off=s.EXPIRY_WRITE_OFF),
            "interval",
            seconds=s.EXPIRY_SWEEP_SECONDS,
        )
        if self.location_provider is not None:
            self.scheduler.add_job(
                LOCATION_POLL_JOB,
                lambda: self.tracker.poll(self.location_provider),
                "interval",
                seconds=s.LOCATION_POLL_SECONDS,
            )
        if isinstance(self.scheduler, APSchedulerBackend):
            self.scheduler.start()
        self._started = True
        logger.info("Runtime started")

    def close(self) -> None:
        """Cancel every timer and release owned resources."""
        self.scheduler.remove_job(EXPIRY_SWEEP_JOB)
        self.scheduler.remove_job(LOCATION_POLL_JOB)
        self.reservations.close()
        self.orchestrator.close()
        if self._owns_scheduler:
            self.scheduler.shutdown()
        if self._owns_persistence and self.persistence is not None:
            self.persistence.close()
        self._started = False
        logger.info("Runtime closed")

    def __enter__(self) -> "GuestDashboardRuntime":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
