"""
Location tracker
Turns a stream of position samples into zone presence and zone.entered /
zone.exited events. Samples are coalesced (the newest wins) and evaluation
is rate-limited.
"""
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Set
import logging
import threading

from guestcore.engine.event_bus import EventBus
from guestcore.scheduler.clock import Clock, SystemClock, epoch_ms
from guest_dashboard.errors import LocationUnavailable
from guest_dashboard.geofence import GeofenceEngine, PositionSample, ProximityResult, Zone
from guest_dashboard.models.domain import ZonePresence
from guest_dashboard.mutations import LocationAvailabilityChanged, ZonePresenceUpdated

logger = logging.getLogger(__name__)

ZONE_ENTERED = "zone.entered"
ZONE_EXITED = "zone.exited"


class LocationProvider(Protocol):
    """Source of position samples (device GPS, test fixture...)."""

    def current_sample(self) -> Optional[PositionSample]:
        """
        Raises:
            LocationUnavailable: permission denied, no fix, timeout
        """
        ...


class LocationTracker:
    """
    Sampling loop.

    offer() may be called from any thread; process() evaluates at most the
    latest pending sample, and no more often than min_interval_seconds.
    """

    def __init__(self, engine: GeofenceEngine, state=None, event_bus: Optional[EventBus] = None,
                 clock: Optional[Clock] = None, min_interval_seconds: float = 0.0):
        self._engine = engine
        self._state = state
        self._event_bus = event_bus
        self._clock = clock or SystemClock()
        self._min_interval_ms = int(min_interval_seconds * 1000)

        self._pending: Optional[PositionSample] = None
        self._last_processed_ms: Optional[int] = None
        self._last_captured_ms: Optional[int] = None
        self._inside: Dict[str, Optional[Zone]] = {}  # zone as it was when entered
        self._last_results: List[ProximityResult] = []
        self._available = True
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._available

    @property
    def inside_zones(self) -> Set[str]:
        with self._lock:
            return set(self._inside)

    @property
    def last_results(self) -> List[ProximityResult]:
        with self._lock:
            return list(self._last_results)

    @property
    def pending(self) -> Optional[PositionSample]:
        with self._lock:
            return self._pending

    def offer(self, sample: PositionSample) -> bool:
        """
        Store a sample in the pending slot.

        Returns:
            False if an equal-or-newer sample is already pending or was
            already processed.
        """
        with self._lock:
            newest = self._pending.captured_at_ms if self._pending else self._last_captured_ms
            if newest is not None and sample.captured_at_ms <= newest:
                logger.debug(f"Dropped out-of-order sample captured at {sample.captured_at_ms}")
                return False
            self._pending = sample
            return True

    def process(self, now: Optional[datetime] = None) -> Optional[List[ProximityResult]]:
        """
        Evaluate the pending sample if the rate limit allows.

        Returns:
            The proximity results, or None when nothing was evaluated.
        """
        now_ms = epoch_ms(now or self._clock.now())
        with self._lock:
            if self._pending is None:
                return None
            if self._last_processed_ms is not None and now_ms - self._last_processed_ms < self._min_interval_ms:
                return None
            sample = self._pending
            self._pending = None
            self._last_processed_ms = now_ms
            self._last_captured_ms = sample.captured_at_ms

        try:
            results = self._engine.evaluate(sample, now_ms=now_ms)
        except LocationUnavailable as e:
            self._mark_unavailable(str(e))
            return None

        return self._apply(sample, results)

    def poll(self, provider: LocationProvider, now: Optional[datetime] = None) -> Optional[List[ProximityResult]]:
        """Pull one sample from the provider and process it."""
        try:
            sample = provider.current_sample()
            if sample is None:
                raise LocationUnavailable("Provider returned no sample")
        except LocationUnavailable as e:
            self._mark_unavailable(str(e))
            return None
        self.offer(sample)
        return self.process(now)

    # ============== Internals ==============

    def _apply(self, sample: PositionSample, results: List[ProximityResult]) -> List[ProximityResult]:
        zones = {z.id: z for z in self._engine.zones.list_zones()}
        current = {r.zone_id for r in results if r.is_inside}

        with self._lock:
            entered = current - set(self._inside)
            exited = {zid: zone for zid, zone in self._inside.items() if zid not in current}
            self._inside = {zid: zones.get(zid, self._inside.get(zid)) for zid in current}
            self._last_results = list(results)
            self._available = True

        if self._state is not None:
            presence = tuple(
                ZonePresence(
                    zone_id=r.zone_id,
                    zone_kind=zones[r.zone_id].kind.value if r.zone_id in zones else "",
                    is_inside=r.is_inside,
                    distance_meters=r.distance_meters,
                    direction=r.direction,
                    eta_minutes=r.eta_minutes,
                )
                for r in results
            )
            self._state.dispatch(ZonePresenceUpdated(presence=presence, source="location"))

        by_id = {r.zone_id: r for r in results}
        for zone_id in sorted(exited):
            self._emit(ZONE_EXITED, zone_id, exited[zone_id], by_id.get(zone_id), sample)
        for zone_id in sorted(entered):
            self._emit(ZONE_ENTERED, zone_id, zones.get(zone_id), by_id.get(zone_id), sample)
        return results

    def _mark_unavailable(self, reason: str) -> None:
        logger.warning(f"Location unavailable: {reason}")
        with self._lock:
            was_available = self._available
            self._available = False
            self._last_results = []
        if self._state is not None and was_available:
            self._state.dispatch(
                LocationAvailabilityChanged(available=False, reason=reason, source="location")
            )

    def _emit(self, event_type: str, zone_id: str, zone: Optional[Zone],
              result: Optional[ProximityResult], sample: PositionSample) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            event_type,
            {
                "zone_id": zone_id,
                "zone_kind": zone.kind.value if zone else None,
                "zone_name": zone.name if zone else None,
                "distance_meters": result.distance_meters if result else None,
                "captured_at_ms": sample.captured_at_ms,
            },
            source="location",
        )
        logger.info(f"{event_type}: {zone_id}")


__all__ = [
    "LocationProvider",
    "LocationTracker",
    "ZONE_ENTERED",
    "ZONE_EXITED",
]
