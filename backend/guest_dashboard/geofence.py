"""
Geofence engine
Great-circle proximity of a guest position to named circular zones.
"""
import math
import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from guestcore.scheduler.clock import Clock, SystemClock, epoch_ms
from guest_dashboard.errors import InvalidMutation, LocationUnavailable

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0
DEFAULT_WALKING_SPEED_KMH = 5.0

_COMPASS_POINTS = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]


class ZoneKind(str, Enum):
    LODGING = "lodging"
    DINING = "dining"
    AIRPORT = "airport"
    VENUE = "venue"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float

    def is_valid(self) -> bool:
        return (
            isinstance(self.lat, (int, float))
            and isinstance(self.lon, (int, float))
            and not math.isnan(self.lat)
            and not math.isnan(self.lon)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lon <= 180.0
        )


@dataclass(frozen=True)
class Zone:
    """A named circular region."""

    id: str
    name: str
    kind: ZoneKind
    center: Coordinates
    radius_meters: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PositionSample:
    """One fix from the location provider."""

    coords: Coordinates
    accuracy_meters: float
    captured_at_ms: int
    speed_mps: Optional[float] = None
    heading_deg: Optional[float] = None


@dataclass(frozen=True)
class ProximityResult:
    zone_id: str
    distance_meters: float
    is_inside: bool
    direction: str
    bearing_degrees: float
    eta_minutes: Optional[float] = None


# ============== Pure geometry ==============

def distance(a: Coordinates, b: Coordinates) -> float:
    """Haversine great-circle distance in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def bearing(a: Coordinates, b: Coordinates) -> float:
    """Initial great-circle bearing from a to b, degrees in [0, 360)."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlon = math.radians(b.lon - a.lon)

    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def destination(origin: Coordinates, bearing_deg: float, distance_meters: float) -> Coordinates:
    """Point reached travelling distance_meters from origin on an initial bearing."""
    angular = distance_meters / EARTH_RADIUS_METERS
    theta = math.radians(bearing_deg)
    lat1 = math.radians(origin.lat)
    lon1 = math.radians(origin.lon)

    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(theta)
    )
    lon2 = lon1 + math.atan2(
        math.sin(theta) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return Coordinates(lat=math.degrees(lat2), lon=lon_deg)


def eta(distance_meters: float, speed_mps: Optional[float] = None,
        walking_speed_kmh: float = DEFAULT_WALKING_SPEED_KMH) -> float:
    """Minutes to cover the distance; walking pace when speed is missing or non-positive."""
    if speed_mps is None or speed_mps <= 0:
        speed_mps = walking_speed_kmh * 1000.0 / 3600.0
    return distance_meters / speed_mps / 60.0


def compass_direction(bearing_deg: float) -> str:
    index = int(((bearing_deg % 360.0) + 22.5) // 45.0) % 8
    return _COMPASS_POINTS[index]


def validate_sample(sample: Optional[PositionSample], now_ms: Optional[int] = None,
                    staleness_ms: Optional[int] = None) -> PositionSample:
    """
    Reject samples geofencing cannot use.

    Raises:
        LocationUnavailable: no sample, invalid coordinates, or older than staleness_ms
    """
    if sample is None:
        raise LocationUnavailable("No position sample available")
    if not sample.coords.is_valid():
        raise LocationUnavailable(f"Invalid coordinates: {sample.coords}")
    if now_ms is not None and staleness_ms is not None:
        age = now_ms - sample.captured_at_ms
        if age > staleness_ms:
            raise LocationUnavailable(f"Position sample is stale ({age} ms old, limit {staleness_ms} ms)")
    return sample


def evaluate(sample: PositionSample, zones: Iterable[Zone],
             walking_speed_kmh: float = DEFAULT_WALKING_SPEED_KMH) -> List[ProximityResult]:
    """Proximity of the sample to every zone, nearest first."""
    results = []
    for zone in zones:
        meters = distance(sample.coords, zone.center)
        heading = bearing(sample.coords, zone.center)
        is_inside = meters <= zone.radius_meters
        results.append(
            ProximityResult(
                zone_id=zone.id,
                distance_meters=meters,
                is_inside=is_inside,
                direction="here" if meters == 0 else compass_direction(heading),
                bearing_degrees=heading,
                eta_minutes=0.0 if is_inside else eta(meters, sample.speed_mps, walking_speed_kmh),
            )
        )
    results.sort(key=lambda r: (r.distance_meters, r.zone_id))
    return results


# ============== Zone registry ==============

class ZoneRegistry:
    """
    Zone set injected into the engine.

    Zones are immutable; update_zone replaces the stored value.
    """

    def __init__(self, zones: Optional[Iterable[Zone]] = None):
        self._zones: Dict[str, Zone] = {}
        self._lock = threading.Lock()
        for zone in zones or []:
            self.add_zone(zone)

    @staticmethod
    def _validate(zone: Zone) -> None:
        if not zone.id:
            raise InvalidMutation("Zone id is required")
        if not zone.center.is_valid():
            raise InvalidMutation(f"Zone {zone.id} has invalid center {zone.center}")
        if zone.radius_meters <= 0:
            raise InvalidMutation(f"Zone {zone.id} radius must be positive")

    def add_zone(self, zone: Zone) -> Zone:
        self._validate(zone)
        with self._lock:
            if zone.id in self._zones:
                raise InvalidMutation(f"Zone {zone.id} already exists")
            self._zones[zone.id] = zone
        logger.info(f"Zone added: {zone.id} ({zone.kind.value}, r={zone.radius_meters}m)")
        return zone

    def update_zone(self, zone_id: str, **changes) -> Zone:
        with self._lock:
            current = self._zones.get(zone_id)
            if current is None:
                raise InvalidMutation(f"Zone {zone_id} not found")
            updated = replace(current, **changes)
            if updated.id != zone_id:
                raise InvalidMutation("Zone id cannot change")
            self._validate(updated)
            self._zones[zone_id] = updated
        logger.info(f"Zone updated: {zone_id}")
        return updated

    def remove_zone(self, zone_id: str) -> bool:
        with self._lock:
            removed = self._zones.pop(zone_id, None)
        if removed is not None:
            logger.info(f"Zone removed: {zone_id}")
        return removed is not None

    def load_zones(self, zones: Iterable[Zone]) -> int:
        """Replace the whole zone set. Returns the number of zones loaded."""
        loaded = {}
        for zone in zones:
            self._validate(zone)
            if zone.id in loaded:
                raise InvalidMutation(f"Duplicate zone id: {zone.id}")
            loaded[zone.id] = zone
        with self._lock:
            self._zones = loaded
        logger.info(f"Loaded {len(loaded)} zones")
        return len(loaded)

    def get_zone(self, zone_id: str) -> Optional[Zone]:
        with self._lock:
            return self._zones.get(zone_id)

    def list_zones(self) -> List[Zone]:
        with self._lock:
            return list(self._zones.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._zones)


class GeofenceEngine:
    """
    Evaluates samples against the injected zone set.

    Stateless apart from configuration; results are recomputed per sample.
    """

    def __init__(self, zones: Optional[ZoneRegistry] = None, clock: Optional[Clock] = None,
                 staleness_seconds: Optional[float] = 120.0,
                 walking_speed_kmh: float = DEFAULT_WALKING_SPEED_KMH):
        self.zones = zones or ZoneRegistry()
        self._clock = clock or SystemClock()
        self._staleness_ms = int(staleness_seconds * 1000) if staleness_seconds is not None else None
        self._walking_speed_kmh = walking_speed_kmh

    def evaluate(self, sample: Optional[PositionSample],
                 zones: Optional[Iterable[Zone]] = None,
                 now_ms: Optional[int] = None) -> List[ProximityResult]:
        """
        Raises:
            LocationUnavailable: if the sample is missing, invalid or stale
        """
        if now_ms is None:
            now_ms = epoch_ms(self._clock.now())
        validate_sample(sample, now_ms, self._staleness_ms)
        candidates = list(zones) if zones is not None else self.zones.list_zones()
        return evaluate(sample, candidates, self._walking_speed_kmh)

    @staticmethod
    def distance(a: Coordinates, b: Coordinates) -> float:
        return distance(a, b)

    @staticmethod
    def bearing(a: Coordinates, b: Coordinates) -> float:
        return bearing(a, b)

    def eta(self, distance_meters: float, speed_mps: Optional[float] = None) -> float:
        return eta(distance_meters, speed_mps, self._walking_speed_kmh)
