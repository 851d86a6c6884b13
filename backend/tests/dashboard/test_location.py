"""
LocationTracker tests - coalescing, rate limiting, zone transitions
"""
import pytest

from guest_dashboard.errors import LocationUnavailable
from guest_dashboard.geofence import GeofenceEngine, ZoneRegistry
from guest_dashboard.location import ZONE_ENTERED, ZONE_EXITED, LocationTracker

from conftest import DINER_CENTER, HOTEL_CENTER, far_from_hotel, make_zones, sample_at


class StaticProvider:
    def __init__(self, sample=None, error=None):
        self.sample = sample
        self.error = error

    def current_sample(self):
        if self.error is not None:
            raise self.error
        return self.sample


@pytest.fixture
def engine(clock):
    return GeofenceEngine(ZoneRegistry(make_zones()), clock, staleness_seconds=120)


@pytest.fixture
def transitions(event_bus):
    seen = []
    event_bus.subscribe(ZONE_ENTERED, lambda e: seen.append(("entered", e.data["zone_id"])))
    event_bus.subscribe(ZONE_EXITED, lambda e: seen.append(("exited", e.data["zone_id"])))
    return seen


@pytest.fixture
def tracker(engine, state, event_bus, clock):
    return LocationTracker(engine, state=state, event_bus=event_bus, clock=clock, min_interval_seconds=0)


class TestTransitions:
    def test_enter_publishes_event_and_presence(self, tracker, state, clock, transitions):
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        results = tracker.process()

        assert results[0].zone_id == "hotel-main"
        assert transitions == [("entered", "hotel-main")]
        snapshot = state.current_snapshot()
        assert snapshot.is_inside("hotel-main")
        assert snapshot.zone_presence["hotel-main"].zone_kind == "lodging"
        assert tracker.inside_zones == {"hotel-main"}

    def test_staying_inside_does_not_repeat_entry(self, tracker, clock, transitions):
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()
        clock.advance(5)
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()

        assert transitions == [("entered", "hotel-main")]

    def test_leave_publishes_exit(self, tracker, state, clock, transitions):
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()
        clock.advance(5)
        tracker.offer(sample_at(far_from_hotel(), clock))
        tracker.process()

        assert transitions == [("entered", "hotel-main"), ("exited", "hotel-main")]
        assert not state.current_snapshot().is_inside("hotel-main")

    def test_moving_between_zones(self, tracker, clock, transitions):
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()
        clock.advance(5)
        tracker.offer(sample_at(DINER_CENTER, clock))
        tracker.process()

        # exits are published before entries
        assert transitions == [
            ("entered", "hotel-main"),
            ("exited", "hotel-main"),
            ("entered", "restaurant-terrace"),
        ]

    def test_exit_from_removed_zone_keeps_zone_details(self, tracker, engine, event_bus, clock):
        exits = []
        event_bus.subscribe(ZONE_EXITED, lambda e: exits.append(e.data))
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()

        engine.zones.remove_zone("hotel-main")
        clock.advance(5)
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()

        assert [e["zone_id"] for e in exits] == ["hotel-main"]
        assert exits[0]["zone_kind"] == "lodging"
        assert exits[0]["zone_name"] == "Main hotel"
        assert tracker.inside_zones == set()


class TestSampling:
    def test_newest_sample_wins(self, tracker, clock):
        first = sample_at(HOTEL_CENTER, clock)
        clock.advance(1)
        second = sample_at(far_from_hotel(), clock)

        assert tracker.offer(first)
        assert tracker.offer(second)
        assert not tracker.offer(first)
        assert tracker.pending is second

        results = tracker.process()
        assert not any(r.is_inside for r in results)
        assert tracker.pending is None

    def test_already_processed_sample_rejected(self, tracker, clock):
        sample = sample_at(HOTEL_CENTER, clock)
        tracker.offer(sample)
        tracker.process()
        assert not tracker.offer(sample)

    def test_nothing_pending(self, tracker):
        assert tracker.process() is None

    def test_rate_limited(self, engine, state, event_bus, clock):
        tracker = LocationTracker(engine, state=state, event_bus=event_bus, clock=clock, min_interval_seconds=10)
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        assert tracker.process() is not None

        clock.advance(3)
        tracker.offer(sample_at(far_from_hotel(), clock))
        assert tracker.process() is None
        assert tracker.pending is not None

        clock.advance(7)
        assert tracker.process() is not None
        assert tracker.inside_zones == set()


class TestAvailability:
    def test_stale_sample_degrades(self, tracker, state, clock):
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        tracker.process()
        version = state.version

        clock.advance(5)
        tracker.offer(sample_at(HOTEL_CENTER, clock))
        clock.advance(200)
        assert tracker.process() is None

        snapshot = state.current_snapshot()
        assert not tracker.available
        assert not snapshot.location_available
        assert dict(snapshot.zone_presence) == {}
        assert snapshot.version == version + 1
        assert tracker.last_results == []

    def test_poll_provider_error(self, tracker, state):
        provider = StaticProvider(error=LocationUnavailable("permission denied"))
        assert tracker.poll(provider) is None
        assert not state.current_snapshot().location_available

    def test_poll_provider_without_fix(self, tracker, state):
        assert tracker.poll(StaticProvider()) is None
        assert not tracker.available

    def test_unavailable_dispatched_once(self, tracker, state):
        provider = StaticProvider(error=LocationUnavailable("timeout"))
        tracker.poll(provider)
        version = state.version
        tracker.poll(provider)
        assert state.version == version

    def test_recovers_with_fresh_sample(self, tracker, state, clock, transitions):
        tracker.poll(StaticProvider(error=LocationUnavailable("no fix")))
        results = tracker.poll(StaticProvider(sample=sample_at(HOTEL_CENTER, clock)))

        assert results is not None
        assert tracker.available
        assert state.current_snapshot().location_available
        assert transitions == [("entered", "hotel-main")]
