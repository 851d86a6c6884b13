"""
EventBus unit tests
"""
from datetime import datetime

import pytest

from guestcore.engine.event_bus import Event, EventBus


class TestEventBus:

    @pytest.fixture
    def bus(self):
        return EventBus()

    @pytest.fixture
    def sample_event(self):
        return Event(
            event_type="zone.entered",
            timestamp=datetime.now(),
            data={"zone_id": "hotel-main"},
            source="test",
        )

    def test_subscribe_and_publish(self, bus, sample_event):
        received = []
        bus.subscribe("zone.entered", received.append)

        result = bus.publish(sample_event)

        assert len(received) == 1
        assert received[0].data["zone_id"] == "hotel-main"
        assert result.subscriber_count == 1
        assert result.success_count == 1

    def test_unsubscribe_callable(self, bus, sample_event):
        received = []
        unsubscribe = bus.subscribe("zone.entered", received.append)
        unsubscribe()

        bus.publish(sample_event)

        assert received == []

    def test_duplicate_subscription_ignored(self, bus, sample_event):
        received = []
        bus.subscribe("zone.entered", received.append)
        bus.subscribe("zone.entered", received.append)

        bus.publish(sample_event)

        assert len(received) == 1

    def test_handler_exception_isolation(self, bus, sample_event):
        """A failing handler does not stop the others"""
        received = []

        def failing(event):
            raise ValueError("boom")

        bus.subscribe("zone.entered", failing)
        bus.subscribe("zone.entered", received.append)

        result = bus.publish(sample_event)

        assert len(received) == 1
        assert result.failure_count == 1
        assert isinstance(result.errors[0][1], ValueError)

    def test_emit_builds_event(self, bus):
        received = []
        bus.subscribe("reservation.held", received.append)

        result = bus.emit("reservation.held", {"id": "RSV-1"}, source="reservations")

        assert result.success_count == 1
        assert received[0].event_type == "reservation.held"
        assert received[0].source == "reservations"
        assert received[0].event_id

    def test_other_event_types_not_delivered(self, bus):
        received = []
        bus.subscribe("zone.exited", received.append)

        result = bus.emit("zone.entered", {})

        assert received == []
        assert result.subscriber_count == 0
