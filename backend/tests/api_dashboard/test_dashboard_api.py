"""
Guest dashboard API tests
Covers the /dashboard endpoints end to end through the runtime
"""
from datetime import timedelta

from fastapi.testclient import TestClient

from guestcore.scheduler.clock import epoch_ms

from conftest import HOTEL_CENTER, far_from_hotel


def slot_json(clock, start_hours=1, end_hours=2):
    now = clock.now()
    return {
        "start": (now + timedelta(hours=start_hours)).isoformat(),
        "end": (now + timedelta(hours=end_hours)).isoformat(),
    }


def reserve_spa(client, clock, holder="guest-1", start_hours=1, end_hours=2, confirm=False):
    return client.post("/dashboard/intents", json={
        "holder_id": holder,
        "operations": [{
            "op": "reserve_slot",
            "resource_kind": "service",
            "resource_id": "spa-1",
            "confirm": confirm,
            **slot_json(clock, start_hours, end_hours),
        }],
    })


class TestHealth:
    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root(self, client: TestClient):
        data = client.get("/").json()
        assert data["version"] == "0.1.0"


class TestSnapshot:
    def test_snapshot(self, client: TestClient):
        response = client.get("/dashboard/snapshot")
        assert response.status_code == 200
        data = response.json()
        assert data["inventory"]["bev-001"]["stock"] == 24
        assert data["cart"]["total"] == "0.00"
        assert data["location_available"] is True

    def test_undo_nothing(self, client: TestClient):
        response = client.post("/dashboard/undo")
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "InvalidMutation"

    def test_undo_preference(self, client: TestClient):
        client.post("/dashboard/intents", json={
            "holder_id": "guest-1",
            "operations": [{"op": "set_preference", "key": "pillow", "value": "firm"}],
        })
        assert client.get("/dashboard/snapshot").json()["preferences"] == {"pillow": "firm"}

        response = client.post("/dashboard/undo")
        assert response.status_code == 200
        assert client.get("/dashboard/snapshot").json()["preferences"] == {}


class TestIntents:
    def test_reserve_slot(self, client: TestClient, clock):
        response = reserve_spa(client, clock)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["reservations"][0]["state"] == "held"
        assert data["reservations"][0]["hold_expires_at"] is not None

    def test_conflict_returns_409(self, client: TestClient, clock):
        reserve_spa(client, clock, start_hours=1, end_hours=3)
        response = reserve_spa(client, clock, holder="guest-2", start_hours=2, end_hours=4)

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["success"] is False
        assert detail["errors"][0]["code"] == "CapacityExceeded"
        assert detail["errors"][0]["user_message"] == "This time slot is no longer available"

    def test_conflict_lists_alternatives(self, client: TestClient, clock):
        reserve_spa(client, clock, start_hours=1, end_hours=3)
        response = reserve_spa(client, clock, holder="guest-2", start_hours=2, end_hours=3)

        alternatives = response.json()["detail"]["errors"][0]["alternatives"]
        assert alternatives[0] == slot_json(clock, 3, 4)
        assert len(alternatives) == 3

    def test_naive_times_conflict_with_booking(self, client: TestClient, clock):
        reserve_spa(client, clock, start_hours=1, end_hours=3, confirm=True)
        now = clock.now().replace(tzinfo=None)

        response = client.post("/dashboard/intents", json={
            "holder_id": "guest-2",
            "operations": [{
                "op": "reserve_slot",
                "resource_kind": "service",
                "resource_id": "spa-1",
                "start": (now + timedelta(hours=2)).isoformat(),
                "end": (now + timedelta(hours=4)).isoformat(),
            }],
        })

        assert response.status_code == 409
        assert response.json()["detail"]["errors"][0]["code"] == "CapacityExceeded"

    def test_purchase_and_cart(self, client: TestClient):
        response = client.post("/dashboard/intents", json={
            "holder_id": "guest-1",
            "operations": [
                {"op": "purchase", "lines": [{"item_id": "bev-001", "quantity": 20}]},
                {"op": "add_to_cart", "type": "food", "service_id": "menu-7",
                 "name": "Club sandwich", "price": "14.00"},
            ],
        })
        assert response.status_code == 200

        snapshot = client.get("/dashboard/snapshot").json()
        assert snapshot["inventory"]["bev-001"]["stock"] == 4
        assert [a["kind"] for a in snapshot["alerts"] if a["item_id"] == "bev-001"] == ["low_stock"]
        assert snapshot["cart"]["subtotal"] == "14.00"

    def test_unknown_item_returns_422(self, client: TestClient):
        response = client.post("/dashboard/intents", json={
            "holder_id": "guest-1",
            "operations": [{"op": "reserve_item", "item_id": "nope", "quantity": 1}],
        })
        assert response.status_code == 422
        assert response.json()["detail"]["errors"][0]["code"] == "InvalidMutation"

    def test_malformed_operation(self, client: TestClient):
        response = client.post("/dashboard/intents", json={
            "holder_id": "guest-1",
            "operations": [{"op": "teleport"}],
        })
        assert response.status_code == 422

    def test_empty_operations(self, client: TestClient):
        response = client.post("/dashboard/intents", json={"holder_id": "guest-1", "operations": []})
        assert response.status_code == 422


class TestPositions:
    def position(self, coords, clock, offset_seconds=0):
        return {
            "lat": coords.lat,
            "lon": coords.lon,
            "accuracy_meters": 5,
            "captured_at_ms": epoch_ms(clock.now()) - offset_seconds * 1000,
        }

    def test_entering_hotel_enables_features(self, client: TestClient, clock):
        response = client.post("/dashboard/positions", json=self.position(HOTEL_CENTER, clock))
        assert response.status_code == 200
        data = response.json()
        assert data["accepted"] is True
        assert data["inside"] == ["hotel-main"]
        assert data["results"][0]["zone_id"] == "hotel-main"

        snapshot = client.get("/dashboard/snapshot").json()
        assert {"room_delivery", "minibar"} <= set(snapshot["features"])
        assert snapshot["zone_presence"]["hotel-main"]["is_inside"] is True

    def test_leaving_hotel(self, client: TestClient, clock):
        client.post("/dashboard/positions", json=self.position(HOTEL_CENTER, clock))
        clock.advance(10)
        data = client.post("/dashboard/positions", json=self.position(far_from_hotel(), clock)).json()

        assert data["inside"] == []
        assert "room_delivery" not in client.get("/dashboard/snapshot").json()["features"]

    def test_stale_position_returns_503(self, client: TestClient, clock):
        response = client.post("/dashboard/positions", json=self.position(HOTEL_CENTER, clock, offset_seconds=600))
        assert response.status_code == 503
        assert client.get("/dashboard/snapshot").json()["location_available"] is False

    def test_invalid_coordinates(self, client: TestClient, clock):
        payload = self.position(HOTEL_CENTER, clock)
        payload["lat"] = 123.0
        assert client.post("/dashboard/positions", json=payload).status_code == 503


class TestZones:
    def test_list_zones(self, client: TestClient):
        ids = [z["id"] for z in client.get("/dashboard/zones").json()]
        assert sorted(ids) == ["hotel-main", "restaurant-terrace"]

    def test_add_and_remove_zone(self, client: TestClient):
        response = client.post("/dashboard/zones", json={
            "id": "pool", "name": "Pool", "kind": "venue",
            "lat": 33.4945, "lon": -111.9255, "radius_meters": 30,
        })
        assert response.status_code == 201
        assert response.json()["kind"] == "venue"

        assert client.delete("/dashboard/zones/pool").status_code == 204
        assert client.delete("/dashboard/zones/pool").status_code == 404

    def test_duplicate_zone(self, client: TestClient):
        response = client.post("/dashboard/zones", json={
            "id": "hotel-main", "name": "Again", "kind": "lodging",
            "lat": 33.4942, "lon": -111.9261, "radius_meters": 100,
        })
        assert response.status_code == 422

    def test_invalid_radius(self, client: TestClient):
        response = client.post("/dashboard/zones", json={
            "id": "bad", "name": "Bad", "kind": "custom", "lat": 0, "lon": 0, "radius_meters": -5,
        })
        assert response.status_code == 422


class TestReservations:
    def test_confirm_and_complete(self, client: TestClient, clock):
        rid = reserve_spa(client, clock).json()["reservations"][0]["id"]

        confirmed = client.post(f"/dashboard/reservations/{rid}/confirm")
        assert confirmed.status_code == 200
        assert confirmed.json()["state"] == "confirmed"

        completed = client.post(f"/dashboard/reservations/{rid}/complete")
        assert completed.json()["state"] == "completed"

        assert client.post(f"/dashboard/reservations/{rid}/cancel").status_code == 422

    def test_cancel(self, client: TestClient, clock):
        rid = reserve_spa(client, clock).json()["reservations"][0]["id"]
        response = client.post(f"/dashboard/reservations/{rid}/cancel")
        assert response.json()["state"] == "cancelled"
        assert response.json()["metadata"]["cancel_reason"] == "guest"

    def test_hold_expires(self, client: TestClient, clock, scheduler):
        rid = reserve_spa(client, clock).json()["reservations"][0]["id"]
        scheduler.advance(300)

        assert client.get(f"/dashboard/reservations/{rid}").json()["state"] == "expired"
        response = client.post(f"/dashboard/reservations/{rid}/confirm")
        assert response.status_code == 422

    def test_list_by_state(self, client: TestClient, clock):
        first = reserve_spa(client, clock, start_hours=1, end_hours=2).json()["reservations"][0]["id"]
        reserve_spa(client, clock, start_hours=3, end_hours=4)
        client.post(f"/dashboard/reservations/{first}/confirm")

        confirmed = client.get("/dashboard/reservations", params={"state": "confirmed"}).json()
        assert [r["id"] for r in confirmed] == [first]
        assert len(client.get("/dashboard/reservations", params={"holder_id": "guest-1"}).json()) == 2

    def test_modify_reschedules(self, client: TestClient, clock):
        rid = reserve_spa(client, clock).json()["reservations"][0]["id"]

        response = client.post(f"/dashboard/reservations/{rid}/modify", json=slot_json(clock, 5, 6))
        assert response.status_code == 200
        assert response.json()["window"] == slot_json(clock, 5, 6)
        assert response.json()["metadata"]["modifications"] == 1

    def test_modify_conflict(self, client: TestClient, clock):
        reserve_spa(client, clock, start_hours=1, end_hours=2)
        rid = reserve_spa(client, clock, holder="guest-2", start_hours=3, end_hours=4).json()["reservations"][0]["id"]

        response = client.post(f"/dashboard/reservations/{rid}/modify", json=slot_json(clock, 1, 2))
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "CapacityExceeded"
        assert detail["alternatives"][0] == slot_json(clock, 2, 3)

    def test_modify_needs_both_ends(self, client: TestClient, clock):
        rid = reserve_spa(client, clock).json()["reservations"][0]["id"]
        start_only = {"start": slot_json(clock, 5, 6)["start"]}
        assert client.post(f"/dashboard/reservations/{rid}/modify", json=start_only).status_code == 422
        assert client.post(f"/dashboard/reservations/{rid}/modify", json={}).status_code == 422

    def test_unknown_reservation(self, client: TestClient):
        assert client.get("/dashboard/reservations/RSV-missing").status_code == 404
        assert client.post("/dashboard/reservations/RSV-missing/confirm").status_code == 422


class TestInventory:
    def test_alerts(self, client: TestClient):
        alerts = client.get("/dashboard/inventory/alerts").json()
        assert {"item_id": "bev-002", "kind": "expiring"} in [
            {"item_id": a["item_id"], "kind": a["kind"]} for a in alerts
        ]

    def test_adjust_clamps(self, client: TestClient):
        response = client.post("/dashboard/inventory/amn-001/adjust", json={"delta": 5, "reason": "damage"})
        assert response.status_code == 200
        data = response.json()
        assert data["new_stock"] == 0
        assert data["clamped"] is True

        alerts = client.get("/dashboard/inventory/alerts", params={"item_id": "amn-001"}).json()
        assert [a["kind"] for a in alerts] == ["out_of_stock"]

    def test_adjust_unknown_item(self, client: TestClient):
        response = client.post("/dashboard/inventory/nope/adjust", json={"delta": 1, "reason": "restock"})
        assert response.status_code == 422

    def test_adjust_bad_reason(self, client: TestClient):
        response = client.post("/dashboard/inventory/bev-001/adjust", json={"delta": 1, "reason": "theft"})
        assert response.status_code == 422

    def test_sweep_write_off(self, client: TestClient, clock):
        clock.advance(timedelta(days=3))
        response = client.post("/dashboard/inventory/sweep", json={"write_off": True})
        assert response.status_code == 200

        snapshot = client.get("/dashboard/snapshot").json()
        assert snapshot["inventory"]["bev-002"]["stock"] == 0
