"""
YAML configuration loader tests
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from guest_dashboard.geofence import ZoneKind
from guest_dashboard.loaders import (
    load_catalog_file,
    load_trigger_rules_file,
    load_zones_file,
    parse_catalog,
    parse_trigger_rules,
    parse_zones,
)


class TestBundledFiles:
    def test_zones(self):
        zones = {z.id: z for z in load_zones_file()}
        assert zones["hotel-main"].kind == ZoneKind.LODGING
        assert zones["phx-airport"].radius_meters == 2000

    def test_trigger_rules(self):
        rules = {r.id: r for r in load_trigger_rules_file()}
        assert rules["lodging-entered"].transition == "entered"
        assert [a.feature for a in rules["lodging-exited"].actions] == ["room_delivery", "minibar"]
        assert rules["terrace-entered"].when == "zone_id == 'restaurant-terrace'"

    def test_catalog(self):
        categories, items = load_catalog_file()
        by_id = {i.id: i for i in items}
        assert {c.id for c in categories} == {"beverages", "snacks", "amenities"}
        assert by_id["bev-001"].price == Decimal("4.00")
        assert by_id["bev-001"].stock == 24


class TestParsing:
    def test_zone_file_from_disk(self, tmp_path):
        path = tmp_path / "zones.yaml"
        path.write_text(
            "zones:\n"
            "  - id: lobby\n"
            "    name: Lobby\n"
            "    kind: venue\n"
            "    lat: 10.0\n"
            "    lon: 20.0\n"
            "    radius_meters: 25\n",
            encoding="utf-8",
        )
        zones = load_zones_file(path)
        assert zones[0].center.lat == 10.0
        assert zones[0].kind == ZoneKind.VENUE

    def test_empty_file(self, tmp_path):
        path = tmp_path / "zones.yaml"
        path.write_text("", encoding="utf-8")
        assert load_zones_file(path) == []

    @pytest.mark.parametrize("entry", [
        {"id": "z", "name": "Z", "kind": "lodging", "lat": 0, "lon": 0, "radius_meters": 0},
        {"id": "z", "name": "Z", "kind": "lodging", "lat": 95, "lon": 0, "radius_meters": 10},
        {"id": "z", "name": "Z", "kind": "castle", "lat": 0, "lon": 0, "radius_meters": 10},
    ])
    def test_invalid_zone(self, entry):
        with pytest.raises(ValidationError):
            parse_zones({"zones": [entry]})

    def test_rule_action_needs_fields(self):
        with pytest.raises(ValidationError):
            parse_trigger_rules({"rules": [{
                "id": "r", "zone_kind": "dining", "transition": "entered",
                "actions": [{"type": "enable_feature"}],
            }]})

    def test_duplicate_rule_ids(self):
        rule = {"id": "r", "zone_kind": "dining", "transition": "entered",
                "actions": [{"type": "notify", "message": "hi"}]}
        with pytest.raises(ValueError):
            parse_trigger_rules([rule, rule])

    def test_unknown_transition(self):
        with pytest.raises(ValidationError):
            parse_trigger_rules([{"id": "r", "zone_kind": "dining", "transition": "lingered", "actions": []}])

    def test_rule_condition(self):
        rule = {"id": "r", "zone_kind": "dining", "transition": "entered",
                "actions": [{"type": "notify", "message": "hi"}]}
        parsed = parse_trigger_rules([{**rule, "when": "zone_id == 'cafe'"}])
        assert parsed[0].when == "zone_id == 'cafe'"
        with pytest.raises(ValidationError):
            parse_trigger_rules([{**rule, "when": "distance_meters < 10"}])

    def test_catalog_unknown_category(self):
        with pytest.raises(ValidationError):
            parse_catalog({
                "categories": [{"id": "snacks", "name": "Snacks"}],
                "items": [{"id": "x", "category_id": "drinks", "name": "X", "price": "1", "stock": 1, "max_stock": 2}],
            })

    def test_catalog_item_defaults(self):
        _, items = parse_catalog({
            "items": [{"id": "x", "category_id": "c", "name": "X", "price": "2.50", "stock": 0, "max_stock": 5}],
        })
        assert items[0].min_stock == 0
        assert items[0].unit == "each"
        assert not items[0].available
