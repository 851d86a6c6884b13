"""
Configuration loaders
Zones, geofence trigger rules and the item catalog are plain YAML files,
validated with pydantic before they reach the engines.
"""
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
import logging

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from guest_dashboard.geofence import Coordinates, Zone, ZoneKind
from guest_dashboard.models.domain import Category, InventoryItem

logger = logging.getLogger(__name__)

# Bundled defaults
_config_dir = Path(__file__).parent / "config"
DEFAULT_ZONES_FILE = _config_dir / "zones.yaml"
DEFAULT_TRIGGER_RULES_FILE = _config_dir / "trigger_rules.yaml"
DEFAULT_CATALOG_FILE = _config_dir / "catalog.yaml"

PathLike = Union[str, Path]


def load_yaml(path: PathLike) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


# ============== Zones ==============

class ZoneConfig(BaseModel):
    id: str
    name: str
    kind: ZoneKind
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius_meters: float = Field(gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_zone(self) -> Zone:
        return Zone(
            id=self.id,
            name=self.name,
            kind=self.kind,
            center=Coordinates(lat=self.lat, lon=self.lon),
            radius_meters=self.radius_meters,
            metadata=dict(self.metadata),
        )


def parse_zones(data: Any) -> List[Zone]:
    raw = data.get("zones", []) if isinstance(data, dict) else (data or [])
    return [ZoneConfig.model_validate(entry).to_zone() for entry in raw]


def load_zones_file(path: Optional[PathLike] = None) -> List[Zone]:
    path = path or DEFAULT_ZONES_FILE
    zones = parse_zones(load_yaml(path))
    logger.info(f"Loaded {len(zones)} zones from {path}")
    return zones


# ============== Trigger rules ==============

class TriggerAction(BaseModel):
    """One effect of a geofence trigger."""

    type: Literal["enable_feature", "disable_feature", "set_preference", "notify"]
    feature: Optional[str] = None
    key: Optional[str] = None
    value: Any = None
    title: Optional[str] = None
    message: Optional[str] = None

    @model_validator(mode="after")
    def _check_fields(self) -> "TriggerAction":
        if self.type in ("enable_feature", "disable_feature") and not self.feature:
            raise ValueError(f"{self.type} needs 'feature'")
        if self.type == "set_preference" and not self.key:
            raise ValueError("set_preference needs 'key'")
        if self.type == "notify" and not self.message:
            raise ValueError("notify needs 'message'")
        return self


class TriggerRuleConfig(BaseModel):
    """
    Actions to run when a zone of `zone_kind` is entered or exited.

    `when` narrows the rule with an attribute expression over the zone event,
    e.g. "zone_id == 'restaurant-terrace'".
    """

    id: str
    zone_kind: ZoneKind
    transition: Literal["entered", "exited"]
    actions: List[TriggerAction]
    description: str = ""
    priority: int = 50
    enabled: bool = True
    when: Optional[str] = None

    @field_validator("when")
    @classmethod
    def _check_when(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and " == " not in value and " != " not in value:
            raise ValueError(f"Unsupported condition: {value!r} (use 'attr == value' or 'attr != value')")
        return value


def parse_trigger_rules(data: Any) -> List[TriggerRuleConfig]:
    raw = data.get("rules", []) if isinstance(data, dict) else (data or [])
    rules = [TriggerRuleConfig.model_validate(entry) for entry in raw]
    ids = [r.id for r in rules]
    duplicates = {i for i in ids if ids.count(i) > 1}
    if duplicates:
        raise ValueError(f"Duplicate trigger rule ids: {sorted(duplicates)}")
    return rules


def load_trigger_rules_file(path: Optional[PathLike] = None) -> List[TriggerRuleConfig]:
    path = path or DEFAULT_TRIGGER_RULES_FILE
    rules = parse_trigger_rules(load_yaml(path))
    logger.info(f"Loaded {len(rules)} trigger rules from {path}")
    return rules


# ============== Catalog ==============

class CategoryConfig(BaseModel):
    id: str
    name: str
    icon: Optional[str] = None


class ItemConfig(BaseModel):
    id: str
    category_id: str
    name: str
    price: Decimal = Field(ge=0)
    stock: int
    max_stock: int = Field(ge=0)
    min_stock: int = Field(default=0, ge=0)
    unit: str = "each"
    room_chargeable: bool = False
    expiry_date: Optional[date] = None
    is_active: bool = True


class CatalogConfig(BaseModel):
    categories: List[CategoryConfig] = Field(default_factory=list)
    items: List[ItemConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_categories(self) -> "CatalogConfig":
        known = {c.id for c in self.categories}
        if known:
            unknown = sorted({i.category_id for i in self.items} - known)
            if unknown:
                raise ValueError(f"Items reference unknown categories: {unknown}")
        return self


def parse_catalog(data: Any) -> Tuple[List[Category], List[InventoryItem]]:
    """Build catalog objects from a mapping with `categories` and `items` lists."""
    catalog = CatalogConfig.model_validate(data or {})
    categories = [Category(id=c.id, name=c.name, icon=c.icon) for c in catalog.categories]
    items = [
        InventoryItem(
            id=i.id,
            category_id=i.category_id,
            name=i.name,
            price=i.price,
            stock=i.stock,
            max_stock=i.max_stock,
            min_stock=i.min_stock,
            unit=i.unit,
            available=i.stock > 0,
            room_chargeable=i.room_chargeable,
            expiry_date=i.expiry_date,
            is_active=i.is_active,
        )
        for i in catalog.items
    ]
    return categories, items


def load_catalog_file(path: Optional[PathLike] = None) -> Tuple[List[Category], List[InventoryItem]]:
    path = path or DEFAULT_CATALOG_FILE
    categories, items = parse_catalog(load_yaml(path))
    logger.info(f"Loaded catalog from {path}: {len(categories)} categories, {len(items)} items")
    return categories, items


__all__ = [
    "CatalogConfig",
    "TriggerAction",
    "TriggerRuleConfig",
    "ZoneConfig",
    "load_catalog_file",
    "load_trigger_rules_file",
    "load_yaml",
    "load_zones_file",
    "parse_catalog",
    "parse_trigger_rules",
    "parse_zones",
]
