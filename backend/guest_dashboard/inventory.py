"""
Inventory ledger
Authoritative in-memory store of purchasable items (mini-bar, amenities).
Stock mutations clamp instead of failing; batch purchases are all-or-nothing.
"""
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
import logging
import threading

from guestcore.scheduler.clock import Clock, SystemClock
from guest_dashboard.errors import InvalidMutation
from guest_dashboard.models.domain import (
    AlertKind,
    Category,
    InventoryAlert,
    InventoryItem,
    InventorySummary,
    StockAdjustment,
    StockReason,
)
from guest_dashboard.mutations import InventorySynced
from guest_dashboard.persistence import PersistenceRecord, PersistenceSink

logger = logging.getLogger(__name__)

_SUBTRACTING = (StockReason.PURCHASE, StockReason.DAMAGE, StockReason.EXPIRY)


@dataclass(frozen=True)
class PurchaseLine:
    item_id: str
    quantity: int


LineLike = Union[PurchaseLine, Mapping]


def coerce_line(line: LineLike) -> PurchaseLine:
    """Accept PurchaseLine or a mapping with item_id/itemId and quantity/qty."""
    if isinstance(line, PurchaseLine):
        return line
    item_id = line.get("item_id", line.get("itemId"))
    quantity = line.get("quantity", line.get("qty"))
    if item_id is None or quantity is None:
        raise InvalidMutation(f"Malformed purchase line: {dict(line)}")
    return PurchaseLine(item_id=str(item_id), quantity=int(quantity))


def merge_lines(lines: Iterable[LineLike]) -> List[PurchaseLine]:
    """Coerce and sum duplicate item lines, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for raw in lines:
        line = coerce_line(raw)
        totals[line.item_id] = totals.get(line.item_id, 0) + line.quantity
    return [PurchaseLine(item_id=k, quantity=v) for k, v in totals.items()]


def normalize_item(item: InventoryItem) -> InventoryItem:
    """Clamp stock into [0, max_stock] and derive `available`."""
    if item.max_stock < 0:
        raise InvalidMutation(f"Item {item.id} has negative max_stock")
    stock = min(max(item.stock, 0), item.max_stock)
    return replace(item, stock=stock, available=stock > 0)


class InventoryLedger:
    """
    Inventory ledger.

    Every mutation:
    - keeps 0 <= stock <= max_stock and available == (stock > 0)
    - recomputes the item's alerts (one per kind at most)
    - republishes the inventory summary through the state authority

    Units held by reservations are tracked in `reserved` so that direct
    purchases cannot take them.
    """

    def __init__(self, state=None, clock: Optional[Clock] = None,
                 persistence: Optional[PersistenceSink] = None, expiring_days: int = 3):
        self._state = state
        self._clock = clock or SystemClock()
        self._persistence = persistence
        self._expiring_days = expiring_days

        self._items: Dict[str, InventoryItem] = {}
        self._categories: Dict[str, Category] = {}
        self._reserved: Dict[str, int] = {}
        self._alerts: Dict[str, Dict[AlertKind, InventoryAlert]] = {}
        self._lock = threading.RLock()

    # ============== Catalog ==============

    def load_catalog(self, categories: Iterable[Category], items: Iterable[InventoryItem]) -> None:
        """Replace the catalog."""
        with self._lock:
            self._categories = {c.id: c for c in categories}
            self._items = {}
            self._alerts = {}
            self._reserved = {}
            for item in items:
                normalized = normalize_item(item)
                self._items[normalized.id] = normalized
                self._recompute_alerts(normalized.id)
            logger.info(f"Catalog loaded: {len(self._categories)} categories, {len(self._items)} items")
            self._sync()

    def add_item(self, item: InventoryItem) -> InventoryItem:
        with self._lock:
            if item.id in self._items:
                raise InvalidMutation(f"Item {item.id} already exists")
            normalized = normalize_item(item)
            self._items[normalized.id] = normalized
            self._recompute_alerts(normalized.id)
            self._sync()
            return normalized

    def retire_item(self, item_id: str) -> InventoryItem:
        """Soft-retire; retired items are never deleted."""
        with self._lock:
            item = replace(self._require(item_id), is_active=False)
            self._items[item_id] = item
            self._recompute_alerts(item_id)
            self._sync()
            logger.info(f"Item retired: {item_id}")
            return item

    def get_item(self, item_id: str) -> Optional[InventoryItem]:
        with self._lock:
            return self._items.get(item_id)

    def list_items(self, category_id: Optional[str] = None, include_inactive: bool = False) -> List[InventoryItem]:
        with self._lock:
            items = list(self._items.values())
        if category_id is not None:
            items = [i for i in items if i.category_id == category_id]
        if not include_inactive:
            items = [i for i in items if i.is_active]
        return items

    def list_categories(self) -> List[Category]:
        with self._lock:
            return list(self._categories.values())

    # ============== Stock ==============

    def adjust_stock(self, item_id: str, delta: int, reason: Union[StockReason, str]) -> StockAdjustment:
        """
        Apply a stock change; never rejected, always clamped into [0, max_stock].

        restock adds |delta|; purchase/damage/expiry subtract |delta|;
        adjustment sets stock to delta.

        Raises:
            InvalidMutation: unknown item or reason
        """
        try:
            reason = StockReason(reason)
        except ValueError:
            raise InvalidMutation(f"Unknown stock reason: {reason}")

        with self._lock:
            adjustment = self._apply_adjustment(item_id, delta, reason)
            self._sync()

        if adjustment.clamped:
            logger.warning(
                f"Stock change for {item_id} clamped: requested {adjustment.requested}, applied {adjustment.applied}"
            )
        return adjustment

    def _apply_adjustment(self, item_id: str, delta: int, reason: StockReason) -> StockAdjustment:
        item = self._require(item_id)
        previous = item.stock

        if reason == StockReason.RESTOCK:
            target = previous + abs(delta)
        elif reason in _SUBTRACTING:
            target = previous - abs(delta)
        else:
            target = delta

        new_stock = min(max(target, 0), item.max_stock)
        self._items[item_id] = replace(item, stock=new_stock, available=new_stock > 0)
        self._recompute_alerts(item_id)

        logger.debug(f"Stock {item_id}: {previous} -> {new_stock} ({reason.value})")
        return StockAdjustment(
            item_id=item_id,
            reason=reason,
            previous_stock=previous,
            new_stock=new_stock,
            requested=target - previous,
            applied=new_stock - previous,
        )

    def validate_batch(self, lines: Iterable[LineLike]) -> List[str]:
        """Problems that would make purchase_batch fail; empty when it would succeed."""
        problems = []
        with self._lock:
            for line in merge_lines(lines):
                item = self._items.get(line.item_id)
                if item is None:
                    problems.append(f"Unknown item {line.item_id}")
                elif not item.is_active:
                    problems.append(f"Item {line.item_id} is no longer sold")
                elif line.quantity <= 0:
                    problems.append(f"Quantity for {line.item_id} must be positive")
                elif line.quantity > self._sellable(item):
                    problems.append(
                        f"Insufficient stock for {line.item_id}: requested {line.quantity}, "
                        f"available {self._sellable(item)}"
                    )
        return problems

    def purchase_batch(self, lines: Iterable[LineLike]) -> bool:
        """
        All-or-nothing purchase: validate every line first, then apply.

        Returns:
            True if every line was deducted, False if nothing was.
        """
        merged = merge_lines(lines)
        with self._lock:
            problems = self.validate_batch(merged)
            if problems or not merged:
                logger.info(f"Purchase batch rejected: {'; '.join(problems) or 'empty batch'}")
                return False

            for line in merged:
                self._apply_adjustment(line.item_id, line.quantity, StockReason.PURCHASE)
            self._sync()

        logger.info(f"Purchase batch applied: {[(l.item_id, l.quantity) for l in merged]}")
        return True

    # ============== Reserved capacity ==============

    def reserved(self, item_id: str) -> int:
        with self._lock:
            return self._reserved.get(item_id, 0)

    def sellable(self, item_id: str) -> int:
        """Stock not held by reservations."""
        with self._lock:
            return self._sellable(self._require(item_id))

    def _sellable(self, item: InventoryItem) -> int:
        return max(0, item.stock - self._reserved.get(item.id, 0))

    def reserve_units(self, item_id: str, quantity: int) -> None:
        """Record units held by a reservation (capacity already checked by the caller)."""
        with self._lock:
            self._require(item_id)
            self._reserved[item_id] = self._reserved.get(item_id, 0) + quantity
            self._sync()

    def release_units(self, item_id: str, quantity: int) -> None:
        with self._lock:
            remaining = self._reserved.get(item_id, 0) - quantity
            if remaining > 0:
                self._reserved[item_id] = remaining
            else:
                self._reserved.pop(item_id, None)
            self._sync()

    def fulfil_reserved(self, item_id: str, quantity: int) -> StockAdjustment:
        """Convert reserved units into a purchase."""
        with self._lock:
            remaining = self._reserved.get(item_id, 0) - quantity
            if remaining > 0:
                self._reserved[item_id] = remaining
            else:
                self._reserved.pop(item_id, None)
            adjustment = self._apply_adjustment(item_id, quantity, StockReason.PURCHASE)
            self._sync()
            return adjustment

    # ============== Alerts ==============

    def alerts(self, item_id: Optional[str] = None) -> List[InventoryAlert]:
        with self._lock:
            if item_id is not None:
                return list(self._alerts.get(item_id, {}).values())
            return [a for per_item in self._alerts.values() for a in per_item.values()]

    def sweep_expiry(self, write_off: bool = False, now: Optional[datetime] = None) -> List[InventoryAlert]:
        """
        Re-evaluate expiry alerts for every item.

        Args:
            write_off: zero the stock of expired items (reason: expiry)
            now: evaluation time, defaults to the clock

        Returns:
            All current alerts after the sweep.
        """
        with self._lock:
            now = now or self._clock.now()
            today = now.date()
            for item_id, item in list(self._items.items()):
                if write_off and item.stock > 0 and item.expiry_date is not None and item.expiry_date <= today:
                    self._apply_adjustment(item_id, item.stock, StockReason.EXPIRY)
                else:
                    self._recompute_alerts(item_id, now)
            self._sync()
            return self.alerts()

    def _compute_alert_kinds(self, item: InventoryItem, today: date) -> List[Tuple[AlertKind, str]]:
        kinds = []
        if item.stock == 0:
            kinds.append((AlertKind.OUT_OF_STOCK, f"{item.name} is out of stock"))
        elif item.stock <= item.min_stock:
            kinds.append((AlertKind.LOW_STOCK, f"{item.name} is low ({item.stock} {item.unit} left)"))

        if item.expiry_date is not None and item.stock > 0:
            if item.expiry_date <= today:
                kinds.append((AlertKind.EXPIRED, f"{item.name} expired on {item.expiry_date.isoformat()}"))
            elif item.expiry_date <= today + timedelta(days=self._expiring_days):
                kinds.append((AlertKind.EXPIRING, f"{item.name} expires on {item.expiry_date.isoformat()}"))
        return kinds

    def _recompute_alerts(self, item_id: str, now: Optional[datetime] = None) -> None:
        item = self._items[item_id]
        previous = self._alerts.get(item_id, {})
        if not item.is_active:
            self._alerts.pop(item_id, None)
            return

        now = now or self._clock.now()
        current: Dict[AlertKind, InventoryAlert] = {}
        for kind, message in self._compute_alert_kinds(item, now.date()):
            existing = previous.get(kind)
            current[kind] = InventoryAlert(
                item_id=item_id,
                kind=kind,
                message=message,
                raised_at=existing.raised_at if existing else now,
            )
            if existing is None:
                self._report_alert(current[kind], item)

        if current:
            self._alerts[item_id] = current
        else:
            self._alerts.pop(item_id, None)

    def _report_alert(self, alert: InventoryAlert, item: InventoryItem) -> None:
        logger.info(f"Inventory alert raised: {alert.kind.value} for {item.id}")
        if self._persistence is None:
            return
        try:
            self._persistence.write(
                PersistenceRecord(
                    kind="inventory.alert_raised",
                    entity_type="inventory_item",
                    entity_id=item.id,
                    payload={"alert": alert.kind.value, "stock": item.stock, "message": alert.message},
                    occurred_at=alert.raised_at,
                )
            )
        except Exception as e:
            logger.error(f"Failed to enqueue alert record for {item.id}: {e}", exc_info=True)

    # ============== Snapshot ==============

    def summary(self) -> Tuple[InventorySummary, ...]:
        with self._lock:
            return tuple(
                InventorySummary(
                    item_id=item.id,
                    name=item.name,
                    stock=item.stock,
                    reserved=self._reserved.get(item.id, 0),
                    sellable=self._sellable(item),
                    available=item.available,
                    is_active=item.is_active,
                )
                for item in self._items.values()
            )

    def _sync(self) -> None:
        if self._state is None:
            return
        self._state.dispatch(
            InventorySynced(summary=self.summary(), alerts=tuple(self.alerts()), source="inventory")
        )

    def _require(self, item_id: str) -> InventoryItem:
        item = self._items.get(item_id)
        if item is None:
            raise InvalidMutation(f"Unknown inventory item: {item_id}")
        return item
