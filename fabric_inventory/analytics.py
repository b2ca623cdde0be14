"""
Inventory analytics derived by replaying the stock ledger.

Each ledger entry is classified once into a quantity change:

    NoChange            nothing measurable happened to a quantity
    StockLevelChange    the item's own quantity went from old to new
    ShadeLevelChange    one shade's quantity went from old to new

Classification prefers numeric ``quantity`` fields present in both
snapshots (a ``color_name`` in the snapshot marks it as a shade); only
when snapshots carry no quantities is an "N → M" pattern parsed out of
the free-text description.

All results are pure functions of the ledger and the current stock
rows: calling them twice without intervening writes gives equal output.
"""

import re
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from .ledger import StockLedger
from .models import LedgerEntry, StockAction, StockItem
from .stock import StockService

logger = logging.getLogger(__name__)

SHADE_LOW_THRESHOLD = 5
SHADE_HIGH_THRESHOLD = 250
STOCK_LOW_THRESHOLD = 5

ARROW_PATTERN = re.compile(r"(\d+)\s*(?:→|->)\s*(\d+)")


class _Delta:
    @property
    def delta(self):
        return self.new - self.old

    @property
    def amount(self):
        return abs(self.delta)

    @property
    def direction(self) -> str:
        if self.delta > 0:
            return "increase"
        if self.delta < 0:
            return "decrease"
        return "none"


@dataclass(frozen=True)
class NoChange(_Delta):
    old: float = field(default=0, init=False)
    new: float = field(default=0, init=False)
    kind: str = field(default="none", init=False)


@dataclass(frozen=True)
class StockLevelChange(_Delta):
    old: float
    new: float
    kind: str = field(default="stock", init=False)


@dataclass(frozen=True)
class ShadeLevelChange(_Delta):
    shade_id: Optional[int]
    color_name: Optional[str]
    old: float
    new: float
    kind: str = field(default="shade", init=False)


QuantityChange = Union[NoChange, StockLevelChange, ShadeLevelChange]


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def classify_change(entry: LedgerEntry) -> QuantityChange:
    """Classify a ledger entry into exactly one quantity change variant."""
    old = entry.old_data if isinstance(entry.old_data, dict) else {}
    new = entry.new_data if isinstance(entry.new_data, dict) else {}

    if _is_number(old.get("quantity")) and _is_number(new.get("quantity")):
        if "color_name" in old or "color_name" in new:
            return ShadeLevelChange(
                shade_id=old.get("id") or new.get("id"),
                color_name=old.get("color_name") or new.get("color_name"),
                old=old["quantity"],
                new=new["quantity"],
            )
        return StockLevelChange(old=old["quantity"], new=new["quantity"])

    match = ARROW_PATTERN.search(entry.description or "")
    if match:
        return StockLevelChange(old=int(match.group(1)), new=int(match.group(2)))

    return NoChange()


@dataclass(frozen=True)
class QuantityMovement:
    entry_id: int
    action: str
    performed_at: datetime
    performed_by: str
    description: Optional[str]
    change: QuantityChange

    @property
    def is_shade_update(self) -> bool:
        return isinstance(self.change, ShadeLevelChange)


@dataclass
class PeriodActivity:
    period: date
    stock_added: float = 0
    stock_reduced: float = 0
    shades_added: float = 0
    shades_removed: float = 0
    activity_count: int = 0


@dataclass
class ShadeAnalytics:
    shade_id: int
    color_name: Optional[str]
    color: Optional[str]
    current_quantity: Optional[float]
    current_length: Optional[float]
    unit: Optional[str]
    length_unit: Optional[str]
    active: bool
    total_additions: float = 0
    total_reductions: float = 0
    addition_count: int = 0
    reduction_count: int = 0
    last_updated: Optional[datetime] = None


@dataclass
class ActivitySummary:
    stock_id: int
    stock_code: str
    product: str
    total_activities: int
    created: int
    updated: int
    adjusted: int
    deleted: int
    image_uploads: int
    total_added: float
    total_removed: float
    net_change: float
    shade_added: float
    shade_removed: float
    total_shades: int
    total_shade_quantity: float
    total_shade_length: float
    quantity_changes: List[QuantityMovement]
    shade_analytics: List[ShadeAnalytics]
    activity_by_period: List[PeriodActivity]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MovementItem:
    id: int
    stock_code: str
    product: str
    category: str
    current_stock: float
    total_added: float
    total_removed: float
    net_change: float
    shade_added: float
    shade_removed: float
    last_activity: Optional[datetime]
    last_action: str
    cost: float
    price: float
    has_shades: bool
    total_shades: int
    shade_quantities: List[Dict[str, Any]]


def _movements(entries: List[LedgerEntry]) -> List[QuantityMovement]:
    return [
        QuantityMovement(
            entry_id=entry.id,
            action=entry.action.value,
            performed_at=entry.performed_at,
            performed_by=entry.performed_by,
            description=entry.description,
            change=classify_change(entry),
        )
        for entry in entries
    ]


def _totals(movements: List[QuantityMovement]) -> Dict[str, float]:
    totals = {"stock_added": 0, "stock_removed": 0, "shade_added": 0, "shade_removed": 0}
    for movement in movements:
        change = movement.change
        if change.amount == 0:
            continue
        prefix = "shade" if isinstance(change, ShadeLevelChange) else "stock"
        suffix = "added" if change.delta > 0 else "removed"
        totals[f"{prefix}_{suffix}"] += change.amount
    return totals


def build_activity_by_period(movements: List[QuantityMovement]) -> List[PeriodActivity]:
    """
    Bucket ledger activity by calendar month, oldest month first.

    Args:
        movements: Classified ledger entries in any order.

    Returns:
        One PeriodActivity per month that has at least one entry.
    """
    buckets: Dict[date, PeriodActivity] = {}

    for movement in movements:
        ts = movement.performed_at
        key = date(ts.year, ts.month, 1)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = PeriodActivity(period=key)
        bucket.activity_count += 1

        change = movement.change
        if change.amount == 0:
            continue
        if isinstance(change, ShadeLevelChange):
            if change.delta > 0:
                bucket.shades_added += change.amount
            else:
                bucket.shades_removed += change.amount
        else:
            if change.delta > 0:
                bucket.stock_added += change.amount
            else:
                bucket.stock_reduced += change.amount

    return [buckets[key] for key in sorted(buckets)]


def aggregate_shade_analytics(item: StockItem, movements: List[QuantityMovement]) -> List[ShadeAnalytics]:
    """
    Per-shade addition/reduction totals in a single pass.

    Current shades seed the result with their live quantities. Ledger
    shade changes only accumulate additions and reductions; a shade that
    no longer exists takes its last-seen quantity from the ledger.
    """
    analytics: Dict[int, ShadeAnalytics] = OrderedDict()
    for shade in item.shades:
        analytics[shade.id] = ShadeAnalytics(
            shade_id=shade.id,
            color_name=shade.color_name,
            color=shade.color,
            current_quantity=shade.quantity,
            current_length=shade.length,
            unit=shade.unit,
            length_unit=shade.length_unit,
            active=True,
            last_updated=shade.updated_at,
        )

    # oldest first so the last-seen state of removed shades wins
    for movement in sorted(movements, key=lambda m: (m.performed_at, m.entry_id)):
        change = movement.change
        if not isinstance(change, ShadeLevelChange) or change.shade_id is None:
            continue

        stats = analytics.get(change.shade_id)
        if stats is None:
            stats = analytics[change.shade_id] = ShadeAnalytics(
                shade_id=change.shade_id,
                color_name=change.color_name,
                color=None,
                current_quantity=None,
                current_length=None,
                unit=None,
                length_unit=None,
                active=False,
            )

        if change.delta > 0:
            stats.total_additions += change.amount
            stats.addition_count += 1
        elif change.delta < 0:
            stats.total_reductions += change.amount
            stats.reduction_count += 1

        if not stats.active:
            stats.current_quantity = change.new
            stats.last_updated = movement.performed_at

    return list(analytics.values())


class InventoryAnalytics:
    """Builds activity summaries, movement reports and stock alerts."""

    def __init__(self, stock_service: StockService, ledger: StockLedger):
        self.stock_service = stock_service
        self.ledger = ledger

    def summary_for_stock(self, stock_id: int) -> ActivitySummary:
        """
        Replay one item's ledger into an activity summary.

        Raises:
            NotFoundError: If the stock item does not exist.
        """
        item = self.stock_service.get(stock_id)
        entries = self.ledger.by_stock(stock_id)
        movements = _movements(entries)
        totals = _totals(movements)

        def count(action):
            return sum(1 for entry in entries if entry.action == action)

        return ActivitySummary(
            stock_id=item.id,
            stock_code=item.stock_id,
            product=item.product,
            total_activities=len(entries),
            created=count(StockAction.CREATE),
            updated=count(StockAction.UPDATE),
            adjusted=count(StockAction.ADJUST),
            deleted=count(StockAction.DELETE),
            image_uploads=count(StockAction.IMAGE_UPLOAD),
            total_added=totals["stock_added"],
            total_removed=totals["stock_removed"],
            net_change=totals["stock_added"] - totals["stock_removed"],
            shade_added=totals["shade_added"],
            shade_removed=totals["shade_removed"],
            total_shades=len(item.shades),
            total_shade_quantity=sum(shade.quantity or 0 for shade in item.shades),
            total_shade_length=sum(shade.length or 0 for shade in item.shades),
            quantity_changes=[m for m in movements if m.change.amount != 0],
            shade_analytics=aggregate_shade_analytics(item, movements),
            activity_by_period=build_activity_by_period(movements),
        )

    def _movement_item(self, item: StockItem, entries: List[LedgerEntry]) -> MovementItem:
        movements = _movements(entries)
        totals = _totals(movements)
        has_shades = bool(item.shades)
        latest = entries[0] if entries else None

        return MovementItem(
            id=item.id,
            stock_code=item.stock_id,
            product=item.product,
            category=item.category,
            current_stock=sum(s.quantity or 0 for s in item.shades) if has_shades else item.quantity,
            total_added=totals["stock_added"],
            total_removed=totals["stock_removed"],
            net_change=totals["stock_added"] - totals["stock_removed"],
            shade_added=totals["shade_added"],
            shade_removed=totals["shade_removed"],
            last_activity=latest.performed_at if latest else item.updated_at,
            last_action=latest.action.value if latest else StockAction.CREATE.value,
            cost=item.cost,
            price=item.price,
            has_shades=has_shades,
            total_shades=len(item.shades),
            shade_quantities=[
                {"color_name": s.color_name, "quantity": s.quantity, "color": s.color}
                for s in item.shades
            ],
        )

    def portfolio_summary(self) -> Dict[str, Any]:
        """
        Movement summary for every stock item plus catalogue-wide totals.

        Returns:
            Dict with 'totals' (dict) and 'items' (list of MovementItem).
        """
        items = self.stock_service.list_all()
        entries_by_stock: Dict[int, List[LedgerEntry]] = {}
        for entry in self.ledger.all(limit=None)["data"]:
            entries_by_stock.setdefault(entry.stock_id, []).append(entry)

        movement_items = [
            self._movement_item(item, entries_by_stock.get(item.id, []))
            for item in items
        ]

        totals = {
            "total_products": len(movement_items),
            "with_shades": sum(1 for m in movement_items if m.has_shades),
            "without_shades": sum(1 for m in movement_items if not m.has_shades),
            "total_shades": sum(m.total_shades for m in movement_items),
            "total_added": sum(m.total_added for m in movement_items),
            "total_removed": sum(m.total_removed for m in movement_items),
            "shade_added": sum(m.shade_added for m in movement_items),
            "shade_removed": sum(m.shade_removed for m in movement_items),
            "current_stock": sum(m.current_stock for m in movement_items),
        }
        logger.info(f"Portfolio summary built for {len(movement_items)} products")
        return {"totals": totals, "items": movement_items}

    def stock_alerts(self,
                     shade_low: float = SHADE_LOW_THRESHOLD,
                     shade_high: float = SHADE_HIGH_THRESHOLD,
                     stock_low: float = STOCK_LOW_THRESHOLD) -> Dict[str, Any]:
        """
        Low/high quantity alerts. Both boundaries are inclusive.

        Items with shades are judged shade by shade against the shade
        thresholds; items without shades are judged on their own
        quantity against ``stock_low``.
        """
        low_shades, high_shades, low_stocks = [], [], []

        for item in self.stock_service.list_all():
            if item.shades:
                for shade in item.shades:
                    alert = {
                        "stock_id": item.id,
                        "stock_code": item.stock_id,
                        "product": item.product,
                        "shade_id": shade.id,
                        "shade_name": shade.color_name,
                        "quantity": shade.quantity,
                    }
                    if shade.quantity <= shade_low:
                        low_shades.append(alert)
                    elif shade.quantity >= shade_high:
                        high_shades.append(alert)
            elif item.quantity <= stock_low:
                low_stocks.append({
                    "stock_id": item.id,
                    "stock_code": item.stock_id,
                    "product": item.product,
                    "quantity": item.quantity,
                })

        return {
            "thresholds": {"shade_low": shade_low, "shade_high": shade_high, "stock_low": stock_low},
            "counts": {
                "low_shades": len(low_shades),
                "high_shades": len(high_shades),
                "low_stocks": len(low_stocks),
            },
            "low_shade_alerts": low_shades,
            "high_shade_alerts": high_shades,
            "low_stocks": low_stocks,
        }
