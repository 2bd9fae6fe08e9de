"""
Stock queries — read-only operations.

Work over any store backend and take no locks.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from stockledger.conf import ledger_settings
from stockledger.models.enums import MovementKind
from stockledger.models.item import normalize_part_number
from stockledger.money import line_total


@dataclass(frozen=True)
class InventoryStats:
    """Dashboard figures for one store (or all stores)."""

    total_items: int = 0
    total_units: int = 0
    asset_value: Decimal = Decimal('0')
    low_stock: int = 0
    out_of_stock: int = 0


@dataclass(frozen=True)
class PricePoint:
    """One historical unit price for a part."""

    applied_at: object
    source: str
    unit_price: Decimal
    quantity: int
    reference_id: str = ''
    movement_id: object = None
    extra: dict = field(default_factory=dict)


def _stores(stores):
    if stores is None:
        from stockledger.stores import get_stores
        stores = get_stores()
    return stores


def _threshold(threshold):
    return ledger_settings.LOW_STOCK_THRESHOLD if threshold is None else threshold


def inventory_stats(store_id=None, *, stores=None, threshold=None) -> InventoryStats:
    """
    Item count, units on hand, asset value at cost, low-stock and empty counts.

    Deactivated items are left out.
    """
    threshold = _threshold(threshold)
    total_items = total_units = low = empty = 0
    value = Decimal('0')

    for item in _stores(stores).quantities.iter_items(store_id):
        if not item.is_active:
            continue
        total_items += 1
        total_units += item.quantity
        value += line_total(item.cost_price, item.quantity)
        if item.quantity == 0:
            empty += 1
        elif item.quantity <= threshold:
            low += 1

    return InventoryStats(
        total_items=total_items,
        total_units=total_units,
        asset_value=value,
        low_stock=low,
        out_of_stock=empty,
    )


def low_stock_items(store_id=None, *, stores=None, threshold=None) -> list:
    """Active items with 0 < quantity <= threshold."""
    threshold = _threshold(threshold)
    return [
        item for item in _stores(stores).quantities.iter_items(store_id)
        if item.is_active and 0 < item.quantity <= threshold
    ]


def out_of_stock_items(store_id=None, *, stores=None) -> list:
    """Active items with nothing on hand."""
    return [
        item for item in _stores(stores).quantities.iter_items(store_id)
        if item.is_active and item.quantity == 0
    ]


def price_history(store_id, part_number, *, side='buy', stores=None) -> dict[str, list[PricePoint]]:
    """
    Unit prices a part was bought (side="buy", IN) or sold (side="sell", OUT)
    at, grouped by supplier or customer, newest first.

    Reversals and rejected movements are not prices anybody paid and are skipped.
    """
    if side not in ('buy', 'sell'):
        raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")
    kind = MovementKind.IN if side == 'buy' else MovementKind.OUT

    movements = _stores(stores).movements.list_by_item(
        store_id, normalize_part_number(part_number)
    )
    history: dict[str, list[PricePoint]] = {}
    for movement in movements:
        if (
            not movement.is_applied
            or movement.kind != kind
            or movement.reversal_of_id is not None
            or movement.unit_price is None
        ):
            continue
        source = movement.counterparty or ''
        history.setdefault(source, []).append(PricePoint(
            applied_at=movement.applied_at,
            source=source,
            unit_price=movement.unit_price,
            quantity=abs(movement.delta),
            reference_id=movement.reference_id,
            movement_id=movement.id,
        ))

    for points in history.values():
        points.reverse()
    return history
