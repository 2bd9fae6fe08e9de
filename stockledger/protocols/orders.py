"""
Order Protocols — shapes the order/shipment adapter accepts and returns.

The surrounding application can pass these dataclasses or any objects with
the same attributes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class OrderLine:
    """One line of a customer order."""

    part_number: str
    quantity: int
    unit_price: Decimal | None = None


@dataclass(frozen=True)
class Order:
    """A customer order (offline counter sale or storefront checkout)."""

    reference: str
    store_id: str
    lines: tuple[OrderLine, ...] = ()
    customer: str = ''


@dataclass(frozen=True)
class ScanLine:
    """
    One scanned shipment line.

    order_reference links the scan to a checked-out order; without it the
    scan is a direct dispatch keyed by shipment_reference (e.g. a courier
    tracking number).
    """

    store_id: str
    part_number: str | None
    quantity: int | None
    customer: str | None
    shipment_reference: str = ''
    order_reference: str = ''
    unit_price: Decimal | None = None


@dataclass(frozen=True)
class LineOutcome:
    """A line that was applied, with the movements it produced."""

    line: Any
    movements: tuple[Any, ...]


@dataclass(frozen=True)
class LineFailure:
    """A line that was excluded, with the error code and message."""

    line: Any
    code: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResult:
    """Per-line result of a batch operation. Failed lines never abort the rest."""

    applied: list[LineOutcome] = field(default_factory=list)
    failed: list[LineFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class CheckoutResult(BatchResult):
    """Checkout result; backordered lines were short on stock."""

    backordered: list[LineFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.backordered
