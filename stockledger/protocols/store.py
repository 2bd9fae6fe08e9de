"""
Store Protocols — what the reconciliation engine needs from storage.

Any backend with an atomic update-if-unchanged on the item row and a durable
append for movement rows can implement these. Stockledger ships two:
``stockledger.stores.orm`` (Django ORM) and ``stockledger.stores.memory``.
"""

from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, Protocol, runtime_checkable


@dataclass(frozen=True)
class MovementRequest:
    """A request to change on-hand quantity. Validated by the engine."""

    store_id: str
    part_number: str
    kind: str
    quantity_delta: int
    reference_id: str = ''
    unit_price: Decimal | None = None
    counterparty: str = ''
    reason: str = ''
    metadata: dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)


@runtime_checkable
class QuantityStore(Protocol):
    """Authoritative on-hand quantity per (store_id, part_number)."""

    def provision(self, store_id: str, part_number: str, *, name: str = '',
                  cost_price: Decimal = Decimal('0'),
                  sell_price: Decimal = Decimal('0')) -> Any:
        """Create the item with quantity 0. Returns the existing item if present."""
        ...

    def get_item(self, store_id: str, part_number: str) -> Any:
        """
        Raises:
            LedgerError('NOT_FOUND'): If the item was never provisioned
        """
        ...

    def get_quantity(self, store_id: str, part_number: str) -> int:
        ...

    def lock(self, store_id: str, part_number: str, timeout: float | None = None) -> Any:
        """
        Lock the item row until the enclosing transaction ends and return it.

        Raises:
            LedgerError('NOT_FOUND'): Unknown item
            LedgerError('TIMEOUT'): Row not lockable within timeout seconds
        """
        ...

    def apply_delta(self, store_id: str, part_number: str, delta: int) -> int:
        """
        Atomically add delta and return the new quantity.

        Raises:
            LedgerError('NOT_FOUND'): Unknown item
            LedgerError('INSUFFICIENT_STOCK'): Result would be negative
            LedgerError('CONFLICT'): Row changed between read and write
        """
        ...

    def set_active(self, store_id: str, part_number: str, active: bool) -> Any:
        ...

    def set_prices(self, store_id: str, part_number: str, *,
                   cost_price: Decimal | None = None,
                   sell_price: Decimal | None = None) -> Any:
        ...

    def iter_items(self, store_id: str | None = None) -> Iterator[Any]:
        ...


@runtime_checkable
class MovementLog(Protocol):
    """Append-only, queryable movement history."""

    def record(self, *, item: Any, kind: str, delta: int, status: str,
               **fields) -> Any:
        """Persist a movement (applied or rejected) and return it."""
        ...

    def get(self, movement_id) -> Any:
        """
        Raises:
            LedgerError('NOT_FOUND'): Unknown movement id
        """
        ...

    def find_applied(self, *, store_id: str, part_number: str, kind: str,
                     reference_id: str = '', movement_id=None) -> Any | None:
        """Applied movement matching the id, or the (reference, kind, item) key."""
        ...

    def find_reversal(self, movement_id) -> Any | None:
        ...

    def list_by_item(self, store_id: str, part_number: str,
                     since: datetime | None = None) -> Iterator[Any]:
        """Movements for the item ordered by applied_at ascending."""
        ...

    def find_by_reference(self, reference_id: str, *, store_id: str | None = None,
                          part_number: str | None = None) -> list[Any]:
        ...

    def sum_applied(self, store_id: str, part_number: str) -> int:
        ...


class Stores(Protocol):
    """Backend bundle handed to the engine."""

    quantities: QuantityStore
    movements: MovementLog

    def atomic(self) -> AbstractContextManager:
        """Transaction spanning quantity and movement writes."""
        ...
