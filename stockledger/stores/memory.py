"""
Memory store — thread-safe in-process backend for development and testing.

Implements the QuantityStore and MovementLog protocols without a database:

- Local development without migrations
- Unit tests that exercise the engine from many threads
- Reference behaviour for new backends

State lives in the MemoryStores instance and is lost when it goes away.
Do NOT use in production.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any

from django.utils import timezone

from stockledger.exceptions import LedgerError
from stockledger.models.enums import MovementStatus


@dataclass(frozen=True)
class MemoryItem:
    """Snapshot of an item; writes replace the stored snapshot."""

    store_id: str
    part_number: str
    name: str = ''
    _quantity: int = 0
    cost_price: Decimal = Decimal('0')
    sell_price: Decimal = Decimal('0')
    version: int = 0
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    last_updated: datetime | None = None
    created_at: datetime = field(default_factory=timezone.now)

    @property
    def quantity(self) -> int:
        return self._quantity

    @property
    def key(self) -> tuple[str, str]:
        return (self.store_id, self.part_number)


@dataclass(frozen=True)
class MemoryMovement:
    """Immutable movement row."""

    id: uuid.UUID
    store_id: str
    part_number: str
    kind: str
    delta: int
    status: str
    unit_price: Decimal | None = None
    counterparty: str = ''
    reference_id: str = ''
    reason: str = ''
    reject_reason: str = ''
    quantity_after: int | None = None
    reversal_of_id: uuid.UUID | None = None
    applied_at: datetime = field(default_factory=timezone.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_applied(self) -> bool:
        return self.status == MovementStatus.APPLIED


class MemoryQuantityStore:
    """QuantityStore over a dict keyed by (store_id, part_number)."""

    def __init__(self, stores: MemoryStores):
        self._stores = stores

    def _get(self, store_id, part_number) -> MemoryItem:
        item = self._stores._items.get((store_id, part_number))
        if item is None:
            raise LedgerError('NOT_FOUND', store_id=store_id, part_number=part_number)
        return item

    def _put(self, item: MemoryItem) -> MemoryItem:
        self._stores._track_item(item.key, self._stores._items.get(item.key))
        self._stores._items[item.key] = item
        return item

    def provision(self, store_id, part_number, *, name='',
                  cost_price=Decimal('0'), sell_price=Decimal('0')):
        with self._stores._mutex:
            existing = self._stores._items.get((store_id, part_number))
            if existing is not None:
                return existing
            return self._put(MemoryItem(
                store_id=store_id,
                part_number=part_number,
                name=name,
                cost_price=cost_price,
                sell_price=sell_price,
            ))

    def get_item(self, store_id, part_number):
        with self._stores._mutex:
            return self._get(store_id, part_number)

    def get_quantity(self, store_id, part_number) -> int:
        return self.get_item(store_id, part_number)._quantity

    def lock(self, store_id, part_number, timeout=None):
        # Writers to one key are already serialized by the engine's keyed locks
        return self.get_item(store_id, part_number)

    def apply_delta(self, store_id, part_number, delta) -> int:
        with self._stores._mutex:
            item = self._get(store_id, part_number)
            new_quantity = item._quantity + delta
            if new_quantity < 0:
                raise LedgerError(
                    'INSUFFICIENT_STOCK',
                    available=item._quantity,
                    requested=-delta,
                )
            self._put(replace(
                item,
                _quantity=new_quantity,
                version=item.version + 1,
                last_updated=timezone.now(),
            ))
            return new_quantity

    def set_active(self, store_id, part_number, active):
        with self._stores._mutex:
            return self._put(replace(self._get(store_id, part_number), is_active=active))

    def set_prices(self, store_id, part_number, *, cost_price=None, sell_price=None):
        with self._stores._mutex:
            item = self._get(store_id, part_number)
            if cost_price is not None:
                item = replace(item, cost_price=cost_price)
            if sell_price is not None:
                item = replace(item, sell_price=sell_price)
            return self._put(item)

    def iter_items(self, store_id=None):
        with self._stores._mutex:
            items = sorted(self._stores._items.values(), key=lambda i: i.key)
        return iter([i for i in items if store_id is None or i.store_id == store_id])


class MemoryMovementLog:
    """MovementLog over an append-only list."""

    def __init__(self, stores: MemoryStores):
        self._stores = stores

    def _snapshot(self) -> list[MemoryMovement]:
        with self._stores._mutex:
            return list(self._stores._movements)

    def record(self, *, item, kind, delta, status, **fields):
        movement = MemoryMovement(
            id=fields.pop('id', None) or uuid.uuid4(),
            store_id=item.store_id,
            part_number=item.part_number,
            kind=kind,
            delta=delta,
            status=status,
            **fields,
        )
        with self._stores._mutex:
            if movement.reversal_of_id is not None and any(
                m.reversal_of_id == movement.reversal_of_id for m in self._stores._movements
            ):
                raise LedgerError(
                    'CONFLICT',
                    store_id=item.store_id,
                    part_number=item.part_number,
                )
            self._stores._movements.append(movement)
            self._stores._track_movement(movement)
        return movement

    def get(self, movement_id):
        for movement in self._snapshot():
            if str(movement.id) == str(movement_id):
                return movement
        raise LedgerError('NOT_FOUND', movement_id=str(movement_id))

    def find_applied(self, *, store_id, part_number, kind, reference_id='', movement_id=None):
        applied = [m for m in self._snapshot() if m.is_applied]

        if movement_id is not None:
            for movement in applied:
                if movement.id == movement_id:
                    return movement

        if not reference_id:
            return None

        for movement in applied:
            if (movement.store_id, movement.part_number, movement.kind, movement.reference_id) == (
                store_id, part_number, kind, reference_id
            ):
                return movement
        return None

    def find_reversal(self, movement_id):
        for movement in self._snapshot():
            if movement.reversal_of_id == movement_id:
                return movement
        return None

    def list_by_item(self, store_id, part_number, since=None):
        matching = [
            m for m in self._snapshot()
            if m.store_id == store_id and m.part_number == part_number
            and (since is None or m.applied_at >= since)
        ]
        # sorted() is stable, so equal timestamps keep append order
        return iter(sorted(matching, key=lambda m: m.applied_at))

    def find_by_reference(self, reference_id, *, store_id=None, part_number=None):
        return [
            m for m in self._snapshot()
            if m.reference_id == reference_id
            and (store_id is None or m.store_id == store_id)
            and (part_number is None or m.part_number == part_number)
        ]

    def sum_applied(self, store_id, part_number) -> int:
        return sum(
            m.delta for m in self._snapshot()
            if m.is_applied and m.store_id == store_id and m.part_number == part_number
        )


class _Journal:
    """Writes made inside one atomic() level, enough to undo them."""

    def __init__(self):
        self.items: dict[tuple[str, str], MemoryItem | None] = {}
        self.movements: list[MemoryMovement] = []

    def merge_into(self, parent: _Journal) -> None:
        for key, previous in self.items.items():
            parent.items.setdefault(key, previous)
        parent.movements.extend(self.movements)


class MemoryStores:
    """
    In-memory backend bundle.

    atomic() keeps a per-thread journal of the block's writes and undoes them
    if the block raises; nested blocks behave like savepoints. The mutex is
    only held for each read or write, so transactions on different items run
    side by side. Writers to one item are serialized by the engine's keyed
    locks.
    """

    def __init__(self):
        self._mutex = threading.RLock()
        self._local = threading.local()
        self._items: dict[tuple[str, str], MemoryItem] = {}
        self._movements: list[MemoryMovement] = []
        self.quantities = MemoryQuantityStore(self)
        self.movements = MemoryMovementLog(self)

    def _journals(self) -> list[_Journal]:
        journals = getattr(self._local, 'journals', None)
        if journals is None:
            journals = self._local.journals = []
        return journals

    def _track_item(self, key, previous) -> None:
        journals = self._journals()
        if journals:
            journals[-1].items.setdefault(key, previous)

    def _track_movement(self, movement) -> None:
        journals = self._journals()
        if journals:
            journals[-1].movements.append(movement)

    def _undo(self, journal: _Journal) -> None:
        with self._mutex:
            for key, previous in journal.items.items():
                if previous is None:
                    self._items.pop(key, None)
                else:
                    self._items[key] = previous
            undone = {id(m) for m in journal.movements}
            self._movements[:] = [m for m in self._movements if id(m) not in undone]

    @contextmanager
    def atomic(self):
        journals = self._journals()
        journal = _Journal()
        journals.append(journal)
        try:
            yield
        except BaseException:
            journals.pop()
            self._undo(journal)
            raise
        else:
            journals.pop()
            if journals:
                journal.merge_into(journals[-1])
