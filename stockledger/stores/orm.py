"""
ORM store — StockItem and Movement rows through the Django ORM.

Concurrency:
    - lock() takes a row lock with select_for_update(); given a timeout it
      polls with NOWAIT until the deadline, then raises TIMEOUT
    - apply_delta() writes with a compare-and-swap on StockItem.version,
      so a writer that skipped lock() still cannot overwrite a newer value
    - the stock_item_quantity_non_negative check constraint backs the
      in-Python non-negativity check
"""

import time
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import IntegrityError, OperationalError, connection, transaction
from django.db.models import Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from stockledger.exceptions import LedgerError
from stockledger.models.enums import MovementStatus
from stockledger.models.item import StockItem
from stockledger.models.movement import Movement

LOCK_POLL_INTERVAL = 0.02


class OrmQuantityStore:
    """QuantityStore over the StockItem table."""

    def provision(self, store_id, part_number, *, name='',
                  cost_price=Decimal('0'), sell_price=Decimal('0')):
        try:
            with transaction.atomic():
                item, _ = StockItem.objects.get_or_create(
                    store_id=store_id,
                    part_number=part_number,
                    defaults={
                        'name': name,
                        'cost_price': cost_price,
                        'sell_price': sell_price,
                    },
                )
        except IntegrityError:
            # Lost a concurrent create; the row exists now
            item = StockItem.objects.get(store_id=store_id, part_number=part_number)
        return item

    def get_item(self, store_id, part_number):
        try:
            return StockItem.objects.get(store_id=store_id, part_number=part_number)
        except StockItem.DoesNotExist:
            raise LedgerError('NOT_FOUND', store_id=store_id, part_number=part_number) from None

    def get_quantity(self, store_id, part_number) -> int:
        return self.get_item(store_id, part_number)._quantity

    def lock(self, store_id, part_number, timeout=None):
        """
        Row-lock the item for the rest of the transaction.

        With a timeout, and a database that supports NOWAIT, the lock is
        polled inside a savepoint until the deadline so a row held by
        another process cannot block forever.

        Raises:
            LedgerError('NOT_FOUND'): Unknown item
            LedgerError('TIMEOUT'): Row still locked after timeout seconds
        """
        if timeout is None or not connection.features.has_select_for_update_nowait:
            return self._select_locked(store_id, part_number, nowait=False)

        deadline = time.monotonic() + timeout
        while True:
            try:
                with transaction.atomic():
                    return self._select_locked(store_id, part_number, nowait=True)
            except OperationalError:
                if time.monotonic() >= deadline:
                    raise LedgerError(
                        'TIMEOUT',
                        store_id=store_id,
                        part_number=part_number,
                        timeout=timeout,
                    ) from None
                time.sleep(LOCK_POLL_INTERVAL)

    def _select_locked(self, store_id, part_number, *, nowait):
        try:
            return StockItem.objects.select_for_update(nowait=nowait).get(
                store_id=store_id, part_number=part_number
            )
        except StockItem.DoesNotExist:
            raise LedgerError('NOT_FOUND', store_id=store_id, part_number=part_number) from None

    def apply_delta(self, store_id, part_number, delta) -> int:
        item = self.get_item(store_id, part_number)
        new_quantity = item._quantity + delta

        if new_quantity < 0:
            raise LedgerError(
                'INSUFFICIENT_STOCK',
                available=item._quantity,
                requested=-delta,
            )

        updated = StockItem.objects.filter(pk=item.pk, version=item.version).update(
            _quantity=new_quantity,
            version=item.version + 1,
            last_updated=timezone.now(),
        )
        if not updated:
            raise LedgerError(
                'CONFLICT',
                store_id=store_id,
                part_number=part_number,
                version=item.version,
            )
        return new_quantity

    def set_active(self, store_id, part_number, active):
        item = self.get_item(store_id, part_number)
        item.is_active = active
        item.save(update_fields=['is_active'])
        return item

    def set_prices(self, store_id, part_number, *, cost_price=None, sell_price=None):
        item = self.get_item(store_id, part_number)
        fields = []
        if cost_price is not None:
            item.cost_price = cost_price
            fields.append('cost_price')
        if sell_price is not None:
            item.sell_price = sell_price
            fields.append('sell_price')
        if fields:
            item.save(update_fields=fields)
        return item

    def iter_items(self, store_id=None):
        qs = StockItem.objects.all()
        if store_id is not None:
            qs = qs.for_store(store_id)
        return qs.iterator()


class OrmMovementLog:
    """MovementLog over the Movement table."""

    def record(self, *, item, kind, delta, status, **fields):
        try:
            with transaction.atomic():
                return Movement.objects.create(
                    item=item,
                    store_id=item.store_id,
                    part_number=item.part_number,
                    kind=kind,
                    delta=delta,
                    status=status,
                    **fields,
                )
        except IntegrityError as exc:
            # reversal_of is unique: another writer reversed the same movement
            raise LedgerError(
                'CONFLICT',
                store_id=item.store_id,
                part_number=item.part_number,
                detail=str(exc),
            ) from exc

    def get(self, movement_id):
        try:
            return Movement.objects.get(pk=movement_id)
        except (Movement.DoesNotExist, ValidationError, ValueError):
            raise LedgerError('NOT_FOUND', movement_id=str(movement_id)) from None

    def find_applied(self, *, store_id, part_number, kind, reference_id='', movement_id=None):
        applied = Movement.objects.filter(status=MovementStatus.APPLIED)

        if movement_id is not None:
            movement = applied.filter(pk=movement_id).first()
            if movement is not None:
                return movement

        if not reference_id:
            return None

        return applied.filter(
            store_id=store_id,
            part_number=part_number,
            kind=kind,
            reference_id=reference_id,
        ).order_by('applied_at').first()

    def find_reversal(self, movement_id):
        return Movement.objects.filter(reversal_of_id=movement_id).first()

    def list_by_item(self, store_id, part_number, since=None):
        qs = Movement.objects.filter(store_id=store_id, part_number=part_number)
        if since is not None:
            qs = qs.filter(applied_at__gte=since)
        return qs.order_by('applied_at').iterator()

    def find_by_reference(self, reference_id, *, store_id=None, part_number=None):
        qs = Movement.objects.filter(reference_id=reference_id)
        if store_id is not None:
            qs = qs.filter(store_id=store_id)
        if part_number is not None:
            qs = qs.filter(part_number=part_number)
        return list(qs.order_by('applied_at'))

    def sum_applied(self, store_id, part_number) -> int:
        return Movement.objects.filter(
            store_id=store_id,
            part_number=part_number,
            status=MovementStatus.APPLIED,
        ).aggregate(t=Coalesce(Sum('delta'), 0))['t']


class OrmStores:
    """Default backend bundle: Django ORM and database transactions."""

    def __init__(self):
        self.quantities = OrmQuantityStore()
        self.movements = OrmMovementLog()

    def atomic(self):
        return transaction.atomic()
