"""
Reconciliation engine — the only component that changes on-hand quantity.

Every quantity change goes through submit(), reverse() or convert():

    1. validate the request (kind/sign, integer quantity, ids, price)
    2. return the already-applied movement for a retried request
    3. take the per-item lock (bounded wait, cancellable while waiting)
    4. in one store transaction: lock the row (same bounded wait),
       re-check idempotency, apply the delta, record the movement with a
       quantity snapshot
    5. retry CONFLICT a bounded number of times

A movement that would drive stock negative is recorded as REJECTED and the
INSUFFICIENT_STOCK error carries its id. Nothing is ever clamped to zero.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal

from stockledger.conf import ledger_settings
from stockledger.exceptions import LedgerError
from stockledger.locks import KeyedLocks
from stockledger.models.enums import (
    POSITIVE_KINDS,
    REVERSAL_KIND,
    MovementKind,
    MovementStatus,
)
from stockledger.models.item import normalize_part_number
from stockledger.money import to_money
from stockledger.protocols.store import MovementRequest

logger = logging.getLogger('stockledger')


def _kind_matches_sign(kind, delta: int) -> bool:
    return delta != 0 and (kind in POSITIVE_KINDS) == (delta > 0)


def _is_quantity(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ReconciliationEngine:
    """
    Applies movements to a QuantityStore and records them in a MovementLog.

    Args:
        stores: Backend bundle (None = configured STORE_BACKEND)
        locks: Keyed lock registry (None = a private one)
        lock_timeout: Seconds to wait for an item lock
        conflict_retries: Automatic retries on CONFLICT
        conflict_backoff: Base sleep between retries, in seconds
    """

    def __init__(self, stores=None, *, locks=None, lock_timeout=None,
                 conflict_retries=None, conflict_backoff=None):
        if stores is None:
            from stockledger.stores import get_stores
            stores = get_stores()
        self.stores = stores
        self.locks = KeyedLocks() if locks is None else locks
        self.lock_timeout = (
            ledger_settings.LOCK_TIMEOUT if lock_timeout is None else lock_timeout
        )
        self.conflict_retries = (
            ledger_settings.CONFLICT_RETRIES if conflict_retries is None else conflict_retries
        )
        self.conflict_backoff = (
            ledger_settings.CONFLICT_BACKOFF if conflict_backoff is None else conflict_backoff
        )

    # ══════════════════════════════════════════════════════════════
    # QUERIES
    # ══════════════════════════════════════════════════════════════

    def get_item(self, store_id, part_number):
        return self.stores.quantities.get_item(*self.key(store_id, part_number))

    def get_quantity(self, store_id, part_number) -> int:
        """
        Raises:
            LedgerError('NOT_FOUND'): If the item was never provisioned
        """
        return self.stores.quantities.get_quantity(*self.key(store_id, part_number))

    def get_movement(self, movement_id):
        return self.stores.movements.get(movement_id)

    def list_by_item(self, store_id, part_number, since=None):
        """Movements of the item, oldest first. Each call re-queries."""
        return self.stores.movements.list_by_item(*self.key(store_id, part_number), since=since)

    def find_by_reference(self, reference_id, store_id=None, part_number=None):
        if part_number is not None:
            part_number = normalize_part_number(part_number)
        return self.stores.movements.find_by_reference(
            reference_id, store_id=store_id, part_number=part_number
        )

    # ══════════════════════════════════════════════════════════════
    # ITEMS
    # ══════════════════════════════════════════════════════════════

    def provision(self, store_id, part_number, quantity=0, *, name='',
                  cost_price=Decimal('0'), sell_price=Decimal('0'),
                  reason='Opening balance'):
        """
        Create an item; a non-zero opening quantity is booked as an IN movement.

        Re-provisioning an existing item returns it unchanged (the opening IN
        is idempotent on its reference).
        """
        store_id, part_number = self.key(store_id, part_number)
        if not _is_quantity(quantity) or quantity < 0:
            raise LedgerError('INVALID_MOVEMENT', field='quantity', value=quantity)
        cost = to_money(cost_price)
        sell = to_money(sell_price)

        with self.locks.hold([(store_id, part_number)], self.lock_timeout):
            item = self.stores.quantities.provision(
                store_id, part_number, name=name, cost_price=cost, sell_price=sell
            )
            if quantity:
                self.submit(MovementRequest(
                    store_id=store_id,
                    part_number=part_number,
                    kind=MovementKind.IN,
                    quantity_delta=quantity,
                    reference_id=f"opening:{store_id}:{part_number}",
                    unit_price=cost,
                    reason=reason,
                ))
                item = self.stores.quantities.get_item(store_id, part_number)
        return item

    def deactivate(self, store_id, part_number):
        """Soft-delete: the item keeps its history but accepts no new movements."""
        return self._set_active(store_id, part_number, False)

    def reactivate(self, store_id, part_number):
        return self._set_active(store_id, part_number, True)

    def _set_active(self, store_id, part_number, active):
        key = self.key(store_id, part_number)
        with self.locks.hold([key], self.lock_timeout):
            item = self.stores.quantities.set_active(*key, active)
        logger.info(
            "ledger.item.active_changed",
            extra={"store": key[0], "part": key[1], "active": active},
        )
        return item

    def update_prices(self, store_id, part_number, *, cost_price=None, sell_price=None):
        key = self.key(store_id, part_number)
        with self.locks.hold([key], self.lock_timeout):
            return self.stores.quantities.set_prices(
                *key,
                cost_price=None if cost_price is None else to_money(cost_price),
                sell_price=None if sell_price is None else to_money(sell_price),
            )

    # ══════════════════════════════════════════════════════════════
    # MOVEMENTS
    # ══════════════════════════════════════════════════════════════

    def submit(self, request: MovementRequest, *, timeout=None,
               cancel: threading.Event | None = None):
        """
        Apply a movement request.

        Returns:
            The APPLIED movement (a previously applied one for retried requests)

        Raises:
            LedgerError('INVALID_MOVEMENT'): Malformed request or sign/kind mismatch
            LedgerError('NOT_FOUND'): Unknown item (IN provisions it instead)
            LedgerError('ITEM_INACTIVE'): Item was deactivated
            LedgerError('INSUFFICIENT_STOCK'): Rejected; data['movement_id'] is logged
            LedgerError('TIMEOUT'), LedgerError('CANCELLED'): Lock not acquired
            LedgerError('CONFLICT'): Still losing races after the retries
        """
        request = self._validate(request)

        existing = self._find_applied(request)
        if existing is not None:
            return self._replayed(existing, request)

        key = (request.store_id, request.part_number)
        wait = self._timeout(timeout)
        with self.locks.hold([key], wait, cancel):
            return self._with_retry(lambda: self._apply(request, wait))

    def reverse(self, movement_id, *, kind=None, reason='', metadata=None,
                timeout=None, cancel: threading.Event | None = None):
        """
        Compensate an applied movement with an inverted delta.

        Kind defaults to in→out, out→return, reserve→release, release→reserve,
        return→out; an explicit kind is accepted when its sign fits.

        Raises:
            LedgerError('NOT_FOUND'): Unknown movement
            LedgerError('ALREADY_REVERSED'): The movement has a reversal
            LedgerError('INVALID_MOVEMENT'): Rejected movement, a reversal, or bad kind
            LedgerError('INSUFFICIENT_STOCK'): Stock already consumed
        """
        original = self.stores.movements.get(movement_id)
        kind = self._reversal_kind(original, kind)
        key = (original.store_id, original.part_number)

        wait = self._timeout(timeout)
        with self.locks.hold([key], wait, cancel):
            return self._with_retry(
                lambda: self._reverse(original, kind, reason, metadata or {}, wait)
            )

    def convert(self, movement_id, kind, *, reversal_kind=None, reason='',
                metadata=None, unit_price=None, counterparty=None,
                timeout=None, cancel: threading.Event | None = None):
        """
        Replace an applied movement with one of another kind, same quantity.

        Books the reversal and the replacement in one transaction under one
        lock, so the quantity is never visible to other writers in between.
        Used to turn a checkout RESERVE into an OUT on shipment.

        Returns:
            (reversal, replacement)
        """
        original = self.stores.movements.get(movement_id)
        kind = self._coerce_kind(kind)
        if not _kind_matches_sign(kind, original.delta):
            raise LedgerError(
                'INVALID_MOVEMENT',
                field='kind',
                kind=str(kind),
                delta=original.delta,
            )
        reversal_kind = self._reversal_kind(original, reversal_kind)
        price = None if unit_price is None else self._price(unit_price)
        key = (original.store_id, original.part_number)

        wait = self._timeout(timeout)
        with self.locks.hold([key], wait, cancel):
            return self._with_retry(lambda: self._convert(
                original, kind, reversal_kind, reason, metadata or {}, price, counterparty, wait
            ))

    def record_rejection(self, request: MovementRequest, available: int) -> LedgerError:
        """
        Log a REJECTED movement for a request refused without being applied.

        Used when a caller pre-checks availability for several items and
        refuses the whole batch. Returns the INSUFFICIENT_STOCK error to raise
        or report, with data['movement_id'] set.
        """
        request = self._validate(request)
        exc = LedgerError(
            'INSUFFICIENT_STOCK',
            available=available,
            requested=-request.quantity_delta,
        )
        rejected = self._reject(
            request.store_id,
            request.part_number,
            exc,
            kind=request.kind,
            delta=request.quantity_delta,
            unit_price=request.unit_price,
            counterparty=request.counterparty,
            reference_id=request.reference_id,
            reason=request.reason,
            metadata={**request.metadata, 'request_id': str(request.id)},
        )
        exc.data['movement_id'] = rejected.id
        return exc

    @contextmanager
    def locked(self, keys, *, timeout=None, cancel: threading.Event | None = None):
        """Hold several item locks at once (e.g. every line of an order)."""
        normalized = [self.key(store_id, part_number) for store_id, part_number in keys]
        with self.locks.hold(normalized, self._timeout(timeout), cancel):
            yield

    # ══════════════════════════════════════════════════════════════
    # INTERNALS
    # ══════════════════════════════════════════════════════════════

    @staticmethod
    def key(store_id, part_number) -> tuple[str, str]:
        """Validated (store_id, normalized part_number)."""
        if not isinstance(store_id, str) or not store_id.strip():
            raise LedgerError('INVALID_MOVEMENT', field='store_id', value=store_id)
        part_number = normalize_part_number(part_number)
        if not part_number:
            raise LedgerError('INVALID_MOVEMENT', field='part_number')
        return store_id, part_number

    def _timeout(self, timeout) -> float:
        return self.lock_timeout if timeout is None else timeout

    @staticmethod
    def _coerce_kind(kind) -> MovementKind:
        try:
            return MovementKind(kind)
        except ValueError:
            raise LedgerError('INVALID_MOVEMENT', field='kind', value=kind) from None

    @staticmethod
    def _price(value) -> Decimal:
        try:
            return to_money(value)
        except LedgerError:
            raise LedgerError('INVALID_MOVEMENT', field='unit_price', value=value) from None

    def _validate(self, request) -> MovementRequest:
        if not isinstance(request, MovementRequest):
            raise LedgerError('INVALID_MOVEMENT', field='request')

        store_id, part_number = self.key(request.store_id, request.part_number)
        kind = self._coerce_kind(request.kind)
        delta = request.quantity_delta

        if not _is_quantity(delta):
            raise LedgerError('INVALID_MOVEMENT', field='quantity_delta', value=delta)
        if not _kind_matches_sign(kind, delta):
            raise LedgerError(
                'INVALID_MOVEMENT',
                field='quantity_delta',
                kind=str(kind),
                value=delta,
            )

        return replace(
            request,
            store_id=store_id,
            part_number=part_number,
            kind=kind,
            reference_id=str(request.reference_id or '').strip(),
            unit_price=None if request.unit_price is None else self._price(request.unit_price),
        )

    def _reversal_kind(self, original, kind) -> MovementKind:
        if kind is None:
            return REVERSAL_KIND[MovementKind(original.kind)]
        kind = self._coerce_kind(kind)
        if not _kind_matches_sign(kind, -original.delta):
            raise LedgerError(
                'INVALID_MOVEMENT',
                field='kind',
                kind=str(kind),
                delta=-original.delta,
            )
        return kind

    def _find_applied(self, request):
        return self.stores.movements.find_applied(
            store_id=request.store_id,
            part_number=request.part_number,
            kind=request.kind,
            reference_id=request.reference_id,
            movement_id=request.id,
        )

    def _replayed(self, existing, request):
        if existing.delta != request.quantity_delta:
            logger.warning(
                "ledger.movement.replay_mismatch",
                extra={
                    "movement_id": str(existing.id),
                    "reference": request.reference_id,
                    "recorded_delta": existing.delta,
                    "requested_delta": request.quantity_delta,
                },
            )
        logger.info(
            "ledger.movement.replayed",
            extra={"movement_id": str(existing.id), "reference": request.reference_id},
        )
        return existing

    def _with_retry(self, operation):
        for attempt in range(self.conflict_retries + 1):
            try:
                return operation()
            except LedgerError as exc:
                if exc.code != 'CONFLICT' or attempt >= self.conflict_retries:
                    raise
                logger.warning(
                    "ledger.conflict.retry",
                    extra={"attempt": attempt + 1, "detail": exc.data},
                )
                time.sleep(self.conflict_backoff * (attempt + 1))

    def _lock_item(self, request, timeout):
        quantities = self.stores.quantities
        try:
            item = quantities.lock(request.store_id, request.part_number, timeout=timeout)
        except LedgerError as exc:
            if exc.code != 'NOT_FOUND' or request.kind != MovementKind.IN:
                raise
            quantities.provision(
                request.store_id,
                request.part_number,
                cost_price=request.unit_price or Decimal('0'),
            )
            item = quantities.lock(request.store_id, request.part_number, timeout=timeout)
            logger.info(
                "ledger.item.provisioned",
                extra={"store": request.store_id, "part": request.part_number},
            )

        if not item.is_active:
            raise LedgerError(
                'ITEM_INACTIVE',
                store_id=request.store_id,
                part_number=request.part_number,
            )
        return item

    def _default_price(self, item, kind) -> Decimal:
        return item.cost_price if kind == MovementKind.IN else item.sell_price

    def _book(self, item, *, kind, delta, **fields):
        """Apply delta and record the APPLIED movement. Caller holds lock + transaction."""
        new_quantity = self.stores.quantities.apply_delta(item.store_id, item.part_number, delta)
        movement = self.stores.movements.record(
            item=item,
            kind=kind,
            delta=delta,
            status=MovementStatus.APPLIED,
            quantity_after=new_quantity,
            **fields,
        )
        logger.info(
            "ledger.movement.applied",
            extra={
                "movement_id": str(movement.id),
                "store": item.store_id,
                "part": item.part_number,
                "kind": str(kind),
                "delta": delta,
                "quantity_after": new_quantity,
                "reference": fields.get('reference_id', ''),
            },
        )
        return movement

    def _apply(self, request, timeout):
        try:
            with self.stores.atomic():
                item = self._lock_item(request, timeout)

                existing = self._find_applied(request)
                if existing is not None:
                    return self._replayed(existing, request)

                return self._book(
                    item,
                    kind=request.kind,
                    delta=request.quantity_delta,
                    id=request.id,
                    unit_price=(
                        request.unit_price if request.unit_price is not None
                        else self._default_price(item, request.kind)
                    ),
                    counterparty=request.counterparty,
                    reference_id=request.reference_id,
                    reason=request.reason,
                    metadata=dict(request.metadata),
                )
        except LedgerError as exc:
            if exc.code != 'INSUFFICIENT_STOCK':
                raise
            rejected = self._reject(
                request.store_id,
                request.part_number,
                exc,
                kind=request.kind,
                delta=request.quantity_delta,
                unit_price=request.unit_price,
                counterparty=request.counterparty,
                reference_id=request.reference_id,
                reason=request.reason,
                metadata={**request.metadata, 'request_id': str(request.id)},
            )
            exc.data['movement_id'] = rejected.id
            raise

    def _reject(self, store_id, part_number, exc, *, kind, delta, **fields):
        """Record a REJECTED movement for audit. It never touches quantity."""
        with self.stores.atomic():
            item = self.stores.quantities.get_item(store_id, part_number)
            movement = self.stores.movements.record(
                item=item,
                kind=kind,
                delta=delta,
                status=MovementStatus.REJECTED,
                reject_reason=exc.message,
                quantity_after=exc.available,
                **fields,
            )
        logger.info(
            "ledger.movement.rejected",
            extra={
                "movement_id": str(movement.id),
                "store": store_id,
                "part": part_number,
                "kind": str(kind),
                "delta": delta,
                "available": exc.available,
                "reference": fields.get('reference_id', ''),
            },
        )
        return movement

    def _check_reversible(self, original):
        if original.status != MovementStatus.APPLIED:
            raise LedgerError(
                'INVALID_MOVEMENT',
                'Only applied movements can be reversed',
                movement_id=str(original.id),
            )
        if original.reversal_of_id is not None:
            raise LedgerError(
                'INVALID_MOVEMENT',
                'A reversal cannot itself be reversed',
                movement_id=str(original.id),
            )
        reversal = self.stores.movements.find_reversal(original.id)
        if reversal is not None:
            raise LedgerError(
                'ALREADY_REVERSED',
                movement_id=str(original.id),
                reversal_id=str(reversal.id),
            )

    def _reverse(self, original, kind, reason, metadata, timeout):
        reason = reason or f"Reversal of {original.id}"
        try:
            with self.stores.atomic():
                item = self.stores.quantities.lock(
                    original.store_id, original.part_number, timeout=timeout
                )
                self._check_reversible(original)
                movement = self._book(
                    item,
                    kind=kind,
                    delta=-original.delta,
                    unit_price=original.unit_price,
                    counterparty=original.counterparty,
                    reference_id=original.reference_id,
                    reason=reason,
                    reversal_of_id=original.id,
                    metadata=dict(metadata),
                )
        except LedgerError as exc:
            if exc.code != 'INSUFFICIENT_STOCK':
                raise
            # Not linked through reversal_of, so a later reversal stays possible
            rejected = self._reject(
                original.store_id,
                original.part_number,
                exc,
                kind=kind,
                delta=-original.delta,
                unit_price=original.unit_price,
                counterparty=original.counterparty,
                reference_id=original.reference_id,
                reason=reason,
                metadata={**metadata, 'reversal_of': str(original.id)},
            )
            exc.data['movement_id'] = rejected.id
            raise

        logger.info(
            "ledger.movement.reversed",
            extra={"movement_id": str(original.id), "reversal_id": str(movement.id)},
        )
        return movement

    def _convert(self, original, kind, reversal_kind, reason, metadata, unit_price, counterparty,
                 timeout):
        with self.stores.atomic():
            item = self.stores.quantities.lock(
                original.store_id, original.part_number, timeout=timeout
            )
            self._check_reversible(original)

            reversal = self._book(
                item,
                kind=reversal_kind,
                delta=-original.delta,
                unit_price=original.unit_price,
                counterparty=original.counterparty,
                reference_id=original.reference_id,
                reason=reason or f"Conversion of {original.id}",
                reversal_of_id=original.id,
                metadata=dict(metadata),
            )
            replacement = self._book(
                item,
                kind=kind,
                delta=original.delta,
                unit_price=original.unit_price if unit_price is None else unit_price,
                counterparty=original.counterparty if counterparty is None else counterparty,
                reference_id=original.reference_id,
                reason=reason or f"Conversion of {original.id}",
                metadata=dict(metadata),
            )

        logger.info(
            "ledger.movement.converted",
            extra={
                "movement_id": str(original.id),
                "reversal_id": str(reversal.id),
                "replacement_id": str(replacement.id),
                "kind": str(kind),
            },
        )
        return reversal, replacement


# Cached default engine
_lock = threading.Lock()
_engine = None


def get_engine() -> ReconciliationEngine:
    """Engine over the configured store backend, shared by the ledger facade."""
    global _engine

    if _engine is None:
        with _lock:
            if _engine is None:  # double-checked
                _engine = ReconciliationEngine()
    return _engine


def reset_engine() -> None:
    """Drop the cached engine (and its locks). Useful for testing."""
    global _engine
    _engine = None
