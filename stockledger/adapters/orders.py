"""
Stockledger Order Adapter — order and shipment events as ledger movements.

Maps the lifecycle of an order line onto the Reconciliation Engine:

    checkout        NONE      → RESERVED   RESERVE (or OUT in "sale" mode)
    cancel          RESERVED  → RELEASED   RELEASE reversing the checkout
    ship            RESERVED  → SHIPPED    checkout converted to OUT
    direct ship     NONE      → SHIPPED    OUT keyed by the shipment reference
    return          SHIPPED   → RETURNED   RETURN up to the shipped quantity

The state of a line is never stored; it is derived from the movements booked
for (store_id, part_number, reference), each tagged with metadata['line_event'].

Usage:
    from stockledger.adapters import get_order_adapter

    adapter = get_order_adapter()
    result = adapter.on_checkout(order)

Settings:
    STOCKLEDGER = {
        "CHECKOUT_MODE": "reserve",      # or "sale"
        "SHORTFALL_POLICY": "reject",    # or "backorder"
    }
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from django.core.exceptions import ImproperlyConfigured

from stockledger.conf import ledger_settings
from stockledger.exceptions import LedgerError
from stockledger.models.enums import LineState, MovementKind
from stockledger.models.item import normalize_part_number
from stockledger.money import line_total, unit_price
from stockledger.protocols.orders import (
    BatchResult,
    CheckoutResult,
    LineFailure,
    LineOutcome,
    OrderLine,
)
from stockledger.protocols.store import MovementRequest

logger = logging.getLogger('stockledger')

LINE_EVENT = 'line_event'
CHECKOUT = 'checkout'
CANCEL = 'cancel'
SHIP = 'ship'
RETURN = 'return'

CHECKOUT_MODES = ('reserve', 'sale')
SHORTFALL_POLICIES = ('reject', 'backorder')


def _event(movement) -> str | None:
    event = (movement.metadata or {}).get(LINE_EVENT)
    if event:
        return event
    # Movements booked directly through the engine carry no tag
    if movement.kind == MovementKind.RESERVE and movement.reversal_of_id is None:
        return CHECKOUT
    if movement.kind == MovementKind.RELEASE and movement.reversal_of_id is not None:
        return CANCEL
    return None


def _is_quantity(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _failure(line, exc: LedgerError) -> LineFailure:
    return LineFailure(line=line, code=exc.code, message=exc.message, data=dict(exc.data))


class LineHistory:
    """Applied movements of one order line, and the state they imply."""

    def __init__(self, movements):
        self.movements = [m for m in movements if m.is_applied]

    def _with_event(self, event):
        return [m for m in self.movements if _event(m) == event]

    @property
    def state(self) -> LineState:
        events = {_event(m) for m in self.movements}
        if RETURN in events:
            return LineState.RETURNED
        if SHIP in events:
            return LineState.SHIPPED
        if CANCEL in events:
            return LineState.RELEASED
        if CHECKOUT in events:
            return LineState.RESERVED
        return LineState.NONE

    @property
    def checkout(self):
        for movement in self._with_event(CHECKOUT):
            if movement.reversal_of_id is None:
                return movement
        return None

    @property
    def shipments(self):
        return [m for m in self._with_event(SHIP) if m.kind == MovementKind.OUT]

    @property
    def shipped_quantity(self) -> int:
        return sum(-m.delta for m in self.shipments)

    @property
    def returned_quantity(self) -> int:
        return sum(m.delta for m in self._with_event(RETURN) if m.kind == MovementKind.RETURN)

    def event_movements(self, event) -> tuple:
        return tuple(self._with_event(event))


class OrderAdapter:
    """
    Translates order lifecycle events into ledger movements.

    Args:
        engine: ReconciliationEngine (None = the shared engine)
        checkout_mode: "reserve" or "sale" (None = CHECKOUT_MODE setting)
        shortfall_policy: "reject" or "backorder" (None = SHORTFALL_POLICY setting)
    """

    def __init__(self, engine=None, *, checkout_mode=None, shortfall_policy=None):
        if engine is None:
            from stockledger.services.reconciliation import get_engine
            engine = get_engine()
        self.engine = engine
        self.checkout_mode = checkout_mode or ledger_settings.CHECKOUT_MODE
        self.shortfall_policy = shortfall_policy or ledger_settings.SHORTFALL_POLICY

        if self.checkout_mode not in CHECKOUT_MODES:
            raise ImproperlyConfigured(
                f"STOCKLEDGER['CHECKOUT_MODE'] must be one of {CHECKOUT_MODES}, "
                f"got {self.checkout_mode!r}"
            )
        if self.shortfall_policy not in SHORTFALL_POLICIES:
            raise ImproperlyConfigured(
                f"STOCKLEDGER['SHORTFALL_POLICY'] must be one of {SHORTFALL_POLICIES}, "
                f"got {self.shortfall_policy!r}"
            )

    # ══════════════════════════════════════════════════════════════
    # STATE
    # ══════════════════════════════════════════════════════════════

    def history(self, store_id, part_number, reference) -> LineHistory:
        store_id, part_number = self.engine.key(store_id, part_number)
        return LineHistory(self.engine.find_by_reference(
            reference, store_id=store_id, part_number=part_number
        ))

    def line_state(self, store_id, part_number, reference) -> LineState:
        return self.history(store_id, part_number, reference).state

    # ══════════════════════════════════════════════════════════════
    # CHECKOUT
    # ══════════════════════════════════════════════════════════════

    def on_checkout(self, order) -> CheckoutResult:
        """
        Reserve (or sell) every line of an order.

        Under the "reject" policy any failed line fails the whole checkout and
        nothing is applied. A short line is logged as a REJECTED movement and
        LedgerError('INSUFFICIENT_STOCK') is raised with data['lines']; any
        other failure (unknown part, incomplete line, invalid transition) raises
        that line's error with data['lines'] before stock is checked.
        Under "backorder" short lines land in result.backordered and other
        failures in result.failed.

        Re-running a checkout returns the existing reservations.
        """
        result = CheckoutResult()
        lines, result.failed = self._merge(order.lines)
        store_id = order.store_id
        keys = [(store_id, line.part_number) for line in lines]

        with self.engine.locked(keys):
            pending = []
            for line in lines:
                try:
                    existing = self._checkout_replay(store_id, line, order.reference)
                except LedgerError as exc:
                    result.failed.append(_failure(line, exc))
                    continue
                if existing is not None:
                    result.applied.append(existing)
                else:
                    pending.append(line)

            if self.shortfall_policy == 'reject':
                self._checkout_all_or_nothing(order, pending, result)
            else:
                self._checkout_each(order, pending, result)

        logger.info(
            "ledger.order.checkout",
            extra={
                "reference": order.reference,
                "store": store_id,
                "applied": len(result.applied),
                "failed": len(result.failed),
                "backordered": len(result.backordered),
            },
        )
        return result

    def _checkout_kind(self) -> MovementKind:
        return MovementKind.RESERVE if self.checkout_mode == 'reserve' else MovementKind.OUT

    def _checkout_request(self, order, line) -> MovementRequest:
        return MovementRequest(
            store_id=order.store_id,
            part_number=line.part_number,
            kind=self._checkout_kind(),
            quantity_delta=-line.quantity,
            reference_id=order.reference,
            unit_price=line.unit_price,
            counterparty=order.customer or '',
            reason=f"Checkout {order.reference}",
            metadata={LINE_EVENT: CHECKOUT},
        )

    def _checkout_replay(self, store_id, line, reference):
        history = self.history(store_id, line.part_number, reference)
        state = history.state
        if state == LineState.NONE:
            return None
        if state == LineState.RESERVED:
            return LineOutcome(line=line, movements=(history.checkout,))
        raise LedgerError(
            'INVALID_TRANSITION',
            part_number=line.part_number,
            from_state=str(state),
            to_state=str(LineState.RESERVED),
        )

    def _checkout_each(self, order, pending, result):
        for line in pending:
            try:
                movement = self.engine.submit(self._checkout_request(order, line))
            except LedgerError as exc:
                if exc.code == 'INSUFFICIENT_STOCK':
                    result.backordered.append(_failure(line, exc))
                else:
                    result.failed.append(_failure(line, exc))
                continue
            result.applied.append(LineOutcome(line=line, movements=(movement,)))

    def _checkout_all_or_nothing(self, order, pending, result):
        ready, short = [], []
        for line in pending:
            try:
                available = self.engine.get_quantity(order.store_id, line.part_number)
            except LedgerError as exc:
                result.failed.append(_failure(line, exc))
                continue
            if available < line.quantity:
                short.append((line, available))
            else:
                ready.append(line)

        if result.failed:
            self._reject_failed(order, result.failed)

        if not short:
            applied = []
            try:
                with self.engine.stores.atomic():
                    for line in ready:
                        movement = self.engine.submit(self._checkout_request(order, line))
                        applied.append(LineOutcome(line=line, movements=(movement,)))
            except LedgerError as exc:
                if exc.code != 'INSUFFICIENT_STOCK':
                    raise
                # Stock changed outside this process after the pre-check
                short.append((ready[len(applied)], exc.available))
            else:
                result.applied.extend(applied)
                return

        failures = []
        for line, available in short:
            exc = self.engine.record_rejection(self._checkout_request(order, line), available)
            failures.append(_failure(line, exc))

        logger.info(
            "ledger.order.checkout_rejected",
            extra={"reference": order.reference, "short": [f.line.part_number for f in failures]},
        )
        raise LedgerError(
            'INSUFFICIENT_STOCK',
            reference=order.reference,
            lines=[
                {
                    'part_number': f.line.part_number,
                    'requested': f.data.get('requested'),
                    'available': f.data.get('available'),
                    'movement_id': str(f.data.get('movement_id')),
                }
                for f in failures
            ],
        )

    def _reject_failed(self, order, failures):
        first = failures[0]
        logger.info(
            "ledger.order.checkout_rejected",
            extra={"reference": order.reference, "failed": [f.code for f in failures]},
        )
        raise LedgerError(
            first.code,
            first.message,
            reference=order.reference,
            lines=[
                {
                    'part_number': getattr(f.line, 'part_number', None),
                    'code': f.code,
                    'message': f.message,
                }
                for f in failures
            ],
        )

    # ══════════════════════════════════════════════════════════════
    # CANCEL
    # ══════════════════════════════════════════════════════════════

    def on_order_cancelled(self, order) -> BatchResult:
        """
        Release the reservation of every line.

        An order without lines cancels every part checked out under its
        reference.
        """
        result = BatchResult()
        if order.lines:
            lines, result.failed = self._merge(order.lines)
        else:
            lines = self._lines_from_ledger(order)

        for line in lines:
            try:
                outcome = self._cancel_line(order, line)
            except LedgerError as exc:
                result.failed.append(_failure(line, exc))
            else:
                result.applied.append(outcome)

        logger.info(
            "ledger.order.cancelled",
            extra={
                "reference": order.reference,
                "store": order.store_id,
                "applied": len(result.applied),
                "failed": len(result.failed),
            },
        )
        return result

    def _lines_from_ledger(self, order):
        parts = OrderedDict()
        for movement in self.engine.find_by_reference(order.reference, store_id=order.store_id):
            if movement.is_applied and _event(movement) == CHECKOUT:
                parts.setdefault(movement.part_number, -movement.delta)
        return [OrderLine(part_number=p, quantity=q) for p, q in parts.items()]

    def _cancel_line(self, order, line) -> LineOutcome:
        with self.engine.locked([(order.store_id, line.part_number)]):
            history = self.history(order.store_id, line.part_number, order.reference)
            state = history.state

            if state == LineState.RELEASED:
                return LineOutcome(line=line, movements=history.event_movements(CANCEL))
            if state != LineState.RESERVED:
                raise LedgerError(
                    'INVALID_TRANSITION',
                    part_number=line.part_number,
                    from_state=str(state),
                    to_state=str(LineState.RELEASED),
                )

            movement = self.engine.reverse(
                history.checkout.id,
                kind=MovementKind.RELEASE,
                reason=f"Order {order.reference} cancelled",
                metadata={LINE_EVENT: CANCEL},
            )
        return LineOutcome(line=line, movements=(movement,))

    # ══════════════════════════════════════════════════════════════
    # SHIPMENT
    # ══════════════════════════════════════════════════════════════

    def on_shipment_confirmed(self, scan_batch) -> BatchResult:
        """
        Dispatch scanned lines. Each line succeeds or fails on its own.

        A line missing its part number, a positive quantity or the customer
        fails with INCOMPLETE_LINE_ITEM and is never applied.
        """
        result = BatchResult()

        for line in scan_batch:
            try:
                outcome = self._ship_line(line)
            except LedgerError as exc:
                result.failed.append(_failure(line, exc))
                logger.info(
                    "ledger.shipment.line_failed",
                    extra={
                        "part": getattr(line, 'part_number', None),
                        "code": exc.code,
                        "reference": getattr(line, 'order_reference', '') or
                        getattr(line, 'shipment_reference', ''),
                    },
                )
            else:
                result.applied.append(outcome)

        logger.info(
            "ledger.shipment.confirmed",
            extra={"applied": len(result.applied), "failed": len(result.failed)},
        )
        return result

    def _check_scan(self, line):
        missing = []
        if not normalize_part_number(line.part_number):
            missing.append('part_number')
        if not _is_quantity(line.quantity):
            missing.append('quantity')
        if not str(line.customer or '').strip():
            missing.append('customer')
        if not (line.order_reference or line.shipment_reference):
            missing.append('shipment_reference')
        if missing:
            raise LedgerError('INCOMPLETE_LINE_ITEM', missing=missing)

    def _ship_line(self, line) -> LineOutcome:
        self._check_scan(line)
        store_id, part_number = self.engine.key(line.store_id, line.part_number)
        customer = str(line.customer).strip()

        with self.engine.locked([(store_id, part_number)]):
            if line.order_reference:
                return self._ship_reserved(line, store_id, part_number, customer)
            return self._ship_direct(line, store_id, part_number, customer)

    def _ship_reserved(self, line, store_id, part_number, customer) -> LineOutcome:
        history = self.history(store_id, part_number, line.order_reference)
        state = history.state

        if state == LineState.SHIPPED:
            return LineOutcome(line=line, movements=history.event_movements(SHIP))
        if state != LineState.RESERVED:
            raise LedgerError(
                'INVALID_TRANSITION',
                part_number=part_number,
                from_state=str(state),
                to_state=str(LineState.SHIPPED),
            )

        checkout = history.checkout
        if line.quantity != -checkout.delta:
            raise LedgerError(
                'QUANTITY_MISMATCH',
                part_number=part_number,
                reserved=-checkout.delta,
                requested=line.quantity,
            )

        metadata = {LINE_EVENT: SHIP}
        if line.shipment_reference:
            metadata['shipment_reference'] = line.shipment_reference

        reversal, replacement = self.engine.convert(
            checkout.id,
            MovementKind.OUT,
            reversal_kind=MovementKind.RELEASE,
            reason=f"Shipped {line.order_reference}",
            metadata=metadata,
            unit_price=line.unit_price,
            counterparty=customer,
        )
        return LineOutcome(line=line, movements=(reversal, replacement))

    def _ship_direct(self, line, store_id, part_number, customer) -> LineOutcome:
        state = self.line_state(store_id, part_number, line.shipment_reference)
        if state not in (LineState.NONE, LineState.SHIPPED):
            raise LedgerError(
                'INVALID_TRANSITION',
                part_number=part_number,
                from_state=str(state),
                to_state=str(LineState.SHIPPED),
            )

        movement = self.engine.submit(MovementRequest(
            store_id=store_id,
            part_number=part_number,
            kind=MovementKind.OUT,
            quantity_delta=-line.quantity,
            reference_id=line.shipment_reference,
            unit_price=line.unit_price,
            counterparty=customer,
            reason=f"Shipped {line.shipment_reference}",
            metadata={LINE_EVENT: SHIP},
        ))
        return LineOutcome(line=line, movements=(movement,))

    # ══════════════════════════════════════════════════════════════
    # RETURN
    # ══════════════════════════════════════════════════════════════

    def on_return(self, order, line_items=None) -> BatchResult:
        """
        Restore stock for returned lines (all order lines when line_items is None).

        The returned quantity may not exceed what was shipped. A line is
        returned once; repeating the same return replays it.
        """
        result = BatchResult()
        lines, result.failed = self._merge(order.lines if line_items is None else line_items)

        for line in lines:
            try:
                outcome = self._return_line(order, line)
            except LedgerError as exc:
                result.failed.append(_failure(line, exc))
            else:
                result.applied.append(outcome)

        logger.info(
            "ledger.order.returned",
            extra={
                "reference": order.reference,
                "store": order.store_id,
                "applied": len(result.applied),
                "failed": len(result.failed),
            },
        )
        return result

    def _return_line(self, order, line) -> LineOutcome:
        with self.engine.locked([(order.store_id, line.part_number)]):
            history = self.history(order.store_id, line.part_number, order.reference)
            state = history.state

            if state == LineState.RETURNED:
                returned = history.returned_quantity
                if line.quantity == returned:
                    return LineOutcome(line=line, movements=history.event_movements(RETURN))
                # RETURNED is final; only an identical retry replays
                raise LedgerError(
                    'INVALID_TRANSITION',
                    part_number=line.part_number,
                    from_state=str(state),
                    to_state=str(LineState.RETURNED),
                    returned=returned,
                    requested=line.quantity,
                )
            if state != LineState.SHIPPED:
                raise LedgerError(
                    'INVALID_TRANSITION',
                    part_number=line.part_number,
                    from_state=str(state),
                    to_state=str(LineState.RETURNED),
                )

            shipped = history.shipped_quantity
            if line.quantity > shipped:
                raise LedgerError(
                    'QUANTITY_MISMATCH',
                    part_number=line.part_number,
                    shipped=shipped,
                    requested=line.quantity,
                )

            price = line.unit_price
            if price is None:
                price = history.shipments[-1].unit_price

            movement = self.engine.submit(MovementRequest(
                store_id=order.store_id,
                part_number=line.part_number,
                kind=MovementKind.RETURN,
                quantity_delta=line.quantity,
                reference_id=order.reference,
                unit_price=price,
                counterparty=order.customer or '',
                reason=f"Returned {order.reference}",
                metadata={LINE_EVENT: RETURN},
            ))
        return LineOutcome(line=line, movements=(movement,))

    # ══════════════════════════════════════════════════════════════
    # HELPERS
    # ══════════════════════════════════════════════════════════════

    def _merge(self, lines):
        """
        Sum lines for the same part into one OrderLine.

        Unit price of a merged line is its total over its quantity, so a line
        duplicated with a divided price merges back to one priced line.

        Returns:
            (merged lines, failures for malformed lines)
        """
        groups = OrderedDict()
        failures = []

        for line in lines:
            part_number = normalize_part_number(getattr(line, 'part_number', None))
            quantity = getattr(line, 'quantity', None)
            if not part_number or not _is_quantity(quantity):
                failures.append(_failure(line, LedgerError(
                    'INCOMPLETE_LINE_ITEM',
                    missing=[
                        name for name, ok in (
                            ('part_number', bool(part_number)),
                            ('quantity', _is_quantity(quantity)),
                        ) if not ok
                    ],
                )))
                continue
            groups.setdefault(part_number, []).append(line)

        merged = []
        for part_number, group in groups.items():
            quantity = sum(line.quantity for line in group)
            prices = [getattr(line, 'unit_price', None) for line in group]
            price = None
            if all(p is not None for p in prices):
                try:
                    total = sum(
                        (line_total(p, line.quantity) for p, line in zip(prices, group)),
                    )
                    price = unit_price(total, quantity)
                except LedgerError as exc:
                    failures.append(_failure(group[0], exc))
                    continue
            merged.append(OrderLine(part_number=part_number, quantity=quantity, unit_price=price))

        return merged, failures


# Cached adapter instance
_lock = threading.Lock()
_order_adapter: OrderAdapter | None = None


def get_order_adapter() -> OrderAdapter:
    """Return the shared adapter over the shared engine."""
    global _order_adapter

    if _order_adapter is None:
        with _lock:
            if _order_adapter is None:  # double-checked
                _order_adapter = OrderAdapter()
    return _order_adapter


def reset_order_adapter() -> None:
    """Reset the cached adapter. Useful for testing."""
    global _order_adapter
    _order_adapter = None
