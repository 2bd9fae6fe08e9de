"""
Ledger Service — The single public interface for all stock ledger operations.

Usage:
    from stockledger import ledger, LedgerError

    ledger.receive(5, 'mjm', '15400-RAF-T01', supplier='Astra Otoparts', reference_id='po-1')
    ledger.issue(2, 'mjm', '15400-RAF-T01', customer='Bengkel Jaya', reference_id='inv-7')
    ledger.get_quantity('mjm', '15400-RAF-T01')  # 3
"""

from dataclasses import replace
from decimal import Decimal

from stockledger.models.enums import POSITIVE_KINDS, MovementKind
from stockledger.protocols.store import MovementRequest


class Ledger:
    """
    Single interface for all ledger operations.

    Parameter convention: (quantity, store_id, part_number, ...)
    Follows natural language: "Receive 5 of 15400-RAF-T01 at mjm"

    Quantities given to receive/issue/reserve/release are positive; the sign
    of the booked delta follows from the kind.
    """

    # ══════════════════════════════════════════════════════════════
    # WIRING
    # ══════════════════════════════════════════════════════════════

    @classmethod
    def engine(cls):
        from stockledger.services.reconciliation import get_engine
        return get_engine()

    @classmethod
    def adapter(cls):
        from stockledger.adapters.orders import get_order_adapter
        return get_order_adapter()

    # ══════════════════════════════════════════════════════════════
    # CORE: QUERIES
    # ══════════════════════════════════════════════════════════════

    @classmethod
    def get_quantity(cls, store_id: str, part_number: str) -> int:
        """
        Quantity on hand.

        Raises:
            LedgerError('NOT_FOUND'): If the item was never provisioned
        """
        return cls.engine().get_quantity(store_id, part_number)

    @classmethod
    def get_item(cls, store_id: str, part_number: str):
        return cls.engine().get_item(store_id, part_number)

    @classmethod
    def list_by_item(cls, store_id: str, part_number: str, since=None):
        """Movements of an item (applied and rejected), oldest first."""
        return cls.engine().list_by_item(store_id, part_number, since=since)

    @classmethod
    def find_by_reference(cls, reference_id: str, store_id: str | None = None):
        return cls.engine().find_by_reference(reference_id, store_id=store_id)

    # ══════════════════════════════════════════════════════════════
    # CORE: MOVEMENTS
    # ══════════════════════════════════════════════════════════════

    @classmethod
    def submit(cls, request: MovementRequest, *, timeout=None, cancel=None):
        """Apply a raw movement request. See ReconciliationEngine.submit."""
        return cls.engine().submit(request, timeout=timeout, cancel=cancel)

    @classmethod
    def reverse(cls, movement_id, *, kind=None, reason: str = ''):
        """
        Undo a movement with a compensating one.

        Deleting a goods-entry log is a reversal: the history keeps both rows.
        """
        return cls.engine().reverse(movement_id, kind=kind, reason=reason)

    @classmethod
    def convert(cls, movement_id, kind, **kwargs):
        return cls.engine().convert(movement_id, kind, **kwargs)

    @classmethod
    def _book(cls, kind, quantity, store_id, part_number, *, unit_price=None,
              counterparty='', reference_id='', reason='', metadata=None, request_id=None):
        delta = quantity
        if type(quantity) is int and kind not in POSITIVE_KINDS:
            delta = -quantity
        request = MovementRequest(
            store_id=store_id,
            part_number=part_number,
            kind=kind,
            quantity_delta=delta,
            reference_id=reference_id,
            unit_price=unit_price,
            counterparty=counterparty,
            reason=reason,
            metadata=metadata or {},
        )
        if request_id is not None:
            request = replace(request, id=request_id)
        return cls.engine().submit(request)

    @classmethod
    def receive(cls, quantity: int, store_id: str, part_number: str, *,
                unit_price: Decimal | None = None, supplier: str = '',
                reference_id: str = '', reason: str = '', **kwargs):
        """
        Incoming goods (IN). Provisions the item on first receipt.

        Args:
            quantity: Units received (positive)
            unit_price: Buy price per unit (None = item cost price)
            supplier: Recorded as the movement counterparty
            reference_id: Purchase / delivery reference (idempotency key)
        """
        return cls._book(
            MovementKind.IN, quantity, store_id, part_number,
            unit_price=unit_price, counterparty=supplier,
            reference_id=reference_id, reason=reason, **kwargs,
        )

    @classmethod
    def issue(cls, quantity: int, store_id: str, part_number: str, *,
              unit_price: Decimal | None = None, customer: str = '',
              reference_id: str = '', reason: str = '', **kwargs):
        """
        Outgoing goods (OUT), e.g. a counter sale.

        Raises:
            LedgerError('INSUFFICIENT_STOCK'): Never clamps; a REJECTED movement is logged
        """
        return cls._book(
            MovementKind.OUT, quantity, store_id, part_number,
            unit_price=unit_price, counterparty=customer,
            reference_id=reference_id, reason=reason, **kwargs,
        )

    @classmethod
    def reserve(cls, quantity: int, store_id: str, part_number: str, *,
                reference_id: str = '', customer: str = '', **kwargs):
        return cls._book(
            MovementKind.RESERVE, quantity, store_id, part_number,
            counterparty=customer, reference_id=reference_id, **kwargs,
        )

    # ══════════════════════════════════════════════════════════════
    # ITEMS
    # ══════════════════════════════════════════════════════════════

    @classmethod
    def provision(cls, store_id: str, part_number: str, quantity: int = 0, **kwargs):
        """Create an item, optionally with an opening balance."""
        return cls.engine().provision(store_id, part_number, quantity, **kwargs)

    @classmethod
    def deactivate(cls, store_id: str, part_number: str):
        return cls.engine().deactivate(store_id, part_number)

    @classmethod
    def reactivate(cls, store_id: str, part_number: str):
        return cls.engine().reactivate(store_id, part_number)

    @classmethod
    def update_prices(cls, store_id: str, part_number: str, **prices):
        return cls.engine().update_prices(store_id, part_number, **prices)

    # ══════════════════════════════════════════════════════════════
    # ORDERS
    # ══════════════════════════════════════════════════════════════

    @classmethod
    def checkout(cls, order):
        return cls.adapter().on_checkout(order)

    @classmethod
    def cancel_order(cls, order):
        return cls.adapter().on_order_cancelled(order)

    @classmethod
    def confirm_shipment(cls, scan_batch):
        return cls.adapter().on_shipment_confirmed(scan_batch)

    @classmethod
    def return_items(cls, order, line_items=None):
        return cls.adapter().on_return(order, line_items)

    @classmethod
    def line_state(cls, store_id: str, part_number: str, reference: str):
        return cls.adapter().line_state(store_id, part_number, reference)

    # ══════════════════════════════════════════════════════════════
    # REPORTING
    # ══════════════════════════════════════════════════════════════

    @classmethod
    def stats(cls, store_id: str | None = None):
        from stockledger.services.queries import inventory_stats
        return inventory_stats(store_id, stores=cls.engine().stores)

    @classmethod
    def price_history(cls, store_id: str, part_number: str, side: str = 'buy'):
        from stockledger.services.queries import price_history
        return price_history(store_id, part_number, side=side, stores=cls.engine().stores)

    @classmethod
    def verify(cls, store_id: str | None = None):
        """Items whose quantity differs from the replay of their movements."""
        from stockledger.services.audit import verify
        return verify(store_id, stores=cls.engine().stores)
