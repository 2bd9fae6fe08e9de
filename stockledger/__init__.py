"""
Django Stockledger — Stock ledger for auto-parts counters and storefronts.

Every change to on-hand quantity is a movement in an append-only ledger.

Usage:
    from stockledger import ledger, LedgerError

    ledger.receive(5, 'mjm', '15400-RAF-T01', reference_id='po-1')
    ledger.reserve(3, 'mjm', '15400-RAF-T01', reference_id='order-9')
    ledger.get_quantity('mjm', '15400-RAF-T01')
"""


def __getattr__(name):
    """Lazy import to avoid circular imports during app loading."""
    if name == 'ledger':
        from stockledger.service import Ledger
        return Ledger
    elif name == 'LedgerError':
        from stockledger.exceptions import LedgerError
        return LedgerError
    elif name == 'MovementRequest':
        from stockledger.protocols.store import MovementRequest
        return MovementRequest
    elif name == 'StockItem':
        from stockledger.models.item import StockItem
        return StockItem
    elif name == 'Movement':
        from stockledger.models.movement import Movement
        return Movement
    elif name == 'MovementKind':
        from stockledger.models.enums import MovementKind
        return MovementKind
    elif name == 'MovementStatus':
        from stockledger.models.enums import MovementStatus
        return MovementStatus
    elif name == 'LineState':
        from stockledger.models.enums import LineState
        return LineState
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'ledger',
    'LedgerError',
    'MovementRequest',
    'StockItem',
    'Movement',
    'MovementKind',
    'MovementStatus',
    'LineState',
]

__version__ = '0.1.0'
