"""
Stockledger Protocols.

Defines interfaces for storage backends and the order/shipment adapter.
"""

from stockledger.protocols.orders import (
    BatchResult,
    CheckoutResult,
    LineFailure,
    LineOutcome,
    Order,
    OrderLine,
    ScanLine,
)
from stockledger.protocols.store import (
    MovementLog,
    MovementRequest,
    QuantityStore,
    Stores,
)

__all__ = [
    "BatchResult",
    "CheckoutResult",
    "LineFailure",
    "LineOutcome",
    "MovementLog",
    "MovementRequest",
    "Order",
    "OrderLine",
    "QuantityStore",
    "ScanLine",
    "Stores",
]
