"""
Stockledger Adapters.

Translate events of the surrounding application into ledger movements.
"""

from stockledger.adapters.orders import (
    LineHistory,
    OrderAdapter,
    get_order_adapter,
    reset_order_adapter,
)

__all__ = [
    "LineHistory",
    "OrderAdapter",
    "get_order_adapter",
    "reset_order_adapter",
]
