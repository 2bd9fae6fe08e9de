"""
Ledger services — modular organization of ledger operations.

    from stockledger.services import ReconciliationEngine, get_engine
    from stockledger.services import inventory_stats, verify
"""

from stockledger.services.audit import Discrepancy, replay, verify
from stockledger.services.queries import (
    InventoryStats,
    PricePoint,
    inventory_stats,
    low_stock_items,
    out_of_stock_items,
    price_history,
)
from stockledger.services.reconciliation import (
    ReconciliationEngine,
    get_engine,
    reset_engine,
)

__all__ = [
    'ReconciliationEngine',
    'get_engine',
    'reset_engine',
    'InventoryStats',
    'PricePoint',
    'inventory_stats',
    'low_stock_items',
    'out_of_stock_items',
    'price_history',
    'Discrepancy',
    'replay',
    'verify',
]
