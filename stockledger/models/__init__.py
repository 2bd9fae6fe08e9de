"""
Stockledger Models.

Core models for stock reconciliation:
- StockItem: On-hand quantity per (store, part number)
- Movement: Immutable ledger of changes
"""

from stockledger.models.enums import LineState, MovementKind, MovementStatus
from stockledger.models.item import StockItem, normalize_part_number
from stockledger.models.movement import Movement

__all__ = [
    'MovementKind',
    'MovementStatus',
    'LineState',
    'StockItem',
    'Movement',
    'normalize_part_number',
]
