"""
Exceptions for Stockledger.

All errors are LedgerError with a structured code for programmatic handling.
"""

from typing import Any


class BaseError(Exception):
    """
    Exception carrying a machine-readable code plus context data.

    Subclasses provide ``_default_messages`` keyed by code.
    """

    _default_messages: dict[str, str] = {}

    def __init__(self, code: str, message: str | None = None, **data):
        self.code = code
        self.message = message or self._default_messages.get(code, code)
        self.data = data
        super().__init__(f"[{code}] {self.message}")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, data={self.data!r})"


class LedgerError(BaseError):
    """
    Structured exception for ledger operations.

    Usage:
        try:
            ledger.issue(20, 'mjm', '15400-RAF-T01', reference_id='inv-7')
        except LedgerError as e:
            if e.code == 'INSUFFICIENT_STOCK':
                print(f"Only {e.available} on hand")

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable message
        data: Additional context data
    """

    _default_messages = {
        'NOT_FOUND': 'Item or movement not found',
        'INVALID_MOVEMENT': 'Malformed movement request',
        'INSUFFICIENT_STOCK': 'Not enough stock on hand',
        'CONFLICT': 'Concurrent modification detected',
        'TIMEOUT': 'Timed out waiting for item lock',
        'CANCELLED': 'Cancelled while waiting for item lock',
        'ALREADY_REVERSED': 'Movement has already been reversed',
        'INVALID_TRANSITION': 'Invalid line item state transition',
        'INCOMPLETE_LINE_ITEM': 'Line item is missing required fields',
        'ITEM_INACTIVE': 'Item is deactivated',
        'QUANTITY_MISMATCH': 'Quantity does not match the order line',
        'INVALID_PRICE': 'Price must be a non-negative decimal',
    }

    @property
    def available(self) -> int:
        """Shortcut for data['available']."""
        return self.data.get('available', 0)

    @property
    def requested(self) -> int:
        """Shortcut for data['requested']."""
        return self.data.get('requested', 0)

    @property
    def movement_id(self):
        """Id of the rejected movement logged for this failure, if any."""
        return self.data.get('movement_id')

    def as_dict(self) -> dict[str, Any]:
        """Serialize to dict (useful for APIs)."""
        return {
            'code': self.code,
            'message': self.message,
            'data': {
                k: v if isinstance(v, (int, float, bool, type(None), list, dict)) else str(v)
                for k, v in self.data.items()
            }
        }
