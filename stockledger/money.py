"""
Money arithmetic — exact decimals with explicit banker's rounding.

Unit prices are recomputed from line totals whenever a quantity is edited,
so rounding happens once per recomputation with ROUND_HALF_EVEN instead of
accumulating binary float drift.

Examples:
    unit_price(Decimal('100000'), 3)      # Decimal('33333.33')
    split_total(Decimal('100.00'), 3)     # [33.34, 33.33, 33.33]
"""

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from stockledger.conf import ledger_settings
from stockledger.exceptions import LedgerError


def quantum(places: int | None = None) -> Decimal:
    """Smallest currency unit, e.g. Decimal('0.01') for 2 places."""
    if places is None:
        places = ledger_settings.PRICE_DECIMAL_PLACES
    return Decimal(1).scaleb(-places)


def to_money(value, places: int | None = None) -> Decimal:
    """
    Coerce value to a non-negative Decimal rounded to the currency unit.

    Floats go through str() so 0.1 becomes Decimal('0.1'), not its binary
    expansion.

    Raises:
        LedgerError('INVALID_PRICE'): Not a number, not finite, or negative
    """
    if isinstance(value, bool):
        raise LedgerError('INVALID_PRICE', value=value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise LedgerError('INVALID_PRICE', value=value) from None

    if not amount.is_finite() or amount < 0:
        raise LedgerError('INVALID_PRICE', value=value)

    return amount.quantize(quantum(places), rounding=ROUND_HALF_EVEN)


def unit_price(total, quantity: int, places: int | None = None) -> Decimal:
    """Unit price of a line total; zero when the quantity is not positive."""
    if quantity <= 0:
        return to_money(0, places)
    return to_money(to_money(total, places) / quantity, places)


def line_total(price, quantity: int, places: int | None = None) -> Decimal:
    """Total of quantity units at price."""
    return to_money(to_money(price, places) * quantity, places)


def split_total(total, parts: int, places: int | None = None) -> list[Decimal]:
    """
    Split a total into parts that sum exactly to it.

    The remainder is spread one currency unit at a time over the first parts.
    """
    if parts <= 0:
        raise ValueError("parts must be positive")

    amount = to_money(total, places)
    unit = quantum(places)
    units = int(amount / unit)
    base, remainder = divmod(units, parts)

    return [
        ((base + 1) if i < remainder else base) * unit
        for i in range(parts)
    ]
