"""
Stockledger configuration.

Usage in settings.py:
    STOCKLEDGER = {
        "STORE_BACKEND": "stockledger.stores.orm.OrmStores",
        "LOCK_TIMEOUT": 5.0,
        "CHECKOUT_MODE": "reserve",
        "SHORTFALL_POLICY": "reject",
    }
"""

from dataclasses import dataclass
from typing import Any

from django.conf import settings


@dataclass
class LedgerSettings:
    """Stockledger configuration settings."""

    # Store backend bundle (dotted path)
    STORE_BACKEND: str = "stockledger.stores.orm.OrmStores"

    # Seconds to wait for a per-item lock before failing with TIMEOUT
    LOCK_TIMEOUT: float = 5.0

    # Automatic retries when a write loses a compare-and-swap race
    CONFLICT_RETRIES: int = 3

    # Seconds to sleep between conflict retries (multiplied by attempt)
    CONFLICT_BACKOFF: float = 0.01

    # "reserve": checkout holds stock until shipment is confirmed
    # "sale": checkout is an immediate outbound sale
    CHECKOUT_MODE: str = "reserve"

    # "reject": any short line fails the whole checkout
    # "backorder": short lines are flagged, the rest is applied
    SHORTFALL_POLICY: str = "reject"

    # Money quantum (2 = cents)
    PRICE_DECIMAL_PLACES: int = 2

    # Items at or below this quantity (and above zero) count as low stock
    LOW_STOCK_THRESHOLD: int = 3


def get_ledger_settings() -> LedgerSettings:
    """Load settings from Django settings."""
    user_settings: dict[str, Any] = getattr(settings, "STOCKLEDGER", {})
    return LedgerSettings(**{
        k: v for k, v in user_settings.items()
        if k in LedgerSettings.__dataclass_fields__
    })


class _LazySettings:
    """Lazy proxy that re-reads settings on every attribute access."""

    def __getattr__(self, name):
        return getattr(get_ledger_settings(), name)


ledger_settings = _LazySettings()
