"""
Stockledger Stores.

Backends implementing the QuantityStore and MovementLog protocols.

Usage:
    from stockledger.stores import get_stores

    stores = get_stores()
    with stores.atomic():
        stores.quantities.apply_delta('mjm', '15400-RAF-T01', -1)

Settings:
    STOCKLEDGER = {
        "STORE_BACKEND": "stockledger.stores.orm.OrmStores",
    }
"""

from __future__ import annotations

import logging
import threading

from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

from stockledger.conf import ledger_settings

logger = logging.getLogger(__name__)


# Cached backend instance
_lock = threading.Lock()
_stores = None


def get_stores():
    """
    Return the configured store backend.

    Raises:
        ImproperlyConfigured: If STORE_BACKEND is empty or import fails
    """
    global _stores

    if _stores is None:
        with _lock:
            if _stores is None:  # double-checked
                backend_path = ledger_settings.STORE_BACKEND

                if not backend_path:
                    raise ImproperlyConfigured(
                        "STOCKLEDGER['STORE_BACKEND'] must be configured. "
                        "Example: 'stockledger.stores.orm.OrmStores'"
                    )

                try:
                    backend_class = import_string(backend_path)
                except ImportError as e:
                    raise ImproperlyConfigured(
                        f"Failed to import store backend '{backend_path}': {e}"
                    ) from e
                _stores = backend_class()
                logger.debug("Loaded store backend: %s", backend_path)

    return _stores


def reset_stores() -> None:
    """Reset the cached backend. Useful for testing."""
    global _stores
    _stores = None
