"""
Pytest fixtures for Stockledger tests.
"""

from decimal import Decimal

import pytest

from stockledger.adapters.orders import OrderAdapter, reset_order_adapter
from stockledger.protocols import MovementRequest
from stockledger.services.reconciliation import ReconciliationEngine, reset_engine
from stockledger.stores import reset_stores
from stockledger.stores.memory import MemoryStores
from stockledger.stores.orm import OrmStores


STORE = 'mjm'
PART = '15400-RAF-T01'


@pytest.fixture(autouse=True)
def _fresh_singletons():
    """Each test gets its own cached backend, engine and adapter."""
    reset_stores()
    reset_engine()
    reset_order_adapter()
    yield
    reset_stores()
    reset_engine()
    reset_order_adapter()


@pytest.fixture(params=['orm', 'memory'])
def stores(request):
    """Store backend under test (ORM on the test database, or in-memory)."""
    if request.param == 'orm':
        request.getfixturevalue('db')
        return OrmStores()
    return MemoryStores()


@pytest.fixture
def memory_stores():
    return MemoryStores()


@pytest.fixture
def engine(stores):
    return ReconciliationEngine(stores, lock_timeout=1.0, conflict_backoff=0)


@pytest.fixture
def memory_engine(memory_stores):
    return ReconciliationEngine(memory_stores, lock_timeout=1.0, conflict_backoff=0)


@pytest.fixture
def oil_filter(engine):
    """The example item: 10 oil filters on hand at store mjm."""
    return engine.provision(
        STORE,
        PART,
        10,
        name='Oil filter Honda Jazz',
        cost_price=Decimal('35000'),
        sell_price=Decimal('52500'),
    )


@pytest.fixture
def adapter(engine):
    return OrderAdapter(engine, checkout_mode='reserve', shortfall_policy='reject')


@pytest.fixture
def make_request():
    """Build a MovementRequest for the example item."""

    def _make(kind, delta, reference_id='', **kwargs):
        kwargs.setdefault('store_id', STORE)
        kwargs.setdefault('part_number', PART)
        return MovementRequest(
            kind=kind,
            quantity_delta=delta,
            reference_id=reference_id,
            **kwargs,
        )

    return _make
