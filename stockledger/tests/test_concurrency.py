"""
Concurrency tests — many threads against the in-memory backend.
"""

import logging
import threading
import time

import pytest

from stockledger.exceptions import LedgerError
from stockledger.locks import KeyedLocks
from stockledger.models import MovementKind
from stockledger.protocols import MovementRequest
from stockledger.services.reconciliation import ReconciliationEngine
from stockledger.stores.memory import MemoryQuantityStore

from .conftest import PART, STORE


def _run(target, *args, **kwargs):
    """Run target in a thread; return a dict filled with 'result' or 'error'."""
    outcome = {}

    def wrapper():
        try:
            outcome['result'] = target(*args, **kwargs)
        except LedgerError as exc:
            outcome['error'] = exc

    thread = threading.Thread(target=wrapper)
    thread.start()
    return thread, outcome


class FlakyQuantityStore(MemoryQuantityStore):
    """Loses the compare-and-swap race a given number of times."""

    def __init__(self, stores, failures):
        super().__init__(stores)
        self.failures = failures
        self.calls = 0

    def apply_delta(self, store_id, part_number, delta):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise LedgerError('CONFLICT', store_id=store_id, part_number=part_number)
        return super().apply_delta(store_id, part_number, delta)


class TestConcurrentSubmit:
    """Non-cooperating callers hitting the same item."""

    @pytest.mark.parametrize('stock,callers', [(5, 20), (0, 8), (19, 20)])
    def test_outbound_never_oversells(self, memory_stores, stock, callers):
        """N concurrent OUT 1 against K < N: K applied, N-K rejected, final 0."""
        engine = ReconciliationEngine(memory_stores, lock_timeout=10.0)
        engine.provision(STORE, PART, stock)
        barrier = threading.Barrier(callers)
        applied, rejected = [], []
        guard = threading.Lock()

        def sell(i):
            barrier.wait()
            try:
                movement = engine.submit(MovementRequest(
                    store_id=STORE,
                    part_number=PART,
                    kind=MovementKind.OUT,
                    quantity_delta=-1,
                    reference_id=f'inv-{i}',
                ))
            except LedgerError as exc:
                with guard:
                    rejected.append(exc)
            else:
                with guard:
                    applied.append(movement)

        threads = [threading.Thread(target=sell, args=(i,)) for i in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(applied) == stock
        assert len(rejected) == callers - stock
        assert all(exc.code == 'INSUFFICIENT_STOCK' for exc in rejected)
        assert engine.get_quantity(STORE, PART) == 0

        history = list(engine.list_by_item(STORE, PART))
        assert len([m for m in history if not m.is_applied]) == callers - stock
        assert sorted(m.quantity_after for m in applied) == list(range(stock))

    def test_concurrent_retries_apply_once(self, memory_stores):
        """The same reference submitted from many threads lands once."""
        engine = ReconciliationEngine(memory_stores, lock_timeout=10.0)
        engine.provision(STORE, PART, 10)
        barrier = threading.Barrier(10)
        ids = set()
        guard = threading.Lock()

        def receive():
            barrier.wait()
            movement = engine.submit(MovementRequest(
                store_id=STORE,
                part_number=PART,
                kind=MovementKind.IN,
                quantity_delta=5,
                reference_id='po-1',
            ))
            with guard:
                ids.add(movement.id)

        threads = [threading.Thread(target=receive) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(ids) == 1
        assert engine.get_quantity(STORE, PART) == 15

    def test_mixed_traffic_keeps_replay_invariant(self, memory_stores):
        from stockledger.services.audit import verify

        engine = ReconciliationEngine(memory_stores, lock_timeout=10.0)
        engine.provision(STORE, PART, 3)

        def worker(i):
            kind, delta = [
                (MovementKind.IN, 2),
                (MovementKind.OUT, -3),
                (MovementKind.RESERVE, -1),
            ][i % 3]
            try:
                engine.submit(MovementRequest(
                    store_id=STORE, part_number=PART, kind=kind, quantity_delta=delta,
                ))
            except LedgerError as exc:
                assert exc.code == 'INSUFFICIENT_STOCK'

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(30)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert engine.get_quantity(STORE, PART) >= 0
        assert verify(stores=memory_stores) == []


class TestLockWaiting:
    """Bounded and cancellable waits for the per-item lock."""

    def test_waiting_writer_times_out(self, memory_engine, make_request):
        memory_engine.provision(STORE, PART, 10)

        with memory_engine.locked([(STORE, PART)]):
            thread, outcome = _run(
                memory_engine.submit, make_request(MovementKind.OUT, -1), timeout=0.05
            )
            thread.join(timeout=5)

        assert outcome['error'].code == 'TIMEOUT'
        assert memory_engine.get_quantity(STORE, PART) == 10

    def test_waiting_writer_can_be_cancelled(self, memory_engine, make_request):
        memory_engine.provision(STORE, PART, 10)
        cancel = threading.Event()

        with memory_engine.locked([(STORE, PART)]):
            thread, outcome = _run(
                memory_engine.submit, make_request(MovementKind.OUT, -1), timeout=5, cancel=cancel
            )
            time.sleep(0.1)
            cancel.set()
            thread.join(timeout=5)

        assert outcome['error'].code == 'CANCELLED'
        assert memory_engine.get_quantity(STORE, PART) == 10
        assert list(memory_engine.list_by_item(STORE, PART))[-1].delta == 10

    def test_waiting_writer_proceeds_after_release(self, memory_engine, make_request):
        memory_engine.provision(STORE, PART, 10)

        with memory_engine.locked([(STORE, PART)]):
            thread, outcome = _run(
                memory_engine.submit, make_request(MovementKind.OUT, -1), timeout=5
            )
            time.sleep(0.05)
            assert memory_engine.get_quantity(STORE, PART) == 10
        thread.join(timeout=5)

        assert outcome['result'].quantity_after == 9

    def test_other_items_are_not_blocked(self, memory_engine, make_request):
        memory_engine.provision(STORE, PART, 10)
        memory_engine.provision(STORE, 'BRAKE-PAD', 4)

        with memory_engine.locked([(STORE, PART)]):
            thread, outcome = _run(
                memory_engine.submit,
                make_request(MovementKind.OUT, -1, part_number='BRAKE-PAD'),
                timeout=0.5,
            )
            thread.join(timeout=5)

        assert outcome['result'].quantity_after == 3

    def test_same_thread_may_reenter(self, memory_engine, make_request):
        """A caller holding an order's locks can still submit for those items."""
        memory_engine.provision(STORE, PART, 10)

        with memory_engine.locked([(STORE, PART), (STORE, 'brake-pad')], timeout=0.1):
            memory_engine.submit(make_request(MovementKind.OUT, -1), timeout=0.1)

        assert memory_engine.get_quantity(STORE, PART) == 9


class TestConflictRetry:
    """CONFLICT is retried a bounded number of times."""

    def test_conflict_is_retried(self, memory_stores, make_request, caplog):
        engine = ReconciliationEngine(memory_stores, conflict_retries=3, conflict_backoff=0)
        engine.provision(STORE, PART, 10)
        flaky = memory_stores.quantities = FlakyQuantityStore(memory_stores, failures=2)

        with caplog.at_level(logging.WARNING, logger='stockledger'):
            movement = engine.submit(make_request(MovementKind.OUT, -1))

        assert movement.quantity_after == 9
        assert flaky.calls == 3
        assert caplog.messages.count('ledger.conflict.retry') == 2

    def test_conflict_surfaces_after_retries(self, memory_stores, make_request):
        engine = ReconciliationEngine(memory_stores, conflict_retries=2, conflict_backoff=0)
        engine.provision(STORE, PART, 10)
        flaky = memory_stores.quantities = FlakyQuantityStore(memory_stores, failures=5)

        with pytest.raises(LedgerError) as exc:
            engine.submit(make_request(MovementKind.OUT, -1))

        assert exc.value.code == 'CONFLICT'
        assert flaky.calls == 3
        assert engine.get_quantity(STORE, PART) == 10
        assert len(list(engine.list_by_item(STORE, PART))) == 1


class TestMemoryTransactions:
    """atomic() on the memory backend: per-thread undo, no store-wide lock."""

    def test_other_items_commit_during_open_transaction(self, memory_engine, make_request):
        memory_engine.provision(STORE, PART, 10)
        memory_engine.provision(STORE, 'BRAKE-PAD', 4)
        inside, release = threading.Event(), threading.Event()

        def hold_transaction():
            with memory_engine.stores.atomic():
                memory_engine.stores.quantities.apply_delta(STORE, PART, -2)
                inside.set()
                release.wait(5)

        holder = threading.Thread(target=hold_transaction)
        holder.start()
        inside.wait(5)
        try:
            thread, outcome = _run(
                memory_engine.submit,
                make_request(MovementKind.OUT, -1, part_number='BRAKE-PAD'),
                timeout=0.5,
            )
            thread.join(timeout=2)
        finally:
            release.set()
            holder.join()

        assert outcome['result'].quantity_after == 3

    def test_rollback_keeps_other_threads_writes(self, memory_engine, make_request):
        memory_engine.provision(STORE, PART, 10)
        memory_engine.provision(STORE, 'BRAKE-PAD', 4)
        stores = memory_engine.stores

        with pytest.raises(RuntimeError):
            with stores.atomic():
                stores.quantities.apply_delta(STORE, PART, -2)
                thread, outcome = _run(
                    memory_engine.submit,
                    make_request(MovementKind.OUT, -1, 'inv-1', part_number='BRAKE-PAD'),
                )
                thread.join(timeout=5)
                raise RuntimeError('abort')

        assert memory_engine.get_quantity(STORE, PART) == 10
        assert memory_engine.get_quantity(STORE, 'BRAKE-PAD') == 3
        assert [m.reference_id for m in memory_engine.find_by_reference('inv-1')] == ['inv-1']

    def test_nested_block_rolls_back_alone(self, memory_stores):
        quantities = memory_stores.quantities
        quantities.provision(STORE, PART)

        with memory_stores.atomic():
            quantities.apply_delta(STORE, PART, 5)
            with pytest.raises(LedgerError), memory_stores.atomic():
                quantities.apply_delta(STORE, PART, 2)
                quantities.apply_delta(STORE, PART, -100)

        assert quantities.get_quantity(STORE, PART) == 5

    def test_rollback_removes_provisioned_item(self, memory_stores):
        with pytest.raises(RuntimeError), memory_stores.atomic():
            memory_stores.quantities.provision(STORE, PART)
            raise RuntimeError('abort')

        with pytest.raises(LedgerError) as exc:
            memory_stores.quantities.get_item(STORE, PART)
        assert exc.value.code == 'NOT_FOUND'


class TestKeyedLocks:
    """The lock registry only holds keys that are in use."""

    def test_released_keys_are_dropped(self):
        locks = KeyedLocks()

        with locks.hold([(STORE, PART), (STORE, 'BRAKE-PAD')], timeout=1):
            assert len(locks) == 2
            with locks.hold([(STORE, PART)], timeout=1):
                assert len(locks) == 2

        assert len(locks) == 0

    def test_waiter_keeps_key_registered(self):
        locks = KeyedLocks()
        acquired = threading.Event()

        def wait_for_key():
            with locks.hold([(STORE, PART)], timeout=5):
                acquired.set()

        with locks.hold([(STORE, PART)], timeout=1):
            waiter = threading.Thread(target=wait_for_key)
            waiter.start()
            time.sleep(0.05)
            assert len(locks) == 1
        waiter.join(timeout=5)

        assert acquired.is_set()
        assert len(locks) == 0

    def test_timed_out_key_is_dropped(self):
        locks = KeyedLocks()

        def try_hold():
            with locks.hold([(STORE, PART)], timeout=0.05):
                pass

        with locks.hold([(STORE, PART)], timeout=1):
            thread, outcome = _run(try_hold)
            thread.join(timeout=5)

        assert outcome['error'].code == 'TIMEOUT'
        assert len(locks) == 0
