"""
Tests for the ledger service API.
"""

from decimal import Decimal
from unittest import mock

import pytest
from django.contrib import admin
from django.test import RequestFactory

from stockledger import LedgerError, ledger
from stockledger.admin import MovementAdmin, StockItemAdmin, StockLevelFilter
from stockledger.models import LineState, Movement, MovementKind, MovementStatus, StockItem
from stockledger.protocols import Order, OrderLine, ScanLine

from .conftest import PART, STORE


pytestmark = pytest.mark.django_db


class TestReceiveAndIssue:
    """Tests for ledger.receive() and ledger.issue()."""

    def test_receive_provisions_item(self):
        """First receipt of a part creates its StockItem."""
        movement = ledger.receive(
            5, STORE, PART, unit_price=Decimal('35000'), supplier='Astra Otoparts', reference_id='po-1'
        )

        assert movement.kind == MovementKind.IN
        assert movement.counterparty == 'Astra Otoparts'
        item = StockItem.objects.get(store_id=STORE, part_number=PART)
        assert item.quantity == 5
        assert item.cost_price == Decimal('35000.00')
        assert ledger.get_quantity(STORE, PART) == 5

    def test_issue_decrements(self):
        ledger.receive(5, STORE, PART, reference_id='po-1')

        movement = ledger.issue(2, STORE, PART, customer='Bengkel Jaya', reference_id='inv-1')

        assert movement.delta == -2
        assert movement.quantity_after == 3
        assert ledger.get_quantity(STORE, PART) == 3

    def test_issue_more_than_on_hand(self):
        """Never clamps: the sale fails and is logged as REJECTED."""
        ledger.receive(5, STORE, PART, reference_id='po-1')

        with pytest.raises(LedgerError) as exc:
            ledger.issue(10, STORE, PART, reference_id='inv-1')

        assert exc.value.code == 'INSUFFICIENT_STOCK'
        assert ledger.get_quantity(STORE, PART) == 5
        assert Movement.objects.filter(status=MovementStatus.REJECTED).count() == 1

    def test_negative_quantity_rejected(self):
        ledger.receive(5, STORE, PART, reference_id='po-1')

        with pytest.raises(LedgerError) as exc:
            ledger.issue(-2, STORE, PART)

        assert exc.value.code == 'INVALID_MOVEMENT'

    def test_bool_quantity_rejected(self):
        ledger.receive(5, STORE, PART, reference_id='po-1')

        with pytest.raises(LedgerError) as exc:
            ledger.issue(True, STORE, PART)

        assert exc.value.code == 'INVALID_MOVEMENT'

    def test_retry_with_request_id(self):
        ledger.receive(5, STORE, PART, reference_id='po-1')
        request_id = ledger.issue(1, STORE, PART).id

        again = ledger.issue(1, STORE, PART, request_id=request_id)

        assert again.id == request_id
        assert ledger.get_quantity(STORE, PART) == 4

    def test_delete_entry_is_a_reversal(self):
        """Removing a goods-in log books a compensating OUT, history keeps both."""
        receipt = ledger.receive(5, STORE, PART, reference_id='po-1')
        ledger.receive(3, STORE, PART, reference_id='po-2')

        reversal = ledger.reverse(receipt.id, reason='Entry deleted')

        assert reversal.kind == MovementKind.OUT
        assert ledger.get_quantity(STORE, PART) == 3
        assert Movement.objects.count() == 3


class TestMovementImmutability:

    def test_movement_cannot_be_saved_again(self):
        movement = ledger.receive(5, STORE, PART, reference_id='po-1')
        movement = Movement.objects.get(pk=movement.pk)
        movement.delta = 50

        with pytest.raises(ValueError):
            movement.save()

    def test_movement_cannot_be_deleted(self):
        movement = ledger.receive(5, STORE, PART, reference_id='po-1')

        with pytest.raises(ValueError):
            movement.delete()

    def test_item_quantity_cannot_go_negative_in_database(self):
        from django.db import IntegrityError, transaction

        ledger.receive(1, STORE, PART, reference_id='po-1')

        with pytest.raises(IntegrityError), transaction.atomic():
            StockItem.objects.filter(part_number=PART).update(_quantity=-1)


class TestOrderLifecycle:
    """Checkout → shipment → return through the facade."""

    def test_complete_lifecycle(self):
        ledger.provision(STORE, PART, 10, sell_price=Decimal('52500'))
        order = Order(reference='order-1', store_id=STORE, customer='Bengkel Jaya',
                      lines=(OrderLine(PART, 3),))

        assert ledger.checkout(order).ok
        assert ledger.get_quantity(STORE, PART) == 7
        assert ledger.line_state(STORE, PART, 'order-1') == LineState.RESERVED

        shipment = ledger.confirm_shipment([
            ScanLine(store_id=STORE, part_number=PART, quantity=3, customer='Bengkel Jaya',
                     order_reference='order-1', shipment_reference='JNE-1'),
        ])
        assert shipment.ok
        assert ledger.get_quantity(STORE, PART) == 7
        assert ledger.line_state(STORE, PART, 'order-1') == LineState.SHIPPED

        assert ledger.return_items(order, [OrderLine(PART, 1)]).ok
        assert ledger.get_quantity(STORE, PART) == 8
        assert ledger.line_state(STORE, PART, 'order-1') == LineState.RETURNED

        assert ledger.verify() == []

    def test_cancel_order(self):
        ledger.provision(STORE, PART, 10)
        order = Order(reference='order-2', store_id=STORE, lines=(OrderLine(PART, 4),))
        ledger.checkout(order)

        assert ledger.cancel_order(order).ok
        assert ledger.get_quantity(STORE, PART) == 10

    def test_stats(self):
        ledger.provision(STORE, PART, 2, cost_price=Decimal('35000'))

        stats = ledger.stats(STORE)

        assert stats.total_units == 2
        assert stats.asset_value == Decimal('70000.00')
        assert stats.low_stock == 1


class TestLedgerError:

    def test_as_dict(self):
        ledger.receive(1, STORE, PART, reference_id='po-1')

        with pytest.raises(LedgerError) as exc:
            ledger.issue(2, STORE, PART)

        data = exc.value.as_dict()
        assert data['code'] == 'INSUFFICIENT_STOCK'
        assert data['data']['available'] == 1
        assert data['data']['requested'] == 2
        assert isinstance(data['data']['movement_id'], str)


class TestMovementAdmin:

    def test_reverse_action(self):
        receipt = ledger.receive(5, STORE, PART, reference_id='po-1')
        model_admin = MovementAdmin(Movement, admin.site)
        request = RequestFactory().post('/')

        with mock.patch.object(MovementAdmin, 'message_user') as message_user:
            model_admin.reverse_movements(request, Movement.objects.filter(pk=receipt.pk))
            model_admin.reverse_movements(request, Movement.objects.filter(pk=receipt.pk))

        assert ledger.get_quantity(STORE, PART) == 0
        assert message_user.call_count == 2
        assert Movement.objects.filter(reversal_of=receipt).count() == 1


class TestStockItemAdmin:

    @pytest.fixture
    def shelf(self):
        ledger.provision(STORE, PART, 2)
        ledger.provision(STORE, 'BRAKE-PAD', 0)
        ledger.provision(STORE, 'AIR-FILTER', 20)
        ledger.provision(STORE, 'OLD-BELT', 1)
        ledger.deactivate(STORE, 'OLD-BELT')

    def _filtered(self, level):
        model_admin = StockItemAdmin(StockItem, admin.site)
        request = RequestFactory().get('/', {'level': level})
        stock_level = StockLevelFilter(request, {'level': [level]}, StockItem, model_admin)
        return sorted(i.part_number for i in stock_level.queryset(request, StockItem.objects.all()))

    def test_low_stock_filter(self, shelf):
        assert self._filtered('low') == [PART]

    def test_out_of_stock_filter(self, shelf):
        assert self._filtered('empty') == ['BRAKE-PAD']

    def test_low_stock_follows_threshold(self, shelf, settings):
        settings.STOCKLEDGER = {'LOW_STOCK_THRESHOLD': 25}

        assert self._filtered('low') == [PART, 'AIR-FILTER']
