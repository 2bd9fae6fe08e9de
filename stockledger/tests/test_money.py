"""
Tests for exact money arithmetic.
"""

from decimal import Decimal

import pytest

from stockledger.exceptions import LedgerError
from stockledger.money import line_total, quantum, split_total, to_money, unit_price


class TestToMoney:

    def test_float_goes_through_str(self):
        assert to_money(0.1) == Decimal('0.10')
        assert to_money(0.1 + 0.2) == Decimal('0.30')

    @pytest.mark.parametrize('value,expected', [
        ('2.675', Decimal('2.68')),
        ('2.665', Decimal('2.66')),
        ('2.665001', Decimal('2.67')),
        (52500, Decimal('52500.00')),
    ])
    def test_rounds_half_to_even(self, value, expected):
        assert to_money(value) == expected

    @pytest.mark.parametrize('value', [-1, '-0.01', 'abc', None, True, float('nan'), Decimal('Infinity')])
    def test_invalid_values(self, value):
        with pytest.raises(LedgerError) as exc:
            to_money(value)

        assert exc.value.code == 'INVALID_PRICE'

    def test_places_follow_settings(self, settings):
        settings.STOCKLEDGER = {'PRICE_DECIMAL_PLACES': 0}

        assert quantum() == Decimal('1')
        assert to_money('1500.5') == Decimal('1500')
        assert to_money('1501.5') == Decimal('1502')


class TestUnitPrice:

    def test_total_over_quantity(self):
        assert unit_price(Decimal('100000'), 3) == Decimal('33333.33')

    def test_half_cent_rounds_to_even(self):
        assert unit_price(Decimal('0.05'), 2) == Decimal('0.02')
        assert unit_price(Decimal('0.07'), 2) == Decimal('0.04')

    @pytest.mark.parametrize('quantity', [0, -2])
    def test_no_quantity_means_zero(self, quantity):
        assert unit_price(Decimal('100000'), quantity) == Decimal('0.00')

    def test_repeated_recalculation_does_not_drift(self):
        """Editing a quantity back and forth keeps the same unit price."""
        price = Decimal('52500')
        for quantity in [3, 7, 1, 11, 3] * 20:
            price = unit_price(line_total(price, quantity), quantity)

        assert price == Decimal('52500.00')


class TestSplitTotal:

    def test_parts_sum_to_total(self):
        parts = split_total(Decimal('100.00'), 3)

        assert parts == [Decimal('33.34'), Decimal('33.33'), Decimal('33.33')]
        assert sum(parts) == Decimal('100.00')

    def test_even_split(self):
        assert split_total('157500', 2) == [Decimal('78750.00'), Decimal('78750.00')]

    def test_parts_must_be_positive(self):
        with pytest.raises(ValueError):
            split_total('10', 0)


def test_line_total():
    assert line_total('52500', 3) == Decimal('157500.00')
