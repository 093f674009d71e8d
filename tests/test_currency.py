"""
Test suite for currency module

Tests Money rounding, arithmetic and the Decimal helpers used by the
amortization code. All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from loan_ledger.currency import Money, Currency, round_money, to_decimal


class TestMoney:
    """Test Money class operations"""

    def test_rounds_to_currency_precision(self):
        assert Money(Decimal('100.555'), Currency.USD).amount == Decimal('100.56')
        assert Money(Decimal('100.5'), Currency.JPY).amount == Decimal('101')

    def test_arithmetic(self):
        a = Money(Decimal('100.50'), Currency.USD)
        b = Money(Decimal('50.25'), Currency.USD)

        assert a + b == Money(Decimal('150.75'), Currency.USD)
        assert a - b == Money(Decimal('50.25'), Currency.USD)
        assert a * 2 == Money(Decimal('201.00'), Currency.USD)
        assert -b == Money(Decimal('-50.25'), Currency.USD)

    def test_mixed_currencies_are_rejected(self):
        usd = Money(Decimal('1'), Currency.USD)
        eur = Money(Decimal('1'), Currency.EUR)

        with pytest.raises(ValueError, match="Cannot add"):
            usd + eur
        with pytest.raises(ValueError, match="Cannot compare"):
            usd < eur

    def test_predicates_and_formatting(self):
        assert Money.zero(Currency.USD).is_zero()
        assert Money(Decimal('0.01'), Currency.USD).is_positive()
        assert Money(Decimal('-0.01'), Currency.USD).is_negative()
        assert Money(Decimal('1234.5'), Currency.USD).to_string() == "USD 1,234.50"
        assert Money(Decimal('1234'), Currency.JPY).to_string() == "JPY 1,234"


class TestDecimalHelpers:

    def test_round_money_is_half_up(self):
        assert round_money(Decimal('0.005')) == Decimal('0.01')
        assert round_money(Decimal('946.185')) == Decimal('946.19')

    def test_to_decimal(self):
        assert to_decimal("12.30") == Decimal("12.30")
        assert to_decimal(7) == Decimal("7")
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValueError, match="Cannot convert"):
            to_decimal("twelve")
