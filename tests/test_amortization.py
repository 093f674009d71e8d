"""
Test suite for amortization calculator

Tests rate estimation, the French periodic payment and schedule generation,
including property-based checks that every generated schedule amortizes the
principal to exactly zero.
"""

import pytest
from decimal import Decimal, ROUND_HALF_UP
from datetime import date

from hypothesis import given, settings
from hypothesis import strategies as st

from loan_ledger.amortization import (
    ScheduleRow, compute_rate, compute_periodic_payment, due_date_for,
    generate_schedule, monthly_rate
)


class TestComputeRate:
    """Test flat-installment rate estimation"""

    def test_simple_interest_approximation(self):
        """12 x 1000 on 10000 is 2000 interest over one year"""
        assert compute_rate(Decimal('10000'), Decimal('1000'), 12) == Decimal('20.00')

    def test_multi_year_rate_is_annualized(self):
        # 24 x 500 on 10000: 2000 interest over two years
        assert compute_rate(Decimal('10000'), Decimal('500'), 24) == Decimal('10.00')

    def test_rate_rounded_to_two_decimals(self):
        rate = compute_rate(Decimal('12000'), Decimal('1066.19'), 12)
        assert rate == Decimal('6.62')

    def test_installments_below_principal_floor_at_zero(self):
        assert compute_rate(Decimal('10000'), Decimal('500'), 12) == Decimal('0.00')

    def test_non_positive_inputs_return_zero(self):
        assert compute_rate(Decimal('0'), Decimal('100'), 12) == Decimal('0.00')
        assert compute_rate(Decimal('-5'), Decimal('100'), 12) == Decimal('0.00')
        assert compute_rate(Decimal('1000'), Decimal('100'), 0) == Decimal('0.00')


class TestPeriodicPayment:
    """Test the constant periodic payment"""

    def test_french_payment(self):
        assert compute_periodic_payment(Decimal('12000'), Decimal('12'), 12) == Decimal('1066.19')

    def test_zero_rate_splits_principal_unrounded(self):
        payment = compute_periodic_payment(Decimal('100'), Decimal('0'), 3)
        assert payment == Decimal('100') / Decimal('3')

    def test_accepts_strings_and_ints(self):
        assert compute_periodic_payment('12000', 12, 12) == Decimal('1066.19')

    def test_invalid_count(self):
        with pytest.raises(ValueError, match="at least 1"):
            compute_periodic_payment(Decimal('1000'), Decimal('10'), 0)

    def test_monthly_rate(self):
        assert monthly_rate(Decimal('12')) == Decimal('0.01')


class TestDueDates:
    """Test due date advancement and clamping"""

    def test_advances_months(self):
        assert due_date_for(date(2024, 1, 1), 1, 15) == date(2024, 2, 15)
        assert due_date_for(date(2024, 1, 1), 12, 15) == date(2025, 1, 15)

    def test_clamps_to_month_length(self):
        assert due_date_for(date(2024, 1, 31), 1, 31) == date(2024, 2, 29)
        assert due_date_for(date(2023, 1, 31), 1, 31) == date(2023, 2, 28)
        assert due_date_for(date(2024, 3, 1), 1, 31) == date(2024, 4, 30)

    def test_year_rollover(self):
        assert due_date_for(date(2024, 11, 10), 3, 5) == date(2025, 2, 5)


class TestGenerateSchedule:
    """Test full schedule generation"""

    def test_twelve_thousand_at_twelve_percent(self):
        """12000 at 12% over 12 months, due on the 15th"""
        schedule = generate_schedule(Decimal('12000'), Decimal('12'), 12, date(2024, 1, 1), 15)

        assert len(schedule) == 12
        first = schedule[0]
        assert first == ScheduleRow(
            number=1,
            due_date=date(2024, 2, 15),
            principal=Decimal('946.19'),
            interest=Decimal('120.00'),
            total=Decimal('1066.19'),
            remaining_balance=Decimal('11053.81')
        )
        assert schedule[1].interest == Decimal('110.54')
        assert schedule[-1].number == 12
        assert schedule[-1].due_date == date(2025, 1, 15)
        assert schedule[-1].remaining_balance == Decimal('0.00')

        total_principal = sum(row.principal for row in schedule)
        assert abs(total_principal - Decimal('12000')) <= Decimal('0.12')

    def test_zero_rate_even_split(self):
        schedule = generate_schedule(Decimal('1000'), Decimal('0'), 4, date(2024, 1, 1), 10)

        assert [row.principal for row in schedule] == [Decimal('250.00')] * 4
        assert [row.interest for row in schedule] == [Decimal('0.00')] * 4
        assert [row.total for row in schedule] == [Decimal('250.00')] * 4
        assert [row.remaining_balance for row in schedule] == [
            Decimal('750.00'), Decimal('500.00'), Decimal('250.00'), Decimal('0.00')
        ]

    def test_zero_rate_last_row_absorbs_rounding(self):
        schedule = generate_schedule(Decimal('100'), Decimal('0'), 3, date(2024, 1, 1), 1)

        assert [row.principal for row in schedule] == [Decimal('33.33')] * 3
        assert schedule[-1].remaining_balance == Decimal('0.00')

    def test_single_installment(self):
        schedule = generate_schedule(Decimal('500'), Decimal('12'), 1, date(2024, 1, 1), 1)

        assert len(schedule) == 1
        assert schedule[0].principal == Decimal('500.00')
        assert schedule[0].interest == Decimal('5.00')
        assert schedule[0].total == Decimal('505.00')
        assert schedule[0].remaining_balance == Decimal('0.00')

    def test_first_number_keeps_numbering_and_due_dates(self):
        full = generate_schedule(Decimal('12000'), Decimal('12'), 12, date(2024, 1, 1), 15)
        tail = generate_schedule(
            full[2].remaining_balance, Decimal('12'), 9, date(2024, 1, 1), 15, first_number=4
        )

        assert [row.number for row in tail] == list(range(4, 13))
        assert [row.due_date for row in tail] == [row.due_date for row in full[3:]]
        assert tail[-1].remaining_balance == Decimal('0.00')

    def test_deterministic(self):
        args = (Decimal('8750.55'), Decimal('18.5'), 36, date(2024, 5, 20), 31)
        assert generate_schedule(*args) == generate_schedule(*args)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            generate_schedule(Decimal('1000'), Decimal('10'), 0, date(2024, 1, 1), 1)
        with pytest.raises(ValueError):
            generate_schedule(Decimal('1000'), Decimal('10'), 3, date(2024, 1, 1), 1, first_number=0)


principals = st.decimals(min_value=Decimal('100'), max_value=Decimal('1000000'), places=2,
                         allow_nan=False, allow_infinity=False)
rates = st.decimals(min_value=Decimal('0'), max_value=Decimal('60'), places=2,
                    allow_nan=False, allow_infinity=False)
counts = st.integers(min_value=1, max_value=120)
due_days = st.integers(min_value=1, max_value=31)
start_dates = st.dates(min_value=date(2000, 1, 1), max_value=date(2090, 12, 31))


class TestScheduleProperties:
    """Property-based schedule invariants"""

    @given(principal=principals, rate=rates, count=counts, due_day=due_days, start=start_dates)
    @settings(max_examples=200, deadline=None)
    def test_schedule_amortizes_principal(self, principal, rate, count, due_day, start):
        schedule = generate_schedule(principal, rate, count, start, due_day)

        assert len(schedule) == count
        assert schedule[-1].remaining_balance == Decimal('0.00')
        total_principal = sum(row.principal for row in schedule)
        assert abs(total_principal - principal) <= Decimal('0.01') * count

    @given(principal=principals, rate=rates, count=counts, due_day=due_days, start=start_dates)
    @settings(max_examples=200, deadline=None)
    def test_balances_and_dates_are_monotonic(self, principal, rate, count, due_day, start):
        schedule = generate_schedule(principal, rate, count, start, due_day)

        for previous, current in zip(schedule, schedule[1:]):
            assert current.remaining_balance <= previous.remaining_balance
            assert current.due_date > previous.due_date
            assert current.number == previous.number + 1
        assert all(row.remaining_balance >= 0 for row in schedule)
        assert all(row.principal >= 0 and row.interest >= 0 for row in schedule)

    @given(principal=principals, count=counts)
    @settings(max_examples=100, deadline=None)
    def test_zero_rate_has_no_interest(self, principal, count):
        schedule = generate_schedule(principal, Decimal('0'), count, date(2024, 1, 1), 1)

        assert all(row.interest == Decimal('0.00') for row in schedule)
        even_share = (principal / count).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        for row in schedule[:-1]:
            assert row.principal == even_share

    @given(
        principal=st.decimals(min_value=Decimal('0.01'), max_value=Decimal('100000'), places=2,
                              allow_nan=False, allow_infinity=False),
        rate=rates,
        count=counts
    )
    @settings(max_examples=300, deadline=None)
    def test_row_total_is_principal_plus_interest(self, principal, rate, count):
        schedule = generate_schedule(principal, rate, count, date(2024, 1, 1), 1)

        for row in schedule:
            assert row.total == row.principal + row.interest

    def test_small_balance_last_row_adds_up(self):
        schedule = generate_schedule(Decimal('5.09'), Decimal('7.43'), 17, date(2024, 1, 1), 1)

        last = schedule[-1]
        assert last.total == last.principal + last.interest
        assert last.remaining_balance == Decimal('0.00')
