"""
Amortization Calculator

Pure functions for the constant-payment (French) method: approximate rate
estimation from a flat installment, the periodic payment, and full schedule
generation. No persistence and no side effects; identical inputs always
produce identical schedules.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Union
import calendar

from .currency import round_money, to_decimal

Number = Union[Decimal, int, str]

ZERO = Decimal('0')
HUNDRED = Decimal('100')
TWELVE = Decimal('12')


@dataclass(frozen=True)
class ScheduleRow:
    """Single row of an amortization schedule, amounts rounded to cents"""
    number: int
    due_date: date
    principal: Decimal
    interest: Decimal
    total: Decimal
    remaining_balance: Decimal


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Convert an annual nominal rate in percent to the monthly fraction"""
    return to_decimal(annual_rate_percent) / HUNDRED / TWELVE


def compute_rate(principal: Number, flat_installment_amount: Number, count: int) -> Decimal:
    """
    Estimate the annual rate implied by a flat installment.

    This is a simple-interest approximation, not an IRR:
    ``(total interest / principal) * (12 / count) * 100``, floored at 0 and
    rounded to 2 decimals.
    """
    principal = to_decimal(principal)
    if principal <= ZERO or count <= 0:
        return ZERO.quantize(Decimal('0.01'))

    total_to_pay = to_decimal(flat_installment_amount) * count
    total_interest = total_to_pay - principal
    rate = (total_interest / principal) * (TWELVE / Decimal(count)) * HUNDRED
    return round_money(max(ZERO, rate))


def compute_periodic_payment(principal: Number, annual_rate_percent: Number, count: int) -> Decimal:
    """
    Constant periodic payment for the French method.

    A zero rate splits the principal evenly (left unrounded so the schedule
    can round each row on its own); otherwise
    ``P * r * (1 + r)^n / ((1 + r)^n - 1)`` rounded to cents.
    """
    if count <= 0:
        raise ValueError("Installment count must be at least 1")

    principal = to_decimal(principal)
    rate = monthly_rate(annual_rate_percent)
    if rate == ZERO:
        return principal / Decimal(count)

    factor = (Decimal('1') + rate) ** count
    payment = principal * (rate * factor) / (factor - Decimal('1'))
    return round_money(payment)


def due_date_for(start_date: date, months: int, due_day: int) -> date:
    """Advance ``start_date`` by ``months`` and clamp the day to ``due_day`` and the month length"""
    month_index = start_date.month - 1 + months
    year = start_date.year + month_index // 12
    month = month_index % 12 + 1
    day = min(due_day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_schedule(
    principal: Number,
    annual_rate_percent: Number,
    count: int,
    start_date: date,
    due_day: int,
    first_number: int = 1
) -> List[ScheduleRow]:
    """
    Generate a full amortization schedule.

    Args:
        principal: Balance to amortize
        annual_rate_percent: Annual nominal rate, e.g. 12 for 12%
        count: Number of installments to generate
        start_date: Loan start date; installment ``n`` falls ``n`` months later
        due_day: Preferred day of month (clamped to the month length)
        first_number: Number of the first generated installment, so a
            regenerated tail keeps the loan's numbering and due dates

    Returns:
        ``count`` rows; the last one absorbs all rounding so the remaining
        balance ends at exactly zero.
    """
    if count <= 0:
        raise ValueError("Installment count must be at least 1")
    if first_number < 1:
        raise ValueError("First installment number must be at least 1")

    rate = monthly_rate(annual_rate_percent)
    remaining_balance = to_decimal(principal)
    payment = compute_periodic_payment(remaining_balance, annual_rate_percent, count)

    schedule = []
    for offset in range(count):
        number = first_number + offset
        interest = remaining_balance * rate
        principal_part = payment - interest

        # Rounded parts always add up to the rounded total
        row_interest = round_money(interest)
        if offset == count - 1:
            # Final installment pays exactly what is left
            principal_part = remaining_balance
            row_principal = round_money(principal_part)
            row_total = row_principal + row_interest
        elif principal_part < ZERO:
            # Payment rounded below the interest on a tiny balance
            principal_part = ZERO
            row_principal = round_money(ZERO)
            row_total = row_interest
        else:
            row_total = round_money(payment)
            row_principal = row_total - row_interest

        remaining_balance -= principal_part

        schedule.append(ScheduleRow(
            number=number,
            due_date=due_date_for(start_date, number, due_day),
            principal=row_principal,
            interest=row_interest,
            total=row_total,
            remaining_balance=round_money(max(ZERO, remaining_balance))
        ))

    return schedule
