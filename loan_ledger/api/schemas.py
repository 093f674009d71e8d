"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..currency import Money
from ..installments import Installment, ExtraPayment
from ..loans import Loan, LoanTotals, UpcomingPayment


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Request schemas
class CreateLoanRequest(BaseModel):
    title: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    installment_amount: str = Field(..., description="Decimal amount as string")
    installment_count: int
    due_day: int
    start_date: date
    interest_rate: Optional[str] = Field(None, description="Annual percent; estimated when omitted")
    create_reminder: bool = False
    description: Optional[str] = None
    icon: Optional[str] = None


class UpdateLoanRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    installment_amount: Optional[str] = None  # Decimal as string


class ExtraPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    memo: Optional[str] = None


# Response serializers
def loan_to_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "title": loan.title,
        "description": loan.description,
        "icon": loan.icon,
        "state": loan.state.value,
        "is_active": loan.is_active,
        "principal_amount": MoneyModel.from_money(loan.principal_amount).dict(),
        "installment_amount": MoneyModel.from_money(loan.installment_amount).dict(),
        "installment_count": loan.installment_count,
        "installments_paid": loan.installments_paid,
        "remaining_installments": loan.remaining_installments,
        "progress_percentage": str(loan.progress_percentage),
        "due_day": loan.due_day,
        "start_date": loan.start_date.isoformat(),
        "interest_rate": str(loan.interest_rate),
        "rate_is_estimated": loan.rate_is_estimated,
        "interest_rate_category": loan.interest_rate_category.value,
        "interest_rate_label": loan.interest_rate_label,
        "category_id": loan.category_id,
        "version": loan.version
    }


def installment_to_response(installment: Installment) -> Dict[str, Any]:
    return {
        "id": installment.id,
        "number": installment.number,
        "due_date": installment.due_date.isoformat(),
        "principal_amount": MoneyModel.from_money(installment.principal_amount).dict(),
        "interest_amount": MoneyModel.from_money(installment.interest_amount).dict(),
        "total_amount": MoneyModel.from_money(installment.total_amount).dict(),
        "remaining_balance": MoneyModel.from_money(installment.remaining_balance).dict(),
        "is_paid": installment.is_paid,
        "paid_date": installment.paid_date.isoformat() if installment.paid_date else None,
        "ledger_entry_id": installment.ledger_entry_id,
        "is_recalculated": installment.is_recalculated,
        "recalculated_at": installment.recalculated_at.isoformat() if installment.recalculated_at else None
    }


def extra_payment_to_response(payment: ExtraPayment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "amount": MoneyModel.from_money(payment.amount).dict(),
        "paid_date": payment.paid_date.isoformat(),
        "memo": payment.memo,
        "applied_after_installment": payment.applied_after_installment,
        "settled_loan": payment.settled_loan
    }


def totals_to_response(totals: LoanTotals) -> Dict[str, Any]:
    return {
        "active_loans": totals.active_loans,
        "total_borrowed": MoneyModel.from_money(totals.total_borrowed).dict(),
        "total_to_pay": MoneyModel.from_money(totals.total_to_pay).dict(),
        "total_paid": MoneyModel.from_money(totals.total_paid).dict(),
        "total_remaining": MoneyModel.from_money(totals.total_remaining).dict(),
        "monthly_payments": MoneyModel.from_money(totals.monthly_payments).dict(),
        "average_interest_rate": str(totals.average_interest_rate)
    }


def upcoming_to_response(upcoming: UpcomingPayment) -> Dict[str, Any]:
    return {
        "loan_id": upcoming.loan.id,
        "title": upcoming.loan.title,
        "installment_number": upcoming.installment.number,
        "due_date": upcoming.installment.due_date.isoformat(),
        "total_amount": MoneyModel.from_money(upcoming.installment.total_amount).dict(),
        "days_until_due": upcoming.days_until_due
    }
