"""
Installment Ledger Module

Per-period obligations of a loan and the lump-sum paydowns applied outside
the schedule. Installment rows are never edited in place: paying, undoing
and recalculating all replace rows, so every row reflects one decision.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable, Any
import uuid

from .amortization import ScheduleRow
from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Installment(StorageRecord):
    """One scheduled period's obligation"""
    loan_id: str
    number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    remaining_balance: Money
    is_paid: bool = False
    paid_date: Optional[datetime] = None
    ledger_entry_id: Optional[str] = None   # Interest charge recorded for this installment
    is_recalculated: bool = False
    recalculated_at: Optional[datetime] = None

    @classmethod
    def from_schedule_row(
        cls,
        row: ScheduleRow,
        loan_id: str,
        currency: Currency,
        now: datetime,
        recalculated: bool = False
    ) -> 'Installment':
        """Materialize a calculator row as an unpaid installment"""
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            number=row.number,
            due_date=row.due_date,
            principal_amount=Money(row.principal, currency),
            interest_amount=Money(row.interest, currency),
            total_amount=Money(row.total, currency),
            remaining_balance=Money(row.remaining_balance, currency),
            is_recalculated=recalculated,
            recalculated_at=now if recalculated else None
        )

    def _replacement(self, now: datetime, **changes) -> 'Installment':
        fields = dict(
            loan_id=self.loan_id,
            number=self.number,
            due_date=self.due_date,
            principal_amount=self.principal_amount,
            interest_amount=self.interest_amount,
            total_amount=self.total_amount,
            remaining_balance=self.remaining_balance,
            is_paid=self.is_paid,
            paid_date=self.paid_date,
            ledger_entry_id=self.ledger_entry_id,
            is_recalculated=self.is_recalculated,
            recalculated_at=self.recalculated_at
        )
        fields.update(changes)
        return Installment(id=str(uuid.uuid4()), created_at=now, updated_at=now, **fields)

    def as_paid(self, paid_at: datetime, ledger_entry_id: Optional[str]) -> 'Installment':
        """Replacement row marked paid at ``paid_at``"""
        return self._replacement(paid_at, is_paid=True, paid_date=paid_at, ledger_entry_id=ledger_entry_id)

    def as_unpaid(self, now: datetime) -> 'Installment':
        """Fresh unpaid row with the same amounts and due date"""
        return self._replacement(now, is_paid=False, paid_date=None, ledger_entry_id=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'number': self.number,
            'due_date': self.due_date.isoformat(),
            'currency': self.total_amount.currency.code,
            'principal_amount': str(self.principal_amount.amount),
            'interest_amount': str(self.interest_amount.amount),
            'total_amount': str(self.total_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'is_paid': self.is_paid,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'ledger_entry_id': self.ledger_entry_id,
            'is_recalculated': self.is_recalculated,
            'recalculated_at': self.recalculated_at.isoformat() if self.recalculated_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            number=data['number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=Money(Decimal(data['principal_amount']), currency),
            interest_amount=Money(Decimal(data['interest_amount']), currency),
            total_amount=Money(Decimal(data['total_amount']), currency),
            remaining_balance=Money(Decimal(data['remaining_balance']), currency),
            is_paid=data['is_paid'],
            paid_date=_optional_datetime(data.get('paid_date')),
            ledger_entry_id=data.get('ledger_entry_id'),
            is_recalculated=data.get('is_recalculated', False),
            recalculated_at=_optional_datetime(data.get('recalculated_at'))
        )


@dataclass
class ExtraPayment(StorageRecord):
    """Lump-sum principal paydown applied outside the regular schedule"""
    loan_id: str
    amount: Money
    paid_date: datetime
    memo: str = ""
    applied_after_installment: int = 0  # Installments paid when it was applied
    settled_loan: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'paid_date': self.paid_date.isoformat(),
            'memo': self.memo,
            'applied_after_installment': self.applied_after_installment,
            'settled_loan': self.settled_loan
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExtraPayment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            paid_date=datetime.fromisoformat(data['paid_date']),
            memo=data.get('memo', ""),
            applied_after_installment=data.get('applied_after_installment', 0),
            settled_loan=data.get('settled_loan', False)
        )


def outstanding_balance(
    principal: Money,
    installments: Iterable[Installment],
    extra_payments: Iterable[ExtraPayment]
) -> Money:
    """
    Principal still owed, derived from the installment table.

    The last paid installment's remaining balance (or the principal when
    nothing is paid), less any extra payments applied since that installment.
    """
    paid = [i for i in installments if i.is_paid]
    if paid:
        last_paid = max(paid, key=lambda i: i.number)
        base = last_paid.remaining_balance
        paid_count = last_paid.number
    else:
        base = principal
        paid_count = 0

    balance = base
    for extra in extra_payments:
        if extra.applied_after_installment >= paid_count:
            balance = balance - extra.amount
    if balance.is_negative():
        return Money.zero(principal.currency)
    return balance


class InstallmentLedger:
    """
    Installment and extra-payment tables for all loans.

    Reads always come back ordered by installment number; "next unpaid" and
    "last paid" are derived from the rows, never from the loan's counter.
    """

    def __init__(
        self,
        storage: StorageInterface,
        installments_table: str = "loan_installments",
        extra_payments_table: str = "loan_extra_payments"
    ):
        self.storage = storage
        self.installments_table = installments_table
        self.extra_payments_table = extra_payments_table

    # Installments

    def get_installments(self, loan_id: str) -> List[Installment]:
        rows = self.storage.find(self.installments_table, {'loan_id': loan_id})
        installments = [Installment.from_dict(data) for data in rows]
        installments.sort(key=lambda i: i.number)
        return installments

    def add_installments(self, installments: Iterable[Installment]) -> None:
        for installment in installments:
            self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def replace_installment(self, old: Installment, new: Installment) -> None:
        self.storage.delete(self.installments_table, old.id)
        self.storage.save(self.installments_table, new.id, new.to_dict())

    def delete_installment(self, installment: Installment) -> None:
        self.storage.delete(self.installments_table, installment.id)

    def delete_unpaid(self, loan_id: str) -> int:
        """Delete every unpaid installment of a loan"""
        unpaid = [i for i in self.get_installments(loan_id) if not i.is_paid]
        for installment in unpaid:
            self.delete_installment(installment)
        return len(unpaid)

    def delete_all(self, loan_id: str) -> int:
        installments = self.get_installments(loan_id)
        for installment in installments:
            self.delete_installment(installment)
        return len(installments)

    def materialize(
        self,
        loan_id: str,
        rows: Iterable[ScheduleRow],
        currency: Currency,
        now: datetime,
        recalculated: bool = False
    ) -> List[Installment]:
        """Save calculator rows as unpaid installments"""
        installments = [
            Installment.from_schedule_row(row, loan_id, currency, now, recalculated)
            for row in rows
        ]
        self.add_installments(installments)
        return installments

    # Derived queries

    @staticmethod
    def next_unpaid(installments: List[Installment]) -> Optional[Installment]:
        unpaid = [i for i in installments if not i.is_paid]
        return min(unpaid, key=lambda i: i.number) if unpaid else None

    @staticmethod
    def last_paid(installments: List[Installment]) -> Optional[Installment]:
        paid = [i for i in installments if i.is_paid]
        return max(paid, key=lambda i: i.number) if paid else None

    @staticmethod
    def is_paid_prefix(installments: List[Installment]) -> bool:
        """True when the paid installments are exactly numbers 1..k"""
        paid_numbers = sorted(i.number for i in installments if i.is_paid)
        return paid_numbers == list(range(1, len(paid_numbers) + 1))

    # Extra payments

    def get_extra_payments(self, loan_id: str) -> List[ExtraPayment]:
        rows = self.storage.find(self.extra_payments_table, {'loan_id': loan_id})
        payments = [ExtraPayment.from_dict(data) for data in rows]
        payments.sort(key=lambda p: p.paid_date)
        return payments

    def add_extra_payment(self, payment: ExtraPayment) -> None:
        self.storage.save(self.extra_payments_table, payment.id, payment.to_dict())

    def delete_extra_payment(self, payment: ExtraPayment) -> None:
        self.storage.delete(self.extra_payments_table, payment.id)

    def delete_all_extra_payments(self, loan_id: str) -> int:
        payments = self.get_extra_payments(loan_id)
        for payment in payments:
            self.delete_extra_payment(payment)
        return len(payments)
