"""
Loan Module

Loan aggregate and the lifecycle manager: creation, regular payments,
payment reversal, extraordinary principal paydowns, archiving and the
per-owner portfolio queries. Every mutation runs in one storage
transaction and returns an OperationResult instead of raising.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .amortization import compute_rate, generate_schedule
from .audit import AuditTrail, AuditEventType
from .collaborators import (
    LedgerEntryRecorder, CategoryRegistry, Clock, SystemClock, EntryKind
)
from .config import LoanLedgerConfig, get_config
from .currency import Money, Currency, round_money, to_decimal
from .errors import (
    LoanLedgerError, ValidationError, NotFoundError, StateConflictError,
    ConcurrencyConflictError, CollaboratorFailure, OperationResult
)
from .installments import Installment, ExtraPayment, InstallmentLedger, outstanding_balance
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger("loan_ledger.loans")

Amount = Union[Money, Decimal, int, str]


class LoanState(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"        # Accepting payments
    PAID_OFF = "paid_off"    # Every installment paid, or settled by an extra payment
    ARCHIVED = "archived"    # Cancelled by the owner; may be reactivated


class InterestRateCategory(Enum):
    """Coarse classification of a loan's annual rate"""
    FAVORABLE = "favorable"
    MODERATE = "moderate"
    HIGH = "high"

    @property
    def label(self) -> str:
        return {
            InterestRateCategory.FAVORABLE: "Favorable rate",
            InterestRateCategory.MODERATE: "Moderate rate",
            InterestRateCategory.HIGH: "High rate - consider refinancing",
        }[self]


@dataclass
class Loan(StorageRecord):
    """Loan terms, paid counter and lifecycle state"""
    owner_id: str
    title: str
    principal_amount: Money
    installment_amount: Money       # Nominal installment the owner reported
    installment_count: int
    due_day: int
    start_date: date
    interest_rate: Decimal          # Annual percent, e.g. 12.00
    category_id: str
    description: Optional[str] = None
    icon: str = ""
    rate_is_estimated: bool = False
    installments_paid: int = 0
    state: LoanState = LoanState.ACTIVE
    create_reminder: bool = False
    version: int = 1                # Optimistic concurrency token

    @property
    def is_active(self) -> bool:
        return self.state == LoanState.ACTIVE

    @property
    def is_paid_off(self) -> bool:
        return self.state == LoanState.PAID_OFF

    @property
    def remaining_installments(self) -> int:
        return self.installment_count - self.installments_paid

    @property
    def progress_percentage(self) -> Decimal:
        """Share of installments paid, in percent"""
        return round_money(Decimal(self.installments_paid) / Decimal(self.installment_count) * 100)

    @property
    def interest_rate_category(self) -> InterestRateCategory:
        if self.interest_rate <= Decimal('15'):
            return InterestRateCategory.FAVORABLE
        if self.interest_rate <= Decimal('30'):
            return InterestRateCategory.MODERATE
        return InterestRateCategory.HIGH

    @property
    def interest_rate_label(self) -> str:
        return self.interest_rate_category.label


@dataclass
class LoanTotals:
    """Portfolio figures over an owner's active loans"""
    active_loans: int
    total_borrowed: Money
    total_to_pay: Money
    total_paid: Money
    total_remaining: Money
    monthly_payments: Money
    average_interest_rate: Decimal


@dataclass
class UpcomingPayment:
    """Next unpaid installment of an active loan falling inside a window"""
    loan: Loan
    installment: Installment
    days_until_due: int


class _Attempt:
    """
    Collaborator side effects of one transaction attempt.

    Creations are undone if the attempt rolls back. Deletions are queued and
    only reach the collaborators once the attempt has committed.
    """

    def __init__(self):
        self.entry_ids: List[str] = []
        self.category_ids: List[str] = []
        self.deletions: List[Tuple[str, Callable[..., Any], tuple]] = []

    def defer(self, resource: str, call: Callable[..., Any], *args) -> None:
        self.deletions.append((resource, call, args))


class LoanManager:
    """
    Manages loans from creation through payoff.

    The manager is the only component that writes loans, installments and
    extra payments, and the only caller of the collaborators. Installment
    rows are the source of truth; the loan's paid counter is a projection
    kept in step with them.
    """

    def __init__(
        self,
        storage: StorageInterface,
        recorder: LedgerEntryRecorder,
        category_registry: CategoryRegistry,
        clock: Optional[Clock] = None,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LoanLedgerConfig] = None
    ):
        self.storage = storage
        self.recorder = recorder
        self.category_registry = category_registry
        self.clock = clock or SystemClock()
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.ledger = InstallmentLedger(storage)

        self.loans_table = "loans"
        self.currency = Currency[self.config.default_currency]
        self.epsilon = to_decimal(self.config.extra_payment_epsilon)

    # Lifecycle operations

    def create_loan(
        self,
        owner_id: str,
        title: str,
        principal_amount: Amount,
        installment_amount: Amount,
        installment_count: int,
        due_day: int,
        start_date: date,
        interest_rate: Optional[Amount] = None,
        create_reminder: bool = False,
        description: Optional[str] = None,
        icon: Optional[str] = None
    ) -> OperationResult:
        """
        Create a loan with its category, full schedule and principal entry

        Args:
            owner_id: Owner of the loan
            title: Title, unique among the owner's loans
            principal_amount: Amount borrowed
            installment_amount: Flat installment the lender quoted
            installment_count: Number of monthly installments
            due_day: Preferred day of month for installments
            start_date: Date the money was received
            interest_rate: Annual percent; estimated from the installment when omitted
            create_reminder: Give the category a monthly reminder on the due day
            description: Free-form notes
            icon: Display icon; configured default when omitted

        Returns:
            OperationResult carrying the new Loan
        """
        return self._run(
            "create_loan", owner_id, self._create_loan,
            owner_id, title, principal_amount, installment_amount, installment_count,
            due_day, start_date, interest_rate, create_reminder, description, icon
        )

    def register_payment(self, loan_id: str, owner_id: str) -> OperationResult:
        """Mark the next unpaid installment paid and record its interest"""
        return self._run("register_payment", owner_id, self._register_payment, loan_id, owner_id)

    def undo_last_payment(self, loan_id: str, owner_id: str) -> OperationResult:
        """
        Reverse the most recent installment payment.

        Extra payments made on the same calendar day as that payment are
        unwound with it and the unpaid tail is regenerated without them.
        """
        return self._run("undo_last_payment", owner_id, self._undo_last_payment, loan_id, owner_id)

    def apply_extra_payment(
        self,
        loan_id: str,
        owner_id: str,
        amount: Amount,
        memo: Optional[str] = None
    ) -> OperationResult:
        """Pay principal down outside the schedule and regenerate the unpaid tail"""
        return self._run(
            "apply_extra_payment", owner_id, self._apply_extra_payment,
            loan_id, owner_id, amount, memo
        )

    def update_loan(
        self,
        loan_id: str,
        owner_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        icon: Optional[str] = None,
        installment_amount: Optional[Amount] = None
    ) -> OperationResult:
        """Edit descriptive terms; amortization terms cannot change"""
        return self._run(
            "update_loan", owner_id, self._update_loan,
            loan_id, owner_id, title, description, icon, installment_amount
        )

    def delete_loan(self, loan_id: str, owner_id: str, delete_history: bool = False) -> OperationResult:
        """
        Remove a loan.

        Without ``delete_history`` the loan is archived and nothing is lost.
        With it, the loan's extra payments, installments and the loan itself
        are removed; its ledger entries and category follow once that commits.
        """
        return self._run("delete_loan", owner_id, self._delete_loan, loan_id, owner_id, delete_history)

    def archive_loan(self, loan_id: str, owner_id: str) -> OperationResult:
        return self._run("archive_loan", owner_id, self._archive_loan, loan_id, owner_id)

    def reactivate_loan(self, loan_id: str, owner_id: str) -> OperationResult:
        """Return an archived loan with pending installments to active"""
        return self._run("reactivate_loan", owner_id, self._reactivate_loan, loan_id, owner_id)

    # Queries

    def get_loan(self, loan_id: str, owner_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if not data or data['owner_id'] != owner_id:
            return None
        return self._loan_from_dict(data)

    def list_loans(self, owner_id: str) -> List[Loan]:
        """All of an owner's loans, newest start date first"""
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, {'owner_id': owner_id})]
        loans.sort(key=lambda l: (l.start_date, l.created_at), reverse=True)
        return loans

    def list_active_loans(self, owner_id: str) -> List[Loan]:
        return [loan for loan in self.list_loans(owner_id) if loan.is_active]

    def get_installments(self, loan_id: str, owner_id: str) -> List[Installment]:
        if not self.get_loan(loan_id, owner_id):
            return []
        return self.ledger.get_installments(loan_id)

    def get_extra_payments(self, loan_id: str, owner_id: str) -> List[ExtraPayment]:
        if not self.get_loan(loan_id, owner_id):
            return []
        return self.ledger.get_extra_payments(loan_id)

    def get_outstanding_balance(self, loan_id: str, owner_id: str) -> Optional[Money]:
        loan = self.get_loan(loan_id, owner_id)
        if not loan:
            return None
        return outstanding_balance(
            loan.principal_amount,
            self.ledger.get_installments(loan_id),
            self.ledger.get_extra_payments(loan_id)
        )

    def title_exists(self, owner_id: str, title: str, exclude_loan_id: Optional[str] = None) -> bool:
        title = (title or "").strip()
        for data in self.storage.find(self.loans_table, {'owner_id': owner_id}):
            if data['title'] == title and data['id'] != exclude_loan_id:
                return True
        return False

    def get_total_borrowed(self, owner_id: str) -> Money:
        return self._sum(loan.principal_amount for loan in self.list_active_loans(owner_id))

    def get_total_to_pay(self, owner_id: str) -> Money:
        """Every scheduled installment plus every extra payment"""
        total = self._sum_installments(owner_id, lambda i: True)
        return total + self._sum_extra_payments(owner_id)

    def get_total_paid(self, owner_id: str) -> Money:
        total = self._sum_installments(owner_id, lambda i: i.is_paid)
        return total + self._sum_extra_payments(owner_id)

    def get_total_remaining(self, owner_id: str) -> Money:
        return self._sum_installments(owner_id, lambda i: not i.is_paid)

    def get_monthly_payments(self, owner_id: str) -> Money:
        """Sum of each active loan's next unpaid installment"""
        amounts = []
        for loan in self.list_active_loans(owner_id):
            next_installment = InstallmentLedger.next_unpaid(self.ledger.get_installments(loan.id))
            if next_installment:
                amounts.append(next_installment.total_amount)
        return self._sum(amounts)

    def get_average_interest_rate(self, owner_id: str) -> Decimal:
        loans = self.list_active_loans(owner_id)
        if not loans:
            return round_money(Decimal('0'))
        return round_money(sum((loan.interest_rate for loan in loans), Decimal('0')) / len(loans))

    def get_totals(self, owner_id: str) -> LoanTotals:
        return LoanTotals(
            active_loans=len(self.list_active_loans(owner_id)),
            total_borrowed=self.get_total_borrowed(owner_id),
            total_to_pay=self.get_total_to_pay(owner_id),
            total_paid=self.get_total_paid(owner_id),
            total_remaining=self.get_total_remaining(owner_id),
            monthly_payments=self.get_monthly_payments(owner_id),
            average_interest_rate=self.get_average_interest_rate(owner_id)
        )

    def list_upcoming_payments(self, owner_id: str, days: Optional[int] = None) -> List[UpcomingPayment]:
        """Active loans whose next unpaid installment is due within ``days`` of today"""
        if days is None:
            days = self.config.upcoming_payment_days
        today = self.clock.today()
        horizon = today + timedelta(days=days)

        upcoming = []
        for loan in self.list_active_loans(owner_id):
            next_installment = InstallmentLedger.next_unpaid(self.ledger.get_installments(loan.id))
            if next_installment and today <= next_installment.due_date <= horizon:
                upcoming.append(UpcomingPayment(
                    loan=loan,
                    installment=next_installment,
                    days_until_due=(next_installment.due_date - today).days
                ))
        upcoming.sort(key=lambda u: u.installment.due_date)
        return upcoming

    # Transaction handling

    def _run(self, action: str, owner_id: str, operation: Callable[..., OperationResult], *args) -> OperationResult:
        """
        Run one mutation atomically, retrying optimistic concurrency conflicts.

        Typed errors come back as failed results; anything else is logged with
        its traceback and reported as a collaborator failure.
        """
        attempts = max(1, self.config.concurrency_retry_attempts)
        conflict = None

        for attempt_number in range(1, attempts + 1):
            attempt = _Attempt()
            try:
                with self.storage.atomic():
                    result = operation(attempt, *args)
            except ConcurrencyConflictError as e:
                self._compensate(attempt, action)
                conflict = e
                log_action(
                    logger, "warning", f"Concurrency conflict, attempt {attempt_number}/{attempts}",
                    owner_id=owner_id, action=action, extra={'error': e.message}
                )
            except LoanLedgerError as e:
                self._compensate(attempt, action)
                log_action(
                    logger, "debug", f"Rejected: {e.message}",
                    owner_id=owner_id, action=action, extra={'code': e.code}
                )
                return OperationResult.failed(e)
            except Exception as e:
                self._compensate(attempt, action)
                log_action(logger, "error", "Operation failed", owner_id=owner_id, action=action, exc_info=e)
                return OperationResult.failed(CollaboratorFailure("Operation failed", cause=e))
            else:
                self._apply_deletions(attempt, action)
                return result

        return OperationResult.failed(conflict)

    def _apply_deletions(self, attempt: _Attempt, action: str) -> None:
        """Run collaborator deletions queued by a committed attempt"""
        for resource, call, args in attempt.deletions:
            try:
                call(*args)
            except Exception as e:
                # Already committed; a failure leaves an orphaned record behind
                log_action(logger, "error", "Could not remove collaborator record of a committed operation",
                           action=action, resource=resource, exc_info=e)

    def _compensate(self, attempt: _Attempt, action: str) -> None:
        """Undo collaborator writes made by a rolled-back attempt"""
        for entry_id in attempt.entry_ids:
            try:
                self.recorder.delete_entry(entry_id)
            except Exception as e:
                log_action(logger, "error", "Could not remove ledger entry of a rolled-back operation",
                           action=action, resource=entry_id, exc_info=e)
        for category_id in attempt.category_ids:
            try:
                self.category_registry.delete_category(category_id)
            except Exception as e:
                log_action(logger, "error", "Could not remove category of a rolled-back operation",
                           action=action, resource=category_id, exc_info=e)

    # Operation bodies; each runs inside _run's transaction

    def _create_loan(
        self,
        attempt: _Attempt,
        owner_id: str,
        title: str,
        principal_amount: Amount,
        installment_amount: Amount,
        installment_count: int,
        due_day: int,
        start_date: date,
        interest_rate: Optional[Amount],
        create_reminder: bool,
        description: Optional[str],
        icon: Optional[str]
    ) -> OperationResult:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        principal = self._parse_amount(principal_amount, "Principal amount")
        installment = self._parse_amount(installment_amount, "Installment amount")
        if not isinstance(installment_count, int) or not 1 <= installment_count <= self.config.max_installments:
            raise ValidationError(f"Installment count must be between 1 and {self.config.max_installments}")
        if not isinstance(due_day, int) or not 1 <= due_day <= 31:
            raise ValidationError("Due day must be between 1 and 31")
        start_date = self._parse_date(start_date)
        if interest_rate is not None:
            rate = self._parse_decimal(interest_rate, "Interest rate")
            if rate < Decimal('0'):
                raise ValidationError("Interest rate cannot be negative")
            rate = round_money(rate)
            rate_is_estimated = False
        else:
            rate = compute_rate(principal.amount, installment.amount, installment_count)
            rate_is_estimated = True
        if self.title_exists(owner_id, title):
            raise ValidationError(f"A loan titled '{title}' already exists")

        icon = icon or self.config.default_loan_icon
        category_id = self.category_registry.create_category(
            owner_id=owner_id,
            title=title,
            icon=icon,
            kind=EntryKind.EXPENSE,
            reminder_day=due_day if create_reminder else None,
            estimated_amount=installment if create_reminder else None
        )
        attempt.category_ids.append(category_id)

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            title=title,
            principal_amount=principal,
            installment_amount=installment,
            installment_count=installment_count,
            due_day=due_day,
            start_date=start_date,
            interest_rate=rate,
            category_id=category_id,
            description=description,
            icon=icon,
            rate_is_estimated=rate_is_estimated,
            create_reminder=create_reminder
        )
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

        schedule = generate_schedule(principal.amount, rate, installment_count, start_date, due_day)
        self.ledger.materialize(loan.id, schedule, self.currency, now)

        self._record_entry(
            attempt, loan, EntryKind.ADJUSTMENT, principal, start_date,
            f"Loan received - {title}"
        )

        self._audit(AuditEventType.LOAN_CREATED, loan, {
            "principal_amount": principal.amount,
            "interest_rate": rate,
            "rate_is_estimated": rate_is_estimated,
            "installment_count": installment_count,
            "start_date": start_date
        })
        log_action(logger, "info", "Loan created", owner_id=owner_id, action="create_loan",
                   resource=loan.id, extra={'rate_is_estimated': rate_is_estimated})

        reason = None
        if rate_is_estimated:
            reason = f"Interest rate estimated at {rate}% from the installment amount"
        return OperationResult.ok(loan, reason)

    def _register_payment(self, attempt: _Attempt, loan_id: str, owner_id: str) -> OperationResult:
        loan = self._load_loan(loan_id, owner_id)
        if not loan.is_active:
            raise StateConflictError("Loan is not active")
        installments = self.ledger.get_installments(loan_id)
        installment = InstallmentLedger.next_unpaid(installments)
        if installment is None:
            raise StateConflictError("Loan has no pending installments")

        now = self.clock.now()
        entry_id = None
        if installment.interest_amount.is_positive():
            entry_id = self._record_entry(
                attempt, loan, EntryKind.EXPENSE, installment.interest_amount, now.date(),
                f"Installment {installment.number}/{loan.installment_count} interest - {loan.title}"
            )
        self.ledger.replace_installment(installment, installment.as_paid(now, entry_id))

        loan.installments_paid = sum(1 for i in installments if i.is_paid) + 1
        # A tail settled by an extra payment leaves fewer rows than the count
        pending = [i for i in installments if not i.is_paid and i.number != installment.number]
        if not pending or loan.installments_paid >= loan.installment_count:
            loan.state = LoanState.PAID_OFF
        self._save_loan(loan, now)

        self._audit(AuditEventType.LOAN_PAYMENT_REGISTERED, loan, {
            "installment_number": installment.number,
            "total_amount": installment.total_amount.amount,
            "interest_amount": installment.interest_amount.amount,
            "ledger_entry_id": entry_id,
            "paid_off": loan.is_paid_off
        })
        log_action(logger, "info", "Installment paid", owner_id=owner_id, action="register_payment",
                   resource=loan.id, extra={'installment_number': installment.number})

        return OperationResult.ok(loan, f"Installment {installment.number}/{loan.installment_count} registered")

    def _undo_last_payment(self, attempt: _Attempt, loan_id: str, owner_id: str) -> OperationResult:
        loan = self._load_loan(loan_id, owner_id)
        installments = self.ledger.get_installments(loan_id)
        last = InstallmentLedger.last_paid(installments)
        if last is None:
            raise StateConflictError("Loan has no payments to undo")

        now = self.clock.now()
        number = last.number
        extra_payments = self.ledger.get_extra_payments(loan_id)
        paid_day = last.paid_date.date()
        coupled = [p for p in extra_payments if p.paid_date.date() == paid_day]

        if coupled:
            for payment in coupled:
                self.ledger.delete_extra_payment(payment)
            self.ledger.delete_unpaid(loan_id)
            self.ledger.delete_installment(last)

            surviving = [p for p in extra_payments if p not in coupled]
            previous = next((i for i in installments if i.number == number - 1), None)
            balance = previous.remaining_balance if previous else loan.principal_amount
            for payment in surviving:
                if payment.applied_after_installment >= number - 1:
                    balance = balance - payment.amount
            if balance.is_negative():
                balance = Money.zero(balance.currency)

            schedule = generate_schedule(
                balance.amount, loan.interest_rate, loan.installment_count - (number - 1),
                loan.start_date, loan.due_day, first_number=number
            )
            self.ledger.materialize(loan_id, schedule, self.currency, now, recalculated=bool(surviving))
        else:
            self.ledger.replace_installment(last, last.as_unpaid(now))

        if last.ledger_entry_id:
            attempt.defer(last.ledger_entry_id, self.recorder.delete_entry, last.ledger_entry_id)

        loan.installments_paid = number - 1
        reactivated = False
        if not loan.is_active and loan.installments_paid < loan.installment_count:
            loan.state = LoanState.ACTIVE
            reactivated = True
        self._save_loan(loan, now)

        self._audit(AuditEventType.LOAN_PAYMENT_UNDONE, loan, {
            "installment_number": number,
            "unwound_extra_payments": [p.id for p in coupled],
            "reactivated": reactivated
        })
        log_action(logger, "info", "Installment payment undone", owner_id=owner_id,
                   action="undo_last_payment", resource=loan.id,
                   extra={'installment_number': number, 'unwound_extra_payments': len(coupled)})

        return OperationResult.ok(loan, f"Payment of installment {number}/{loan.installment_count} undone")

    def _apply_extra_payment(
        self,
        attempt: _Attempt,
        loan_id: str,
        owner_id: str,
        amount: Amount,
        memo: Optional[str]
    ) -> OperationResult:
        amount = self._parse_amount(amount, "Extra payment amount")
        loan = self._load_loan(loan_id, owner_id)
        if not loan.is_active:
            raise StateConflictError("Loan is not active")
        installments = self.ledger.get_installments(loan_id)
        if InstallmentLedger.next_unpaid(installments) is None:
            raise StateConflictError("Loan has no pending installments")

        balance = outstanding_balance(
            loan.principal_amount, installments, self.ledger.get_extra_payments(loan_id)
        )
        if amount > balance:
            raise StateConflictError(
                f"Extra payment {amount.to_string()} exceeds outstanding balance {balance.to_string()}"
            )

        now = self.clock.now()
        new_balance = balance - amount
        paid_count = sum(1 for i in installments if i.is_paid)
        settles = new_balance.amount <= self.epsilon

        self.ledger.delete_unpaid(loan_id)
        if settles:
            loan.state = LoanState.PAID_OFF
        else:
            schedule = generate_schedule(
                new_balance.amount, loan.interest_rate, loan.installment_count - paid_count,
                loan.start_date, loan.due_day, first_number=paid_count + 1
            )
            self.ledger.materialize(loan_id, schedule, self.currency, now, recalculated=True)

        payment = ExtraPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            amount=amount,
            paid_date=now,
            memo=memo or "",
            applied_after_installment=paid_count,
            settled_loan=settles
        )
        self.ledger.add_extra_payment(payment)
        self._save_loan(loan, now)

        self._audit(AuditEventType.LOAN_EXTRA_PAYMENT_APPLIED, loan, {
            "extra_payment_id": payment.id,
            "amount": amount.amount,
            "previous_balance": balance.amount,
            "new_balance": new_balance.amount,
            "settled_loan": settles
        })
        log_action(logger, "info", "Extra payment applied", owner_id=owner_id, action="apply_extra_payment",
                   resource=loan.id, extra={'amount': str(amount.amount), 'settled_loan': settles})

        if settles:
            return OperationResult.ok(payment, "Loan paid off by extra payment")
        return OperationResult.ok(payment, f"Outstanding balance reduced to {new_balance.to_string()}")

    def _update_loan(
        self,
        attempt: _Attempt,
        loan_id: str,
        owner_id: str,
        title: Optional[str],
        description: Optional[str],
        icon: Optional[str],
        installment_amount: Optional[Amount]
    ) -> OperationResult:
        loan = self._load_loan(loan_id, owner_id)
        changes: Dict[str, Any] = {}

        if title is not None:
            title = title.strip()
            if not title:
                raise ValidationError("Title is required")
            if title != loan.title:
                if self.title_exists(owner_id, title, exclude_loan_id=loan.id):
                    raise ValidationError(f"A loan titled '{title}' already exists")
                changes['title'] = title
                loan.title = title
        if installment_amount is not None:
            installment = self._parse_amount(installment_amount, "Installment amount")
            changes['installment_amount'] = installment.amount
            loan.installment_amount = installment
        if description is not None:
            changes['description'] = description
            loan.description = description
        if icon is not None:
            changes['icon'] = icon
            loan.icon = icon

        if not changes:
            return OperationResult.ok(loan, "Nothing to update")

        self.category_registry.update_category(
            loan.category_id,
            title=changes.get('title'),
            icon=changes.get('icon'),
            estimated_amount=loan.installment_amount if 'installment_amount' in changes else None
        )
        self._save_loan(loan, self.clock.now())

        self._audit(AuditEventType.LOAN_UPDATED, loan, {"changes": changes})
        log_action(logger, "info", "Loan updated", owner_id=owner_id, action="update_loan",
                   resource=loan.id, extra={'fields': sorted(changes)})
        return OperationResult.ok(loan)

    def _delete_loan(self, attempt: _Attempt, loan_id: str, owner_id: str, delete_history: bool) -> OperationResult:
        loan = self._load_loan(loan_id, owner_id)

        if not delete_history:
            if loan.is_active:
                loan.state = LoanState.ARCHIVED
                self._save_loan(loan, self.clock.now())
            self._audit(AuditEventType.LOAN_ARCHIVED, loan, {"via_delete": True})
            log_action(logger, "info", "Loan archived on delete", owner_id=owner_id,
                       action="delete_loan", resource=loan.id)
            return OperationResult.ok(loan, "Loan archived; history kept")

        extra_payments = self.ledger.delete_all_extra_payments(loan_id)
        installments = self.ledger.delete_all(loan_id)
        stored = self.storage.load(self.loans_table, loan_id)
        if stored is None or stored.get('version', 1) != loan.version:
            raise ConcurrencyConflictError(f"Loan {loan_id} changed concurrently")
        self.storage.delete(self.loans_table, loan_id)
        attempt.defer(loan.category_id, self.recorder.delete_entries_for_category, owner_id, loan.category_id)
        attempt.defer(loan.category_id, self.category_registry.delete_category, loan.category_id)

        self._audit(AuditEventType.LOAN_DELETED, loan, {
            "category_id": loan.category_id,
            "extra_payments": extra_payments,
            "installments": installments
        })
        log_action(logger, "info", "Loan deleted with history", owner_id=owner_id, action="delete_loan",
                   resource=loan_id, extra={'installments': installments})
        return OperationResult.ok(None, "Loan and its history deleted")

    def _archive_loan(self, attempt: _Attempt, loan_id: str, owner_id: str) -> OperationResult:
        loan = self._load_loan(loan_id, owner_id)
        if not loan.is_active:
            raise StateConflictError("Only active loans can be archived")
        loan.state = LoanState.ARCHIVED
        self._save_loan(loan, self.clock.now())

        self._audit(AuditEventType.LOAN_ARCHIVED, loan, {"installments_paid": loan.installments_paid})
        log_action(logger, "info", "Loan archived", owner_id=owner_id, action="archive_loan", resource=loan.id)
        return OperationResult.ok(loan)

    def _reactivate_loan(self, attempt: _Attempt, loan_id: str, owner_id: str) -> OperationResult:
        loan = self._load_loan(loan_id, owner_id)
        if loan.is_active:
            raise StateConflictError("Loan is already active")
        if loan.state != LoanState.ARCHIVED:
            raise StateConflictError("A paid-off loan cannot be reactivated")
        if InstallmentLedger.next_unpaid(self.ledger.get_installments(loan_id)) is None:
            raise StateConflictError("Loan has no pending installments")
        loan.state = LoanState.ACTIVE
        self._save_loan(loan, self.clock.now())

        self._audit(AuditEventType.LOAN_REACTIVATED, loan, {"installments_paid": loan.installments_paid})
        log_action(logger, "info", "Loan reactivated", owner_id=owner_id, action="reactivate_loan", resource=loan.id)
        return OperationResult.ok(loan)

    # Helpers

    def _load_loan(self, loan_id: str, owner_id: str) -> Loan:
        loan = self.get_loan(loan_id, owner_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def _save_loan(self, loan: Loan, now: datetime) -> None:
        """Save a loan read earlier in this operation, bumping its version"""
        stored = self.storage.load(self.loans_table, loan.id)
        if stored is None:
            raise ConcurrencyConflictError(f"Loan {loan.id} was removed by another operation")
        if stored.get('version', 1) != loan.version:
            raise ConcurrencyConflictError(
                f"Loan {loan.id} changed concurrently (expected version {loan.version}, "
                f"found {stored.get('version', 1)})"
            )
        loan.version += 1
        loan.updated_at = now
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _record_entry(
        self,
        attempt: _Attempt,
        loan: Loan,
        kind: EntryKind,
        amount: Money,
        entry_date: date,
        memo: str
    ) -> str:
        entry_id = self.recorder.record_entry(
            owner_id=loan.owner_id,
            category_id=loan.category_id,
            kind=kind,
            amount=amount,
            entry_date=entry_date,
            memo=memo
        )
        attempt.entry_ids.append(entry_id)
        return entry_id

    def _audit(self, event_type: AuditEventType, loan: Loan, metadata: Dict[str, Any]) -> None:
        if self.audit_trail is None or not self.config.enable_audit_logging:
            return
        metadata = dict(metadata)
        metadata['title'] = loan.title
        metadata['state'] = loan.state
        metadata['installments_paid'] = loan.installments_paid
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata=metadata,
            owner_id=loan.owner_id
        )

    def _parse_decimal(self, value: Amount, field_name: str) -> Decimal:
        if isinstance(value, Money):
            value = value.amount
        try:
            number = to_decimal(value)
        except ValueError as e:
            raise ValidationError(f"{field_name} is not a valid number", cause=e)
        if not number.is_finite():
            raise ValidationError(f"{field_name} is not a valid number")
        return number

    def _parse_amount(self, value: Amount, field_name: str) -> Money:
        """Positive amount in the ledger currency"""
        if isinstance(value, Money) and value.currency != self.currency:
            raise ValidationError(f"{field_name} must be in {self.currency.code}")
        amount = Money(self._parse_decimal(value, field_name), self.currency)
        if not amount.is_positive():
            raise ValidationError(f"{field_name} must be greater than zero")
        return amount

    @staticmethod
    def _parse_date(value: Union[date, str]) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(value)
        except (TypeError, ValueError) as e:
            raise ValidationError("Start date must be an ISO date", cause=e)

    def _sum(self, amounts) -> Money:
        total = Money.zero(self.currency)
        for amount in amounts:
            total = total + amount
        return total

    def _sum_installments(self, owner_id: str, predicate: Callable[[Installment], bool]) -> Money:
        amounts = []
        for loan in self.list_active_loans(owner_id):
            amounts.extend(i.total_amount for i in self.ledger.get_installments(loan.id) if predicate(i))
        return self._sum(amounts)

    def _sum_extra_payments(self, owner_id: str) -> Money:
        amounts = []
        for loan in self.list_active_loans(owner_id):
            amounts.extend(p.amount for p in self.ledger.get_extra_payments(loan.id))
        return self._sum(amounts)

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        """Convert loan to dictionary"""
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'owner_id': loan.owner_id,
            'title': loan.title,
            'description': loan.description,
            'icon': loan.icon,
            'currency': loan.principal_amount.currency.code,
            'principal_amount': str(loan.principal_amount.amount),
            'installment_amount': str(loan.installment_amount.amount),
            'installment_count': loan.installment_count,
            'due_day': loan.due_day,
            'start_date': loan.start_date.isoformat(),
            'interest_rate': str(loan.interest_rate),
            'rate_is_estimated': loan.rate_is_estimated,
            'installments_paid': loan.installments_paid,
            'state': loan.state.value,
            'category_id': loan.category_id,
            'create_reminder': loan.create_reminder,
            'version': loan.version
        }

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            title=data['title'],
            description=data.get('description'),
            icon=data.get('icon', ""),
            principal_amount=Money(Decimal(data['principal_amount']), currency),
            installment_amount=Money(Decimal(data['installment_amount']), currency),
            installment_count=data['installment_count'],
            due_day=data['due_day'],
            start_date=date.fromisoformat(data['start_date']),
            interest_rate=Decimal(data['interest_rate']),
            rate_is_estimated=data.get('rate_is_estimated', False),
            installments_paid=data.get('installments_paid', 0),
            state=LoanState(data['state']),
            category_id=data['category_id'],
            create_reminder=data.get('create_reminder', False),
            version=data.get('version', 1)
        )
