"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import LoanLedgerSystem, get_system, get_owner_id
from .schemas import (
    CreateLoanRequest, UpdateLoanRequest, ExtraPaymentRequest,
    loan_to_response, installment_to_response, extra_payment_to_response,
    totals_to_response, upcoming_to_response
)
from ..errors import OperationResult


router = APIRouter()

ERROR_STATUS = {
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "state_conflict": status.HTTP_409_CONFLICT,
    "concurrency_conflict": status.HTTP_409_CONFLICT,
    "collaborator_failure": status.HTTP_502_BAD_GATEWAY,
}


def _raise_for_failure(result: OperationResult) -> None:
    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail={"code": result.error_code, "message": result.reason}
        )


def _loan_result(result: OperationResult) -> dict:
    _raise_for_failure(result)
    return {"loan": loan_to_response(result.value), "message": result.reason}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Create a loan with its schedule"""
    result = system.loan_manager.create_loan(
        owner_id=owner_id,
        title=request.title,
        principal_amount=request.principal_amount,
        installment_amount=request.installment_amount,
        installment_count=request.installment_count,
        due_day=request.due_day,
        start_date=request.start_date,
        interest_rate=request.interest_rate,
        create_reminder=request.create_reminder,
        description=request.description,
        icon=request.icon
    )
    return _loan_result(result)


@router.get("")
async def list_loans(
    active_only: bool = False,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """List the owner's loans, newest first"""
    manager = system.loan_manager
    loans = manager.list_active_loans(owner_id) if active_only else manager.list_loans(owner_id)
    return {"loans": [loan_to_response(loan) for loan in loans]}


@router.get("/totals")
async def get_totals(
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Portfolio totals over active loans"""
    return totals_to_response(system.loan_manager.get_totals(owner_id))


@router.get("/upcoming")
async def list_upcoming_payments(
    days: Optional[int] = Query(None, ge=0),
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Next installments due within the window"""
    upcoming = system.loan_manager.list_upcoming_payments(owner_id, days)
    return {"upcoming": [upcoming_to_response(u) for u in upcoming]}


@router.get("/title-exists")
async def title_exists(
    title: str,
    exclude_loan_id: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    return {"exists": system.loan_manager.title_exists(owner_id, title, exclude_loan_id)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Get loan details with its outstanding balance"""
    loan = system.loan_manager.get_loan(loan_id, owner_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    response = loan_to_response(loan)
    balance = system.loan_manager.get_outstanding_balance(loan_id, owner_id)
    response["outstanding_balance"] = {"amount": str(balance.amount), "currency": balance.currency.code}
    return response


@router.patch("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    result = system.loan_manager.update_loan(
        loan_id, owner_id,
        title=request.title,
        description=request.description,
        icon=request.icon,
        installment_amount=request.installment_amount
    )
    return _loan_result(result)


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    delete_history: bool = False,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Archive a loan, or delete it with its history"""
    result = system.loan_manager.delete_loan(loan_id, owner_id, delete_history=delete_history)
    _raise_for_failure(result)
    return {"deleted": delete_history, "message": result.reason}


@router.post("/{loan_id}/payments")
async def register_payment(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Pay the next installment"""
    return _loan_result(system.loan_manager.register_payment(loan_id, owner_id))


@router.post("/{loan_id}/payments/undo")
async def undo_last_payment(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Reverse the most recent installment payment"""
    return _loan_result(system.loan_manager.undo_last_payment(loan_id, owner_id))


@router.post("/{loan_id}/extra-payments", status_code=status.HTTP_201_CREATED)
async def apply_extra_payment(
    loan_id: str,
    request: ExtraPaymentRequest,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Pay principal down outside the schedule"""
    result = system.loan_manager.apply_extra_payment(loan_id, owner_id, request.amount, request.memo)
    _raise_for_failure(result)
    return {"extra_payment": extra_payment_to_response(result.value), "message": result.reason}


@router.get("/{loan_id}/extra-payments")
async def get_extra_payments(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    if not system.loan_manager.get_loan(loan_id, owner_id):
        raise HTTPException(status_code=404, detail="Loan not found")
    payments = system.loan_manager.get_extra_payments(loan_id, owner_id)
    return {"extra_payments": [extra_payment_to_response(p) for p in payments]}


@router.get("/{loan_id}/installments")
async def get_installments(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    """Installment table ordered by number"""
    if not system.loan_manager.get_loan(loan_id, owner_id):
        raise HTTPException(status_code=404, detail="Loan not found")
    installments = system.loan_manager.get_installments(loan_id, owner_id)
    return {"installments": [installment_to_response(i) for i in installments]}


@router.post("/{loan_id}/archive")
async def archive_loan(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    return _loan_result(system.loan_manager.archive_loan(loan_id, owner_id))


@router.post("/{loan_id}/reactivate")
async def reactivate_loan(
    loan_id: str,
    owner_id: str = Depends(get_owner_id),
    system: LoanLedgerSystem = Depends(get_system)
):
    return _loan_result(system.loan_manager.reactivate_loan(loan_id, owner_id))
