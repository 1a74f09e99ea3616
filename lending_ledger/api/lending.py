"""
Line of credit and term loan endpoints
"""

from fastapi import APIRouter, Depends, Response, status

from .auth import LedgerSystem, get_ledger_system, get_current_user
from .schemas import CreateLineOfCreditRequest, CreateTermLoanRequest, RepaymentRequest


router = APIRouter()


@router.post("/locs", status_code=status.HTTP_201_CREATED)
async def create_line_of_credit(
    request: CreateLineOfCreditRequest,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open a line of credit"""
    line = system.credit_manager.create_line_of_credit(
        owner_id=user_id,
        credit_limit_cents=request.credit_limit_cents,
        currency=request.currency
    )
    return {
        "loc_account_id": line.id,
        "account_number": line.account_number,
        "credit_limit_cents": line.credit_limit_cents,
        "currency": line.currency
    }


def _line_view(system: LedgerSystem, line) -> dict:
    exposure = system.loan_manager.get_exposure(line.id)
    return {
        "loc_account_id": line.id,
        "account_number": line.account_number,
        "currency": line.currency,
        "credit_limit_cents": line.credit_limit_cents,
        "exposure_cents": exposure,
        "available_credit_cents": max(line.credit_limit_cents - exposure, 0),
        "created_at": line.created_at.isoformat()
    }


@router.get("/locs")
async def list_lines_of_credit(
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """The caller's lines of credit, oldest first"""
    return {
        "lines_of_credit": [
            _line_view(system, line) for line in system.credit_manager.get_lines_for_owner(user_id)
        ]
    }


@router.get("/locs/{account_number}")
async def get_line_of_credit(
    account_number: str,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Line of credit with its derived exposure"""
    return _line_view(system, system.credit_manager.get_owned_line(user_id, account_number))


@router.post("/loans", status_code=status.HTTP_201_CREATED)
async def create_term_loan(
    request: CreateTermLoanRequest,
    response: Response,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Originate and disburse a term loan"""
    result = system.loan_manager.create_term_loan(
        owner_id=user_id,
        loc_account_number=request.loc_account_number,
        principal_amount_cents=request.principal_amount_cents,
        monthly_interest_rate_bps=request.monthly_interest_rate_bps,
        tenure_months=request.tenure_months,
        deposit_account_id=request.deposit_account_id,
        idempotency_key=request.idempotency_key,
        loan_type=request.loan_type
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return result.to_dict()


@router.get("/loans/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: int,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Repayment schedule of a loan"""
    loan = system.loan_manager.get_owned_loan(user_id, loan_id)
    rows = system.loan_manager.get_schedule(loan.id)
    return {
        "loan_id": loan.id,
        "loan_account_number": loan.loan_account_number,
        "status": loan.status.value,
        "outstanding_principal_cents": system.loan_manager.outstanding_principal(loan.id),
        "schedule": [
            {
                "installment_number": row.installment_number,
                "due_date": row.due_date.isoformat(),
                "principal_due_cents": row.principal_due_cents,
                "interest_due_cents": row.interest_due_cents,
                "total_due_cents": row.total_due_cents,
                "status": row.status.value,
                "paid_transaction_id": row.paid_transaction_id
            }
            for row in rows
        ]
    }


@router.post("/loans/{loan_id}/repayments", status_code=status.HTTP_201_CREATED)
async def make_repayment(
    loan_id: int,
    request: RepaymentRequest,
    response: Response,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Pay matured installments from a deposit account"""
    result = system.loan_manager.record_repayment(
        owner_id=user_id,
        loan_id=loan_id,
        deposit_account_id=request.deposit_account_id,
        amount_cents=request.amount_cents,
        idempotency_key=request.idempotency_key
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return result.to_dict()
