"""
Ledger posting and balance endpoints
"""

from fastapi import APIRouter, Depends, Response, status

from .auth import LedgerSystem, get_ledger_system, get_current_user
from .schemas import PostTransactionRequest, TransferRequest
from ..accounts import LedgerAccount, OwnerType
from ..currency import to_major_units
from ..errors import AccountNotFound, TransactionNotFound


router = APIRouter()


def _visible_to(system: LedgerSystem, user_id: str, account: LedgerAccount) -> bool:
    if account.owner_type == OwnerType.CUSTOMER:
        return account.owner_reference.split(":", 1)[0] == user_id
    if account.owner_type == OwnerType.LOAN:
        loan = system.loan_manager.get_loan(int(account.owner_reference))
        return loan is not None and loan.owner_id == user_id
    return False


def _require_writable(system: LedgerSystem, user_id: str, account_ids) -> None:
    # Callers may only move money between their own customer accounts
    for account_id in account_ids:
        account = system.registry.get_account(account_id)
        if (account is None or account.owner_type != OwnerType.CUSTOMER
                or account.owner_reference.split(":", 1)[0] != user_id):
            raise AccountNotFound("Account not found or access denied")


@router.post("/postings", status_code=status.HTTP_201_CREATED)
async def post_transaction(
    request: PostTransactionRequest,
    response: Response,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a balanced transaction"""
    _require_writable(system, user_id, {line.account_id for line in request.lines})
    result = system.ledger.post_balanced_transaction(
        initiator=user_id,
        idempotency_key=request.idempotency_key,
        lines=[line.model_dump() for line in request.lines],
        metadata=request.metadata
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return result.to_dict()


@router.post("/transfers", status_code=status.HTTP_201_CREATED)
async def transfer(
    request: TransferRequest,
    response: Response,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Move money between two accounts of the same currency"""
    _require_writable(system, user_id, (request.from_account_id, request.to_account_id))
    result = system.ledger.transfer_internal(
        initiator=user_id,
        idempotency_key=request.idempotency_key,
        from_account_id=request.from_account_id,
        to_account_id=request.to_account_id,
        amount_cents=request.amount_cents,
        metadata=request.metadata
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return result.to_dict()


@router.get("/accounts/{account_id}/balance")
async def get_account_balance(
    account_id: int,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Derived balance of a ledger account"""
    account = system.registry.get_account(account_id)
    if account is None or not _visible_to(system, user_id, account):
        raise AccountNotFound("Account not found or access denied")

    balance = system.ledger.calculate_account_balance(account_id)
    return {
        "account_id": account.id,
        "code": account.code.value,
        "currency": account.currency,
        "balance_cents": balance,
        "balance": str(to_major_units(balance, account.currency))
    }


@router.get("/transactions/{txn_id}")
async def get_transaction(
    txn_id: int,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Transaction header and its entries"""
    transaction = system.ledger.get_transaction(txn_id)
    if transaction is None or transaction.customer_id != user_id:
        raise TransactionNotFound("Transaction not found or access denied")

    return {
        "txn_id": transaction.id,
        "idempotency_key": transaction.idempotency_key,
        "posted_at": transaction.posted_at.isoformat(),
        "currency": transaction.currency,
        "totals": transaction.totals.to_dict(),
        "metadata": transaction.metadata,
        "entries": [
            {
                "line_number": entry.line_number,
                "account_id": entry.account_id,
                "amount_cents": entry.amount_cents,
                "direction": entry.direction.value
            }
            for entry in system.ledger.get_entries_for_transaction(txn_id)
        ]
    }
