"""
Deposit account endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import LedgerSystem, get_ledger_system, get_current_user
from .schemas import CreateDepositAccountRequest
from ..deposits import DepositAccount


router = APIRouter()


def _deposit_view(system: LedgerSystem, deposit: DepositAccount) -> dict:
    return {
        "deposit_account_id": deposit.id,
        "ledger_account_id": deposit.ledger_account_id,
        "currency": deposit.currency,
        "status": deposit.status.value,
        "balance_cents": system.ledger.calculate_account_balance(deposit.ledger_account_id),
        "created_at": deposit.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_deposit_account(
    request: CreateDepositAccountRequest,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open a deposit account"""
    deposit = system.deposit_manager.create_deposit_account(user_id, request.currency)
    return {
        "deposit_account_id": deposit.id,
        "ledger_account_id": deposit.ledger_account_id,
        "currency": deposit.currency,
        "message": "Deposit account created successfully"
    }


@router.get("")
async def list_deposit_accounts(
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Deposit accounts of the caller"""
    return {
        "deposit_accounts": [
            _deposit_view(system, deposit)
            for deposit in system.deposit_manager.get_deposit_accounts_for_owner(user_id)
        ]
    }


@router.get("/{deposit_account_id}")
async def get_deposit_account(
    deposit_account_id: int,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    deposit = system.deposit_manager.get_owned_deposit_account(user_id, deposit_account_id)
    return _deposit_view(system, deposit)


@router.post("/{deposit_account_id}/close")
async def close_deposit_account(
    deposit_account_id: int,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Close a deposit account with a zero balance"""
    deposit = system.deposit_manager.close_deposit_account(user_id, deposit_account_id)
    return _deposit_view(system, deposit)
