"""
Pydantic schemas for API requests
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, StrictInt


# Ledger schemas
class PostingLineModel(BaseModel):
    account_id: StrictInt
    amount_cents: StrictInt = Field(..., description="Positive amount in minor units")
    direction: str = Field(..., description="DEBIT or CREDIT")


class PostTransactionRequest(BaseModel):
    idempotency_key: str
    lines: List[PostingLineModel]
    metadata: Optional[Dict[str, Any]] = None


class TransferRequest(BaseModel):
    idempotency_key: str
    from_account_id: StrictInt
    to_account_id: StrictInt
    amount_cents: StrictInt
    metadata: Optional[Dict[str, Any]] = None


# Product schemas
class CreateDepositAccountRequest(BaseModel):
    currency: str = Field("USD", description="ISO 4217 currency code")


class CreateLineOfCreditRequest(BaseModel):
    credit_limit_cents: StrictInt
    currency: str = Field("USD", description="ISO 4217 currency code")


class CreateTermLoanRequest(BaseModel):
    loc_account_number: str
    loan_type: str = Field("TERM", description="Only TERM is supported")
    principal_amount_cents: StrictInt
    monthly_interest_rate_bps: StrictInt
    tenure_months: StrictInt
    deposit_account_id: StrictInt
    idempotency_key: str


class RepaymentRequest(BaseModel):
    deposit_account_id: StrictInt
    amount_cents: StrictInt
    idempotency_key: str
