"""
Ledger Error Taxonomy

Every failure the engine surfaces is a typed LedgerError carrying a
machine-readable code, a human message, optional details and the HTTP status
the API layer maps it to.

    LedgerError
    +-- ValidationError (400)
    |   +-- InvalidRequest
    |   +-- InvalidAmount
    |   +-- InvalidMetadata
    |   +-- InvalidQuery
    +-- ConsistencyError (400)
    |   +-- UnbalancedTransaction
    |   +-- CurrencyMismatch
    |   +-- CreditLimitExceeded
    +-- AuthenticationRequired (401)
    +-- NotFoundError (404)
    |   +-- AccountNotFound
    |   +-- ProductNotFound
    |   +-- TransactionNotFound
    +-- StorageError
    |   +-- StorageFailure (503, transient)
    |   +-- DuplicateRecordError (409, internal)
    |   +-- AccountNumberExhausted (500)
    +-- LoanTimeout (scheduler only)
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""
    
    code: str = "LEDGER_ERROR"
    http_status: int = 500
    
    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
    
    def to_dict(self) -> Dict[str, Any]:
        """Error body returned to API callers"""
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(LedgerError):
    """Bad input shape; rejected before any storage interaction"""
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidRequest(ValidationError):
    code = "INVALID_REQUEST"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidMetadata(ValidationError):
    code = "INVALID_METADATA"


class InvalidQuery(ValidationError):
    code = "INVALID_QUERY"


class ConsistencyError(LedgerError):
    """Request is well formed but contradicts ledger state or rules"""
    code = "CONSISTENCY_ERROR"
    http_status = 400


class UnbalancedTransaction(ConsistencyError):
    code = "UNBALANCED_TRANSACTION"
    
    def __init__(self, debits: int, credits: int):
        super().__init__(
            "Transaction is not balanced",
            f"Debits ({debits}) must equal credits ({credits})"
        )
        self.debits = debits
        self.credits = credits


class CurrencyMismatch(ConsistencyError):
    code = "CURRENCY_MISMATCH"


class CreditLimitExceeded(ConsistencyError):
    code = "CREDIT_LIMIT_EXCEEDED"
    
    def __init__(self, requested_cents: int, available_cents: int):
        super().__init__(
            f"Principal amount ({requested_cents} cents) exceeds available credit "
            f"({available_cents} cents)"
        )
        self.requested_cents = requested_cents
        self.available_cents = available_cents


class AuthenticationRequired(LedgerError):
    """No verified caller identity on the request"""
    code = "AUTHENTICATION_REQUIRED"
    http_status = 401


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    http_status = 404


class AccountNotFound(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"


class ProductNotFound(NotFoundError):
    code = "PRODUCT_NOT_FOUND"


class TransactionNotFound(NotFoundError):
    code = "TRANSACTION_NOT_FOUND"


class StorageError(LedgerError):
    code = "STORAGE_ERROR"
    http_status = 500


class StorageFailure(StorageError):
    """Transient backend failure; safe to retry with the same idempotency key"""
    code = "STORAGE_FAILURE"
    http_status = 503


class DuplicateRecordError(StorageError):
    """A unique-keyed insert hit an existing key"""
    code = "DUPLICATE_RECORD"
    http_status = 409
    
    def __init__(self, table: str, record_id: str):
        super().__init__(f"Record {record_id} already exists in {table}")
        self.table = table
        self.record_id = record_id


class AccountNumberExhausted(StorageError):
    code = "ACCOUNT_NUMBER_EXHAUSTED"


class LoanTimeout(LedgerError):
    """A scheduler unit of work overran its deadline and was rolled back"""
    code = "LOAN_TIMEOUT"
