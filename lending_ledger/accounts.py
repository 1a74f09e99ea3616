"""
Account Registry Module

Maps logical owners (customer products, loans, the bank) and account codes
to ledger account ids. Accounts are provisioned once per
(owner_type, owner_reference, code, currency) and never mutated.

Also generates the human-readable account numbers used for lines of credit
and loans.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from enum import Enum
import json

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import get_config
from .currency import normalize_currency
from .errors import (
    AccountNotFound, AccountNumberExhausted, DuplicateRecordError, InvalidRequest
)
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord


class OwnerType(Enum):
    """Who a ledger account belongs to"""
    CUSTOMER = "CUSTOMER"
    LOAN = "LOAN"
    BANK = "BANK"


class AccountCode(Enum):
    """Chart of accounts codes"""
    CUSTOMER_DEPOSIT_ACCOUNT = "CUSTOMER_DEPOSIT_ACCOUNT"
    CUSTOMER_PRINCIPAL_CHARGED = "CUSTOMER_PRINCIPAL_CHARGED"
    CUSTOMER_PRINCIPAL_DUE = "CUSTOMER_PRINCIPAL_DUE"
    CUSTOMER_PRINCIPAL_OVERDUE = "CUSTOMER_PRINCIPAL_OVERDUE"
    CUSTOMER_INTEREST_CHARGED = "CUSTOMER_INTEREST_CHARGED"
    CUSTOMER_INTEREST_DUE = "CUSTOMER_INTEREST_DUE"
    CUSTOMER_INTEREST_OVERDUE = "CUSTOMER_INTEREST_OVERDUE"
    BANK_INTEREST_EARNED = "BANK_INTEREST_EARNED"
    BANK_LOAN_COLLECTIONS = "BANK_LOAN_COLLECTIONS"


# Accounts provisioned under owner_type=LOAN for every term loan
LOAN_ACCOUNT_CODES = (
    AccountCode.CUSTOMER_PRINCIPAL_CHARGED,
    AccountCode.CUSTOMER_PRINCIPAL_DUE,
    AccountCode.CUSTOMER_PRINCIPAL_OVERDUE,
    AccountCode.CUSTOMER_INTEREST_CHARGED,
    AccountCode.CUSTOMER_INTEREST_DUE,
    AccountCode.CUSTOMER_INTEREST_OVERDUE,
)


@dataclass
class LedgerAccount(StorageRecord):
    """A ledger account; balances are always derived from entries"""
    owner_type: OwnerType
    owner_reference: str
    code: AccountCode
    currency: str
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerAccount':
        return cls(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_type=OwnerType(data['owner_type']),
            owner_reference=data['owner_reference'],
            code=AccountCode(data['code']),
            currency=data['currency'],
            active=data.get('active', True)
        )


def _luhn_check_digit(digits: str) -> int:
    total = 0
    for position, char in enumerate(reversed(digits)):
        value = int(char)
        if position % 2 == 0:
            value *= 2
            if value > 9:
                value -= 9
        total += value
    return (10 - total % 10) % 10


def is_valid_account_number(account_number: str) -> bool:
    """Check shape and check digit of a generated account number"""
    prefix, _, digits = account_number.partition("-")
    if not prefix or not digits.isdigit() or len(digits) < 9:
        return False
    return _luhn_check_digit(digits[:-1]) == int(digits[-1])


class AccountNumberGenerator:
    """
    Generates product account numbers of the form {PREFIX}-{year}{serial}{check}.

    The serial comes from a per-prefix, per-year storage sequence (at least four
    digits) so numbers never collide with each other. Each number is still
    claimed with a unique-keyed insert; the bounded retry only matters when
    numbers were loaded from another system.
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 max_attempts: Optional[int] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts or get_config().account_number_max_attempts
        self.numbers_table = "account_numbers"

    def generate(self, prefix: str, product_type: str, product_id: int) -> str:
        year = self.clock.today().year
        for _ in range(self.max_attempts):
            serial = self.storage.next_sequence(f"account_number:{prefix}:{year}")
            digits = f"{year}{serial:04d}"
            number = f"{prefix}-{digits}{_luhn_check_digit(digits)}"
            try:
                self.storage.insert(self.numbers_table, number, {
                    'account_number': number,
                    'product_type': product_type,
                    'product_id': product_id
                })
                return number
            except DuplicateRecordError:
                continue
        raise AccountNumberExhausted(
            f"Could not allocate a unique {prefix} account number after {self.max_attempts} attempts"
        )


class AccountRegistry:
    """
    Provisions and resolves ledger accounts
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = audit_trail.clock
        self.accounts_table = "ledger_accounts"
        self.keys_table = "ledger_account_keys"
        self.logger = get_logger("lending_ledger.accounts")

    @staticmethod
    def _natural_key(owner_type: OwnerType, owner_reference: str,
                     code: AccountCode, currency: str) -> str:
        return json.dumps([owner_type.value, owner_reference, code.value, currency])

    def provision_accounts(
        self,
        owner_type: OwnerType,
        owner_reference: str,
        currency: str,
        codes: Iterable[AccountCode]
    ) -> Dict[AccountCode, int]:
        """
        Create one ledger account per code, reusing any that already exist.

        Runs as one unit of work; when called inside a caller's atomic block it
        joins it, so the accounts commit or roll back with the product row.

        Returns:
            Mapping of code to ledger account id
        """
        if not owner_reference:
            raise InvalidRequest("owner_reference is required")
        currency = normalize_currency(currency)
        codes = list(dict.fromkeys(codes))
        if not codes:
            raise InvalidRequest("At least one account code is required")

        provisioned: Dict[AccountCode, int] = {}
        with self.storage.atomic():
            for code in codes:
                provisioned[code] = self._provision_one(owner_type, owner_reference, code, currency)
        return provisioned

    def _provision_one(self, owner_type: OwnerType, owner_reference: str,
                       code: AccountCode, currency: str) -> int:
        key = self._natural_key(owner_type, owner_reference, code, currency)
        existing = self.storage.load(self.keys_table, key)
        if existing:
            return existing['account_id']

        account_id = self.storage.next_sequence(self.accounts_table)
        try:
            self.storage.insert(self.keys_table, key, {'account_id': account_id})
        except DuplicateRecordError:
            # A concurrent provisioner won; reuse its account
            return self.storage.load(self.keys_table, key)['account_id']

        now = self.clock.now()
        account = LedgerAccount(
            id=account_id,
            created_at=now,
            updated_at=now,
            owner_type=owner_type,
            owner_reference=owner_reference,
            code=code,
            currency=currency
        )
        self.storage.insert(self.accounts_table, str(account_id), account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_PROVISIONED,
            entity_type="ledger_account",
            entity_id=account_id,
            metadata={
                "owner_type": owner_type.value,
                "owner_reference": owner_reference,
                "code": code.value,
                "currency": currency
            }
        )
        self.logger.debug(f"Provisioned {code.value} account {account_id} for {owner_type.value}:{owner_reference}")
        return account_id

    def resolve_account(self, owner_type: OwnerType, owner_reference: str,
                        code: AccountCode, currency: Optional[str] = None) -> int:
        """Find the account id for an owner and code, or raise AccountNotFound"""
        if currency:
            key = self._natural_key(owner_type, owner_reference, code, normalize_currency(currency))
            record = self.storage.load(self.keys_table, key)
            if record:
                return record['account_id']
        else:
            matches = self.storage.find(self.accounts_table, {
                'owner_type': owner_type.value,
                'owner_reference': owner_reference,
                'code': code.value
            })
            if matches:
                return min(int(m['id']) for m in matches)
        raise AccountNotFound(
            f"No {code.value} account for {owner_type.value} {owner_reference}"
        )

    def resolve_accounts(self, owner_type: OwnerType, owner_reference: str,
                         codes: Iterable[AccountCode],
                         currency: Optional[str] = None) -> Dict[AccountCode, int]:
        """Resolve several codes for one owner; any missing code raises AccountNotFound"""
        return {
            code: self.resolve_account(owner_type, owner_reference, code, currency)
            for code in codes
        }

    def get_account(self, account_id: int) -> Optional[LedgerAccount]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, str(account_id))
        if data:
            return LedgerAccount.from_dict(data)
        return None

    def require_account(self, account_id: int) -> LedgerAccount:
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def deactivate_account(self, account_id: int) -> bool:
        """Stop an account from taking new postings; False if it was already inactive"""
        self.require_account(account_id)
        return self.storage.update_where(
            self.accounts_table, str(account_id),
            {'active': True},
            {'active': False, 'updated_at': self.clock.now().isoformat()}
        )

    def list_owner_accounts(
self, owner_type: OwnerType, owner_reference: str) -> List[LedgerAccount]:
        accounts = [
            LedgerAccount.from_dict(data)
            for data in self.storage.find(self.accounts_table, {
                'owner_type': owner_type.value,
                'owner_reference': owner_reference
            })
        ]
        accounts.sort(key=lambda a: a.id)
        return accounts

    def ensure_bank_accounts(self, currency: str) -> Dict[AccountCode, int]:
        """Provision the bank-side income and collections accounts for a currency"""
        config = get_config()
        result = {}
        result.update(self.provision_accounts(
            OwnerType.BANK, config.bank_interest_owner_reference, currency,
            [AccountCode.BANK_INTEREST_EARNED]
        ))
        result.update(self.provision_accounts(
            OwnerType.BANK, config.bank_collections_owner_reference, currency,
            [AccountCode.BANK_LOAN_COLLECTIONS]
        ))
        return result
