"""
Deposit Account Module

Customer deposit accounts. Each one owns exactly one
CUSTOMER_DEPOSIT_ACCOUNT ledger account, provisioned in the same unit of
work, under owner reference "{user_id}:{deposit_account_id}".
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .accounts import AccountRegistry, AccountCode, OwnerType
from .audit import AuditTrail, AuditEventType
from .currency import normalize_currency
from .errors import InvalidRequest, ProductNotFound
from .ledger import GeneralLedger
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class DepositStatus(Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


@dataclass
class DepositAccount(StorageRecord):
    owner_id: str
    currency: str
    ledger_account_id: int
    status: DepositStatus = DepositStatus.ACTIVE
    closed_at: Optional[datetime] = None

    @property
    def owner_reference(self) -> str:
        return f"{self.owner_id}:{self.id}"

    @classmethod
    def from_dict(cls, data: Dict) -> 'DepositAccount':
        return cls(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            currency=data['currency'],
            ledger_account_id=data['ledger_account_id'],
            status=DepositStatus(data['status']),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None
        )


class DepositManager:
    """
    Opens, looks up and closes deposit accounts
    """

    def __init__(self, storage: StorageInterface, registry: AccountRegistry,
                 ledger: GeneralLedger, audit_trail: AuditTrail):
        self.storage = storage
        self.registry = registry
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.clock = audit_trail.clock
        self.deposits_table = "deposit_accounts"
        self.logger = get_logger("lending_ledger.deposits")

    def create_deposit_account(self, owner_id: str, currency: str = "USD") -> DepositAccount:
        """
        Open a deposit account and provision its ledger account

        Args:
            owner_id: Verified user id
            currency: ISO currency code

        Returns:
            The new DepositAccount (with ledger_account_id set)
        """
        if not owner_id:
            raise InvalidRequest("owner_id is required")
        currency = normalize_currency(currency)

        with self.storage.atomic():
            deposit_id = self.storage.next_sequence(self.deposits_table)
            provisioned = self.registry.provision_accounts(
                OwnerType.CUSTOMER, f"{owner_id}:{deposit_id}", currency,
                [AccountCode.CUSTOMER_DEPOSIT_ACCOUNT]
            )
            now = self.clock.now()
            deposit = DepositAccount(
                id=deposit_id,
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                currency=currency,
                ledger_account_id=provisioned[AccountCode.CUSTOMER_DEPOSIT_ACCOUNT]
            )
            self.storage.insert(self.deposits_table, str(deposit_id), deposit.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_ACCOUNT_OPENED,
                entity_type="deposit_account",
                entity_id=deposit_id,
                metadata={
                    "currency": currency,
                    "ledger_account_id": deposit.ledger_account_id
                },
                user_id=owner_id
            )

        log_action(
            self.logger, "info", f"Deposit account {deposit_id} opened",
            user_id=owner_id, action="create_deposit_account",
            resource=f"deposit_account:{deposit_id}"
        )
        return deposit

    def get_deposit_account(self, deposit_id: int) -> Optional[DepositAccount]:
        data = self.storage.load(self.deposits_table, str(deposit_id))
        if data:
            return DepositAccount.from_dict(data)
        return None

    def get_owned_deposit_account(self, owner_id: str, deposit_id: int) -> DepositAccount:
        """Deposit account belonging to owner_id; anything else is reported as not found"""
        deposit = self.get_deposit_account(deposit_id)
        if deposit is None or deposit.owner_id != owner_id:
            raise ProductNotFound("Deposit account not found or access denied")
        return deposit

    def get_deposit_accounts_for_owner(self, owner_id: str) -> List[DepositAccount]:
        deposits = [
            DepositAccount.from_dict(data)
            for data in self.storage.find(self.deposits_table, {'owner_id': owner_id})
        ]
        deposits.sort(key=lambda d: d.id)
        return deposits

    def get_balance(self, deposit_id: int) -> int:
        """Derived balance of the deposit's ledger account, in cents"""
        deposit = self.get_deposit_account(deposit_id)
        if deposit is None:
            raise ProductNotFound(f"Deposit account {deposit_id} not found")
        return self.ledger.calculate_account_balance(deposit.ledger_account_id)

    def close_deposit_account(self, owner_id: str, deposit_id: int) -> DepositAccount:
        """
        Close a deposit account; its derived balance must be zero.

        The balance check, the status change and deactivating the ledger
        account happen in one unit of work, so nothing can be posted to the
        account between the check and the close, nor after it.
        """
        with self.storage.atomic():
            deposit = self.get_owned_deposit_account(owner_id, deposit_id)
            if deposit.status == DepositStatus.CLOSED:
                return deposit

            balance = self.ledger.calculate_account_balance(deposit.ledger_account_id)
            if balance != 0:
                raise InvalidRequest(
                    "Deposit account must have a zero balance to be closed",
                    f"Current balance: {balance} cents"
                )

            now = self.clock.now()
            self.storage.update_where(
                self.deposits_table, str(deposit_id),
                {'status': DepositStatus.ACTIVE.value},
                {'status': DepositStatus.CLOSED.value, 'closed_at': now.isoformat(),
                 'updated_at': now.isoformat()}
            )
            self.registry.deactivate_account(deposit.ledger_account_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_ACCOUNT_CLOSED,
                entity_type="deposit_account",
                entity_id=deposit_id,
                user_id=owner_id
            )
            return self.get_deposit_account(deposit_id)
