"""
Double-Entry Ledger Engine

Core posting engine: every transaction is a set of signed entries in integer
cents that must sum to zero (DEBIT = +amount, CREDIT = -amount). Transactions
are append-only, idempotent per (initiator, idempotency key), and balances are
always derived by summing entries.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum
import hashlib
import json

from .accounts import AccountRegistry
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .errors import (
    AccountNotFound, CurrencyMismatch, DuplicateRecordError, InvalidAmount,
    InvalidMetadata, InvalidRequest, StorageFailure, UnbalancedTransaction
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class Direction(Enum):
    """Side of a posting line"""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


# Initiators under this prefix belong to internal loan lifecycle postings
SYSTEM_INITIATOR_PREFIX = "system:"


def is_system_initiator(initiator: str) -> bool:
    return initiator.startswith(SYSTEM_INITIATOR_PREFIX)


@dataclass
class PostingLine:
    """
    One requested line of a posting.
    Amounts are always positive; the direction gives the sign.
    """
    account_id: int
    amount_cents: int
    direction: Direction

    def __post_init__(self):
        if isinstance(self.account_id, bool) or not isinstance(self.account_id, int):
            raise InvalidRequest(f"account_id must be an integer, got {self.account_id!r}")
        if isinstance(self.amount_cents, bool) or not isinstance(self.amount_cents, int):
            raise InvalidAmount(f"amount_cents must be an integer, got {self.amount_cents!r}")
        if self.amount_cents <= 0:
            raise InvalidAmount(f"amount_cents must be positive, got {self.amount_cents}")
        if not isinstance(self.direction, Direction):
            try:
                self.direction = Direction(str(self.direction).upper())
            except ValueError:
                raise InvalidRequest(f"direction must be DEBIT or CREDIT, got {self.direction!r}")

    @property
    def signed_amount(self) -> int:
        return self.amount_cents if self.direction == Direction.DEBIT else -self.amount_cents

    @classmethod
    def debit(cls, account_id: int, amount_cents: int) -> 'PostingLine':
        return cls(account_id, amount_cents, Direction.DEBIT)

    @classmethod
    def credit(cls, account_id: int, amount_cents: int) -> 'PostingLine':
        return cls(account_id, amount_cents, Direction.CREDIT)


@dataclass
class LedgerEntry(StorageRecord):
    """Immutable signed entry belonging to one transaction"""
    transaction_id: int
    line_number: int
    account_id: int
    amount_cents: int
    posted_at: datetime

    @property
    def direction(self) -> Direction:
        return Direction.DEBIT if self.amount_cents > 0 else Direction.CREDIT

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            line_number=data['line_number'],
            account_id=data['account_id'],
            amount_cents=data['amount_cents'],
            posted_at=datetime.fromisoformat(data['posted_at'])
        )


@dataclass
class PostingTotals:
    debits: int
    credits: int

    @property
    def net(self) -> int:
        return self.debits - self.credits

    def to_dict(self) -> Dict[str, int]:
        return {"debits": self.debits, "credits": self.credits, "net": self.net}


@dataclass
class LedgerTransaction(StorageRecord):
    """Append-only transaction header"""
    initiator: str
    idempotency_key: str
    posted_at: datetime
    currency: str
    debits_cents: int
    credits_cents: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    customer_id: Optional[str] = None  # Customer the posting is for; the initiator unless posted by the system

    @property
    def totals(self) -> PostingTotals:
        return PostingTotals(self.debits_cents, self.credits_cents)

    @property
    def kind(self) -> str:
        return self.metadata.get("kind", "posting")

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerTransaction':
        return cls(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            initiator=data['initiator'],
            idempotency_key=data['idempotency_key'],
            posted_at=datetime.fromisoformat(data['posted_at']),
            currency=data['currency'],
            debits_cents=data['debits_cents'],
            credits_cents=data['credits_cents'],
            metadata=data.get('metadata') or {},
            customer_id=data.get('customer_id') or data['initiator']
        )


@dataclass
class PostingResult:
    """What a caller gets back for a posting, first time or on replay"""
    txn_id: int
    posted_at: datetime
    totals: PostingTotals
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txn_id": self.txn_id,
            "posted_at": self.posted_at.isoformat(),
            "totals": self.totals.to_dict()
        }


LineInput = Union[PostingLine, Dict[str, Any]]


def validate_metadata(metadata: Optional[Dict[str, Any]], max_bytes: Optional[int] = None) -> Dict[str, Any]:
    """
    Check that transaction metadata is a JSON-serializable object within the size bound.

    Returns:
        The metadata as a plain JSON round-tripped dict
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise InvalidMetadata("Metadata must be a JSON object")
    try:
        encoded = json.dumps(metadata, allow_nan=False, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise InvalidMetadata("Metadata must be JSON-serializable", str(e))
    limit = max_bytes if max_bytes is not None else get_config().max_metadata_bytes
    size = len(encoded.encode("utf-8"))
    if size > limit:
        raise InvalidMetadata(f"Metadata is {size} bytes; the limit is {limit} bytes")
    return json.loads(encoded)


def _coerce_line(line: LineInput) -> PostingLine:
    if isinstance(line, PostingLine):
        return line
    if not isinstance(line, dict):
        raise InvalidRequest("Each line must be an object with account_id, amount_cents and direction")
    missing = [k for k in ("account_id", "amount_cents", "direction") if k not in line]
    if missing:
        raise InvalidRequest(f"Line is missing fields: {', '.join(missing)}")
    return PostingLine(line["account_id"], line["amount_cents"], line["direction"])


class GeneralLedger:
    """
    Posts balanced transactions and derives balances
    """

    def __init__(self, storage: StorageInterface, registry: AccountRegistry, audit_trail: AuditTrail):
        self.storage = storage
        self.registry = registry
        self.audit_trail = audit_trail
        self.clock = audit_trail.clock
        self.transactions_table = "ledger_transactions"
        self.entries_table = "ledger_entries"
        self.idempotency_table = "ledger_idempotency_keys"
        self.logger = get_logger("lending_ledger.ledger")

    @staticmethod
    def _idempotency_id(initiator: str, idempotency_key: str) -> str:
        raw = json.dumps([initiator, idempotency_key])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def post_balanced_transaction(
        self,
        initiator: str,
        idempotency_key: str,
        lines: Iterable[LineInput],
        metadata: Optional[Dict[str, Any]] = None,
        customer_id: Optional[str] = None
    ) -> PostingResult:
        """
        Post a balanced set of lines as one transaction.

        Input is fully validated before storage is touched. The idempotency key
        is claimed with a unique insert as the first write of the unit of work;
        if it is already taken the original transaction is returned and nothing
        new is written.

        Args:
            initiator: Verified identity of the caller (user id or job name)
            idempotency_key: Non-empty key, unique per initiator
            lines: PostingLine objects or dicts with account_id, amount_cents, direction
            metadata: Optional JSON object stored on the transaction
            customer_id: Customer the posting belongs to, when the initiator is a
                system namespace (defaults to the initiator)

        Returns:
            PostingResult with txn_id, posted_at and totals

        Raises:
            InvalidRequest, InvalidAmount, InvalidMetadata: malformed input
            UnbalancedTransaction: debits and credits differ
            AccountNotFound: a referenced account does not exist
            CurrencyMismatch: lines reference accounts in different currencies
            StorageFailure: transient backend failure, safe to retry
        """
        if not initiator or not isinstance(initiator, str):
            raise InvalidRequest("initiator is required")
        if not idempotency_key or not isinstance(idempotency_key, str):
            raise InvalidRequest("idempotency_key must be a non-empty string")

        posting_lines = [_coerce_line(line) for line in (lines or [])]
        if not posting_lines:
            raise InvalidRequest("At least one posting line is required")

        debits = sum(l.amount_cents for l in posting_lines if l.direction == Direction.DEBIT)
        credits = sum(l.amount_cents for l in posting_lines if l.direction == Direction.CREDIT)
        if debits != credits:
            raise UnbalancedTransaction(debits, credits)

        metadata = validate_metadata(metadata)
        idem_id = self._idempotency_id(initiator, idempotency_key)

        with self.storage.atomic():
            try:
                self.storage.insert(self.idempotency_table, idem_id, {
                    'initiator': initiator,
                    'idempotency_key': idempotency_key,
                    'transaction_id': None
                })
            except DuplicateRecordError:
                result = self._replay(idem_id)
                self.logger.debug(f"Idempotent replay of {idempotency_key} for {initiator} -> {result.txn_id}")
                return result

            currency = self._check_accounts(posting_lines)

            txn_id = self.storage.next_sequence(self.transactions_table)
            now = self.clock.now()
            transaction = LedgerTransaction(
                id=txn_id,
                created_at=now,
                updated_at=now,
                initiator=initiator,
                idempotency_key=idempotency_key,
                posted_at=now,
                currency=currency,
                debits_cents=debits,
                credits_cents=credits,
                metadata=metadata,
                customer_id=customer_id or initiator
            )
            self.storage.insert(self.transactions_table, str(txn_id), transaction.to_dict())

            for line_number, line in enumerate(posting_lines, start=1):
                entry = LedgerEntry(
                    id=f"{txn_id}:{line_number}",
                    created_at=now,
                    updated_at=now,
                    transaction_id=txn_id,
                    line_number=line_number,
                    account_id=line.account_id,
                    amount_cents=line.signed_amount,
                    posted_at=now
                )
                self.storage.insert(self.entries_table, entry.id, entry.to_dict())

            self.storage.save(self.idempotency_table, idem_id, {
                'initiator': initiator,
                'idempotency_key': idempotency_key,
                'transaction_id': txn_id
            })

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="ledger_transaction",
                entity_id=txn_id,
                metadata={
                    "idempotency_key": idempotency_key,
                    "kind": transaction.kind,
                    "line_count": len(posting_lines),
                    "amount_cents": debits,
                    "currency": currency
                },
                user_id=initiator
            )

        log_action(
            self.logger, "info", f"Transaction {txn_id} posted",
            user_id=initiator, action="post_transaction",
            resource=f"ledger_transaction:{txn_id}",
            extra={"lines": len(posting_lines), "amount_cents": debits, "currency": currency}
        )
        return PostingResult(txn_id=txn_id, posted_at=now, totals=transaction.totals)

    def _replay(self, idem_id: str) -> PostingResult:
        record = self.storage.load(self.idempotency_table, idem_id)
        txn_id = record.get('transaction_id') if record else None
        if txn_id is None:
            raise StorageFailure("A transaction with this idempotency key is still being posted")
        transaction = self.get_transaction(txn_id)
        return PostingResult(
            txn_id=transaction.id,
            posted_at=transaction.posted_at,
            totals=transaction.totals,
            replayed=True
        )

    def _check_accounts(self, lines: List[PostingLine]) -> str:
        """Every account must exist and all must share one currency; returns it"""
        currencies = set()
        for account_id in sorted({line.account_id for line in lines}):
            account = self.registry.get_account(account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")
            if not account.active:
                raise InvalidRequest(f"Account {account_id} is inactive")
            currencies.add(account.currency)
        if len(currencies) > 1:
            raise CurrencyMismatch(
                "All posting lines must reference accounts in the same currency",
                ", ".join(sorted(currencies))
            )
        return currencies.pop()

    def transfer_internal(
        self,
        initiator: str,
        idempotency_key: str,
        from_account_id: int,
        to_account_id: int,
        amount_cents: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PostingResult:
        """
        Move money between two accounts of the same currency:
        CREDIT the source, DEBIT the destination.
        """
        lines = [
            PostingLine.credit(from_account_id, amount_cents),
            PostingLine.debit(to_account_id, amount_cents),
        ]
        if from_account_id == to_account_id:
            raise InvalidRequest("Source and destination accounts must differ")

        source = self.registry.get_account(from_account_id)
        if source is None:
            raise AccountNotFound(f"Source account {from_account_id} not found")
        destination = self.registry.get_account(to_account_id)
        if destination is None:
            raise AccountNotFound(f"Destination account {to_account_id} not found")
        if source.currency != destination.currency:
            raise CurrencyMismatch("Both accounts must have the same currency")

        transfer_metadata = validate_metadata(metadata)
        transfer_metadata.update({
            "kind": "transfer",
            "transfer_type": "internal",
            "from_account_id": from_account_id,
            "to_account_id": to_account_id
        })
        return self.post_balanced_transaction(initiator, idempotency_key, lines, transfer_metadata)

    def get_transaction(self, txn_id: int) -> Optional[LedgerTransaction]:
        data = self.storage.load(self.transactions_table, str(txn_id))
        if data:
            return LedgerTransaction.from_dict(data)
        return None

    def get_entries_for_transaction(self, txn_id: int) -> List[LedgerEntry]:
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.entries_table, {'transaction_id': txn_id})
        ]
        entries.sort(key=lambda e: e.line_number)
        return entries

    def get_transactions_for_initiator(self, initiator: str) -> List[LedgerTransaction]:
        transactions = [
            LedgerTransaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'initiator': initiator})
        ]
        transactions.sort(key=lambda t: t.id)
        return transactions

    def get_transactions_for_customer(self, customer_id: str) -> List[LedgerTransaction]:
        """Transactions posted for a customer, including loan lifecycle postings"""
        transactions = [
            LedgerTransaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'customer_id': customer_id})
        ]
        transactions.sort(key=lambda t: t.id)
        return transactions

    def get_entries_for_account(
        self,
        account_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[LedgerEntry]:
        """
        Get entries affecting an account, oldest first

        Args:
            account_id: Ledger account id
            start_date: Only entries posted at or after this time
            end_date: Only entries posted at or before this time
        """
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.entries_table, {'account_id': account_id})
        ]
        if start_date:
            entries = [e for e in entries if e.posted_at >= start_date]
        if end_date:
            entries = [e for e in entries if e.posted_at <= end_date]
        entries.sort(key=lambda e: (e.transaction_id, e.line_number))
        return entries

    def calculate_account_balance(self, account_id: int, as_of: Optional[datetime] = None) -> int:
        """
        Signed balance in cents (debits positive), summed from entries.
        Never cached.
        """
        self.registry.require_account(account_id)
        return sum(e.amount_cents for e in self.get_entries_for_account(account_id, end_date=as_of))

    def get_trial_balance(self) -> Dict[int, int]:
        """Balance of every account that has entries"""
        balances: Dict[int, int] = {}
        for data in self.storage.load_all(self.entries_table):
            balances[data['account_id']] = balances.get(data['account_id'], 0) + data['amount_cents']
        return balances

    def verify_ledger_balanced(self) -> bool:
        """Sum of every entry in the ledger is zero"""
        return sum(self.get_trial_balance().values()) == 0
