"""
Term Loan Module

Handles term loan origination against a line of credit, account
provisioning, schedule persistence, disbursal, and repayment of matured
installments (DUE/OVERDUE -> PAID).
"""

from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import hashlib
import json

from .accounts import (
    AccountRegistry, AccountCode, AccountNumberGenerator, OwnerType, LOAN_ACCOUNT_CODES
)
from .audit import AuditTrail, AuditEventType
from .credit import CreditLineManager, LineOfCredit
from .deposits import DepositManager, DepositStatus
from .errors import (
    CreditLimitExceeded, CurrencyMismatch, DuplicateRecordError, InvalidAmount,
    InvalidRequest, ProductNotFound, StorageFailure
)
from .ledger import GeneralLedger, PostingLine, SYSTEM_INITIATOR_PREFIX
from .logging_config import get_logger, log_action
from .schedule import add_months, generate_schedule, DEFAULT_DUE_DAY
from .storage import StorageInterface, StorageRecord


class LoanType(Enum):
    TERM = "TERM"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    PAID_OFF = "PAID_OFF"
    DEFAULTED = "DEFAULTED"


class ScheduleStatus(Enum):
    """Repayment schedule row states"""
    PENDING = "PENDING"    # Not yet due
    DUE = "DUE"            # Reclassified on its due date
    OVERDUE = "OVERDUE"    # Still unpaid after its due date
    PAID = "PAID"          # Settled by a repayment


# Forward-only transitions
SCHEDULE_TRANSITIONS = {
    ScheduleStatus.PENDING: {ScheduleStatus.DUE},
    ScheduleStatus.DUE: {ScheduleStatus.OVERDUE, ScheduleStatus.PAID},
    ScheduleStatus.OVERDUE: {ScheduleStatus.PAID},
    ScheduleStatus.PAID: set(),
}

# Ledger buckets holding a matured row's principal and interest
BUCKET_CODES = {
    ScheduleStatus.DUE: (AccountCode.CUSTOMER_PRINCIPAL_DUE, AccountCode.CUSTOMER_INTEREST_DUE),
    ScheduleStatus.OVERDUE: (AccountCode.CUSTOMER_PRINCIPAL_OVERDUE, AccountCode.CUSTOMER_INTEREST_OVERDUE),
}


@dataclass
class TermLoan(StorageRecord):
    owner_id: str
    loc_id: int
    loan_account_number: str
    loan_type: LoanType
    currency: str
    principal_amount_cents: int
    monthly_interest_rate_bps: int
    tenure_months: int
    start_date: date
    maturity_date: date
    deposit_account_id: int
    idempotency_key: str
    status: LoanStatus = LoanStatus.ACTIVE
    disbursal_txn_id: Optional[int] = None

    @property
    def owner_reference(self) -> str:
        """Owner reference of the loan's ledger accounts"""
        return str(self.id)

    @classmethod
    def from_dict(cls, data: Dict) -> 'TermLoan':
        return cls(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            loc_id=data['loc_id'],
            loan_account_number=data['loan_account_number'],
            loan_type=LoanType(data['loan_type']),
            currency=data['currency'],
            principal_amount_cents=data['principal_amount_cents'],
            monthly_interest_rate_bps=data['monthly_interest_rate_bps'],
            tenure_months=data['tenure_months'],
            start_date=date.fromisoformat(data['start_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            deposit_account_id=data['deposit_account_id'],
            idempotency_key=data['idempotency_key'],
            status=LoanStatus(data['status']),
            disbursal_txn_id=data.get('disbursal_txn_id')
        )


@dataclass
class RepaymentScheduleEntry(StorageRecord):
    """Persisted installment; id is "{loan_id}:{installment_number}" """
    loan_id: int
    installment_number: int
    due_date: date
    principal_due_cents: int
    interest_due_cents: int
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_transaction_id: Optional[int] = None

    @property
    def total_due_cents(self) -> int:
        return self.principal_due_cents + self.interest_due_cents

    def can_transition_to(self, new_status: ScheduleStatus) -> bool:
        return new_status in SCHEDULE_TRANSITIONS[self.status]

    @classmethod
    def from_dict(cls, data: Dict) -> 'RepaymentScheduleEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due_cents=data['principal_due_cents'],
            interest_due_cents=data['interest_due_cents'],
            status=ScheduleStatus(data['status']),
            paid_transaction_id=data.get('paid_transaction_id')
        )


@dataclass
class LoanCreationResult:
    loan_id: int
    loan_account_number: str
    schedule_count: int
    disbursal_txn_id: int
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "loan_account_number": self.loan_account_number,
            "schedule_count": self.schedule_count,
            "disbursal_txn_id": self.disbursal_txn_id
        }


@dataclass
class RepaymentResult:
    loan_id: int
    txn_id: int
    applied_cents: int
    unapplied_cents: int
    installments_paid: List[int] = field(default_factory=list)
    loan_status: LoanStatus = LoanStatus.ACTIVE
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "txn_id": self.txn_id,
            "applied_cents": self.applied_cents,
            "unapplied_cents": self.unapplied_cents,
            "installments_paid": self.installments_paid,
            "loan_status": self.loan_status.value
        }


def _request_id(owner_id: str, idempotency_key: str) -> str:
    return hashlib.sha256(json.dumps([owner_id, idempotency_key]).encode("utf-8")).hexdigest()


def loan_initiator(loan_id: int) -> str:
    """Ledger initiator for postings a loan makes on its own behalf"""
    return f"{SYSTEM_INITIATOR_PREFIX}loan:{loan_id}"


class LoanManager:
    """
    Manages term loans and their repayment schedules
    """

    ACCOUNT_PREFIX = "LN"

    def __init__(
        self,
        storage: StorageInterface,
        registry: AccountRegistry,
        ledger: GeneralLedger,
        credit_manager: CreditLineManager,
        deposit_manager: DepositManager,
        audit_trail: AuditTrail,
        number_generator: AccountNumberGenerator,
        due_day: int = DEFAULT_DUE_DAY
    ):
        self.storage = storage
        self.registry = registry
        self.ledger = ledger
        self.credit_manager = credit_manager
        self.deposit_manager = deposit_manager
        self.audit_trail = audit_trail
        self.clock = audit_trail.clock
        self.number_generator = number_generator
        self.due_day = due_day
        self.loans_table = "term_loans"
        self.schedule_table = "repayment_schedule"
        self.requests_table = "loan_requests"
        self.repayments_table = "loan_repayments"
        self.logger = get_logger("lending_ledger.loans")

    def create_term_loan(
        self,
        owner_id: str,
        loc_account_number: str,
        principal_amount_cents: int,
        monthly_interest_rate_bps: int,
        tenure_months: int,
        deposit_account_id: int,
        idempotency_key: str,
        loan_type: str = "TERM"
    ) -> LoanCreationResult:
        """
        Originate a term loan against a line of credit and disburse it.

        In one unit of work: checks available credit, creates the loan row with
        an LN- account number, provisions the six LOAN ledger accounts, stores
        the schedule, and posts the disbursal (DEBIT deposit, CREDIT principal
        charged) under "{idempotency_key}_disbursal" in the loan's own
        "system:loan:{id}" initiator namespace. Re-submitting the same
        idempotency key returns the loan created the first time.

        Args:
            owner_id: Verified user id; must own the line and the deposit account
            loc_account_number: Line of credit to draw on
            principal_amount_cents: Amount to disburse
            monthly_interest_rate_bps: Monthly rate in basis points
            tenure_months: Number of monthly installments
            deposit_account_id: Deposit account receiving the funds
            idempotency_key: Client key for safe retries
            loan_type: Only "TERM" is supported

        Returns:
            LoanCreationResult
        """
        if loan_type != LoanType.TERM.value:
            raise InvalidRequest("Only TERM loans are supported")
        if not idempotency_key or not isinstance(idempotency_key, str):
            raise InvalidRequest("idempotency_key must be a non-empty string")

        start_date = self.clock.today()
        schedule = generate_schedule(
            principal_amount_cents, monthly_interest_rate_bps, tenure_months,
            start_date, self.due_day
        )

        request_id = _request_id(owner_id, idempotency_key)
        with self.storage.atomic():
            try:
                self.storage.insert(self.requests_table, request_id, {
                    'owner_id': owner_id,
                    'idempotency_key': idempotency_key,
                    'loan_id': None
                })
            except DuplicateRecordError:
                return self._replay_creation(request_id)

            line = self.credit_manager.get_owned_line(owner_id, loc_account_number)
            deposit = self.deposit_manager.get_owned_deposit_account(owner_id, deposit_account_id)
            if deposit.status != DepositStatus.ACTIVE:
                raise InvalidRequest(f"Deposit account {deposit_account_id} is closed")
            if deposit.currency != line.currency:
                raise CurrencyMismatch(
                    "Deposit account currency must match the line of credit currency",
                    f"{deposit.currency} != {line.currency}"
                )

            # Touch the line row so concurrent draws on it serialize
            self.storage.update_where(self.credit_manager.lines_table, str(line.id), {},
                                      {'updated_at': self.clock.now().isoformat()})
            available = self.get_available_credit(line)
            if principal_amount_cents > available:
                raise CreditLimitExceeded(principal_amount_cents, available)

            loan_id = self.storage.next_sequence(self.loans_table)
            loan_account_number = self.number_generator.generate(self.ACCOUNT_PREFIX, "term_loan", loan_id)
            now = self.clock.now()
            loan = TermLoan(
                id=loan_id,
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                loc_id=line.id,
                loan_account_number=loan_account_number,
                loan_type=LoanType.TERM,
                currency=line.currency,
                principal_amount_cents=principal_amount_cents,
                monthly_interest_rate_bps=monthly_interest_rate_bps,
                tenure_months=tenure_months,
                start_date=start_date,
                maturity_date=add_months(start_date, tenure_months),
                deposit_account_id=deposit.id,
                idempotency_key=idempotency_key
            )
            self.storage.insert(self.loans_table, str(loan_id), loan.to_dict())

            accounts = self.registry.provision_accounts(
                OwnerType.LOAN, loan.owner_reference, loan.currency, LOAN_ACCOUNT_CODES
            )

            for item in schedule:
                row = RepaymentScheduleEntry(
                    id=f"{loan_id}:{item.installment_number}",
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    installment_number=item.installment_number,
                    due_date=item.due_date,
                    principal_due_cents=item.principal_due_cents,
                    interest_due_cents=item.interest_due_cents
                )
                self.storage.insert(self.schedule_table, row.id, row.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ORIGINATED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "loan_account_number": loan_account_number,
                    "loc_id": line.id,
                    "principal_amount_cents": principal_amount_cents,
                    "monthly_interest_rate_bps": monthly_interest_rate_bps,
                    "tenure_months": tenure_months,
                    "currency": loan.currency
                },
                user_id=owner_id
            )

            disbursal = self.ledger.post_balanced_transaction(
                loan_initiator(loan_id),
                f"{idempotency_key}_disbursal",
                [
                    PostingLine.debit(deposit.ledger_account_id, principal_amount_cents),
                    PostingLine.credit(accounts[AccountCode.CUSTOMER_PRINCIPAL_CHARGED], principal_amount_cents),
                ],
                {
                    "kind": "loan_disbursal",
                    "loan_id": loan_id,
                    "disbursal_type": "loan_disbursal",
                    "principal_amount_cents": principal_amount_cents
                },
                customer_id=owner_id
            )
            loan.disbursal_txn_id = disbursal.txn_id
            self.storage.save(self.loans_table, str(loan_id), loan.to_dict())
            self.storage.save(self.requests_table, request_id, {
                'owner_id': owner_id,
                'idempotency_key': idempotency_key,
                'loan_id': loan_id
            })

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "disbursal_txn_id": disbursal.txn_id,
                    "deposit_account_id": deposit.id,
                    "amount_cents": principal_amount_cents
                },
                user_id=owner_id
            )

        log_action(
            self.logger, "info", f"Term loan {loan_account_number} created",
            user_id=owner_id, action="create_term_loan", resource=f"loan:{loan_id}",
            extra={
                "principal_amount_cents": principal_amount_cents,
                "tenure_months": tenure_months,
                "disbursal_txn_id": disbursal.txn_id
            }
        )
        return LoanCreationResult(
            loan_id=loan_id,
            loan_account_number=loan_account_number,
            schedule_count=len(schedule),
            disbursal_txn_id=disbursal.txn_id
        )

    def _replay_creation(self, request_id: str) -> LoanCreationResult:
        record = self.storage.load(self.requests_table, request_id)
        loan = self.get_loan(record['loan_id']) if record and record.get('loan_id') else None
        if loan is None:
            raise StorageFailure("A loan with this idempotency key is still being created")
        return LoanCreationResult(
            loan_id=loan.id,
            loan_account_number=loan.loan_account_number,
            schedule_count=len(self.get_schedule(loan.id)),
            disbursal_txn_id=loan.disbursal_txn_id,
            replayed=True
        )

    def get_loan(self, loan_id: int) -> Optional[TermLoan]:
        data = self.storage.load(self.loans_table, str(loan_id))
        if data:
            return TermLoan.from_dict(data)
        return None

    def get_owned_loan(self, owner_id: str, loan_id: int) -> TermLoan:
        loan = self.get_loan(loan_id)
        if loan is None or loan.owner_id != owner_id:
            raise ProductNotFound("Loan not found or access denied")
        return loan

    def get_loans_for_owner(self, owner_id: str) -> List[TermLoan]:
        loans = [TermLoan.from_dict(d) for d in self.storage.find(self.loans_table, {'owner_id': owner_id})]
        loans.sort(key=lambda l: l.id)
        return loans

    def get_active_loans(self) -> List[TermLoan]:
        loans = [
            TermLoan.from_dict(d)
            for d in self.storage.find(self.loans_table, {'status': LoanStatus.ACTIVE.value})
        ]
        loans.sort(key=lambda l: l.id)
        return loans

    def get_schedule(self, loan_id: int, status: Optional[ScheduleStatus] = None) -> List[RepaymentScheduleEntry]:
        """Schedule rows of a loan in installment order, optionally filtered by status"""
        filters: Dict[str, Any] = {'loan_id': loan_id}
        if status is not None:
            filters['status'] = status.value
        rows = [RepaymentScheduleEntry.from_dict(d) for d in self.storage.find(self.schedule_table, filters)]
        rows.sort(key=lambda r: r.installment_number)
        return rows

    def transition_schedule_entry(self, entry: RepaymentScheduleEntry, new_status: ScheduleStatus,
                                  changes: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move a schedule row forward, conditioned on its status being unchanged
        in storage. Returns False if another run already moved it.
        """
        if not entry.can_transition_to(new_status):
            raise InvalidRequest(
                f"Schedule entry {entry.id} cannot move from {entry.status.value} to {new_status.value}"
            )
        update = {'status': new_status.value, 'updated_at': self.clock.now().isoformat()}
        update.update(changes or {})
        return self.storage.update_where(
            self.schedule_table, entry.id, {'status': entry.status.value}, update
        )

    def outstanding_principal(self, loan_id: int) -> int:
        """Principal not yet repaid, from the schedule rows"""
        return sum(
            row.principal_due_cents for row in self.get_schedule(loan_id)
            if row.status != ScheduleStatus.PAID
        )

    def get_exposure(self, loc_id: int) -> int:
        """Outstanding principal of all ACTIVE loans drawn on a line of credit"""
        loans = self.storage.find(self.loans_table, {'loc_id': loc_id, 'status': LoanStatus.ACTIVE.value})
        return sum(self.outstanding_principal(int(loan['id'])) for loan in loans)

    def get_available_credit(self, line: LineOfCredit) -> int:
        return max(line.credit_limit_cents - self.get_exposure(line.id), 0)

    def record_repayment(
        self,
        owner_id: str,
        loan_id: int,
        deposit_account_id: int,
        amount_cents: int,
        idempotency_key: str
    ) -> RepaymentResult:
        """
        Apply a payment from a deposit account to a loan's matured installments.

        Whole installments are settled, OVERDUE before DUE and oldest first,
        while the amount covers them; any remainder is left in the deposit
        account and reported as unapplied. One balanced posting moves the
        applied amount to the bank's collections account and reverses the
        settled installments' due/overdue reclassification. Settled rows become
        PAID; when every row is PAID the loan becomes PAID_OFF.

        Raises:
            InvalidAmount: amount does not cover the oldest outstanding installment
            InvalidRequest: loan inactive or nothing outstanding
        """
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidAmount("amount_cents must be a positive integer")
        if not idempotency_key or not isinstance(idempotency_key, str):
            raise InvalidRequest("idempotency_key must be a non-empty string")

        request_id = _request_id(owner_id, idempotency_key)
        with self.storage.atomic():
            try:
                self.storage.insert(self.repayments_table, request_id, {'result': None})
            except DuplicateRecordError:
                return self._replay_repayment(request_id)

            loan = self.get_owned_loan(owner_id, loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidRequest(f"Loan {loan_id} is {loan.status.value}")
            deposit = self.deposit_manager.get_owned_deposit_account(owner_id, deposit_account_id)
            if deposit.currency != loan.currency:
                raise CurrencyMismatch("Both accounts must have the same currency")

            rank = {ScheduleStatus.OVERDUE: 0, ScheduleStatus.DUE: 1}
            outstanding = [r for r in self.get_schedule(loan_id) if r.status in rank]
            if not outstanding:
                raise InvalidRequest(f"Loan {loan_id} has no installments due")
            outstanding.sort(key=lambda r: (rank[r.status], r.due_date, r.installment_number))

            settled: List[RepaymentScheduleEntry] = []
            remaining = amount_cents
            for row in outstanding:
                if row.total_due_cents > remaining:
                    break
                settled.append(row)
                remaining -= row.total_due_cents
            if not settled:
                raise InvalidAmount(
                    f"Payment of {amount_cents} cents does not cover the oldest outstanding "
                    f"installment ({outstanding[0].total_due_cents} cents)"
                )
            applied = amount_cents - remaining

            lines = self._repayment_lines(loan, deposit.ledger_account_id, settled, applied)
            posting = self.ledger.post_balanced_transaction(
                loan_initiator(loan_id),
                f"{idempotency_key}_repayment",
                lines,
                {
                    "kind": "loan_repayment",
                    "loan_id": loan_id,
                    "installments": [r.installment_number for r in settled],
                    "applied_cents": applied
                },
                customer_id=owner_id
            )

            for row in settled:
                if not self.transition_schedule_entry(row, ScheduleStatus.PAID,
                                                      {'paid_transaction_id': posting.txn_id}):
                    raise StorageFailure(f"Schedule entry {row.id} changed during repayment; retry")

            loan_status = loan.status
            if all(r.status == ScheduleStatus.PAID for r in self.get_schedule(loan_id)):
                self.storage.update_where(
                    self.loans_table, str(loan_id),
                    {'status': LoanStatus.ACTIVE.value},
                    {'status': LoanStatus.PAID_OFF.value, 'updated_at': self.clock.now().isoformat()}
                )
                loan_status = LoanStatus.PAID_OFF
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAID_OFF,
                    entity_type="loan",
                    entity_id=loan_id,
                    user_id=owner_id
                )

            result = RepaymentResult(
                loan_id=loan_id,
                txn_id=posting.txn_id,
                applied_cents=applied,
                unapplied_cents=remaining,
                installments_paid=[r.installment_number for r in settled],
                loan_status=loan_status
            )
            self.storage.save(self.repayments_table, request_id, {'result': result.to_dict()})

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_MADE,
                entity_type="loan",
                entity_id=loan_id,
                metadata=result.to_dict(),
                user_id=owner_id
            )

        log_action(
            self.logger, "info", f"Repayment of {applied} cents applied to loan {loan_id}",
            user_id=owner_id, action="record_repayment", resource=f"loan:{loan_id}",
            extra={"installments_paid": result.installments_paid, "txn_id": posting.txn_id}
        )
        return result

    def _repayment_lines(self, loan: TermLoan, deposit_ledger_account_id: int,
                         settled: List[RepaymentScheduleEntry], applied: int) -> List[PostingLine]:
        collections = self.registry.ensure_bank_accounts(loan.currency)[AccountCode.BANK_LOAN_COLLECTIONS]
        accounts = self.registry.resolve_accounts(
            OwnerType.LOAN, loan.owner_reference, LOAN_ACCOUNT_CODES, loan.currency
        )

        bucket_totals: Dict[AccountCode, int] = {}
        for row in settled:
            principal_code, interest_code = BUCKET_CODES[row.status]
            bucket_totals[principal_code] = bucket_totals.get(principal_code, 0) + row.principal_due_cents
            bucket_totals[interest_code] = bucket_totals.get(interest_code, 0) + row.interest_due_cents

        lines = [
            PostingLine.credit(deposit_ledger_account_id, applied),
            PostingLine.debit(collections, applied),
        ]
        for code, amount in bucket_totals.items():
            if amount <= 0:
                continue
            if code in (AccountCode.CUSTOMER_PRINCIPAL_DUE, AccountCode.CUSTOMER_PRINCIPAL_OVERDUE):
                charged = AccountCode.CUSTOMER_PRINCIPAL_CHARGED
            else:
                charged = AccountCode.CUSTOMER_INTEREST_CHARGED
            lines.append(PostingLine.credit(accounts[code], amount))
            lines.append(PostingLine.debit(accounts[charged], amount))
        return lines

    def _replay_repayment(self, request_id: str) -> RepaymentResult:
        record = self.storage.load(self.repayments_table, request_id)
        data = record.get('result') if record else None
        if data is None:
            raise StorageFailure("A repayment with this idempotency key is still being applied")
        return RepaymentResult(
            loan_id=data['loan_id'],
            txn_id=data['txn_id'],
            applied_cents=data['applied_cents'],
            unapplied_cents=data['unapplied_cents'],
            installments_paid=data['installments_paid'],
            loan_status=LoanStatus(data['loan_status']),
            replayed=True
        )
