"""
Loan Lifecycle Scheduler

Daily batch jobs that move loan balances between ledger categories as
schedule rows mature:

- mature-due (day 28): PENDING rows due on or before today, so a missed
  run is caught up next month. CREDIT charged / DEBIT due for principal and
  interest, then PENDING -> DUE.
- aging-overdue (daily): DUE rows due before today. CREDIT due / DEBIT
  overdue, then DUE -> OVERDUE.
- accrue-interest (day 1): interest of PENDING rows due this month.
  DEBIT interest charged / CREDIT bank interest earned.

Every posting carries an idempotency key scoped to (loan, period) and every
status change is a compare-and-set on the prior status, so re-running a job
is a no-op. Each loan is its own unit of work with its own deadline,
checked before commit; a failing or late loan is rolled back, reported in
the job summary and retried on the next run. Postings are made under the
loan's "system:loan:{id}" initiator.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple
import time

from .accounts import AccountCode, AccountRegistry, OwnerType
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .errors import AccountNotFound, LedgerError, LoanTimeout
from .ledger import GeneralLedger, PostingLine
from .loans import LoanManager, ScheduleStatus, TermLoan, RepaymentScheduleEntry, loan_initiator
from .logging_config import get_logger, log_action


@dataclass
class JobSummary:
    """Outcome of one job run"""
    job: str
    run_date: date
    ran: bool = True
    message: str = ""
    processed_count: int = 0
    total_candidates: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "run_date": self.run_date.isoformat(),
            "ran": self.ran,
            "message": self.message,
            "processed_count": self.processed_count,
            "total_candidates": self.total_candidates,
            "errors": self.errors
        }


Candidate = Tuple[TermLoan, Any]


class LoanLifecycleScheduler:
    """
    Runs the mature-due, aging-overdue and accrue-interest jobs
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        registry: AccountRegistry,
        ledger: GeneralLedger,
        audit_trail: AuditTrail,
        due_day: Optional[int] = None,
        accrual_day: Optional[int] = None,
        workers: Optional[int] = None,
        loan_timeout: Optional[float] = None
    ):
        config = get_config()
        self.loan_manager = loan_manager
        self.registry = registry
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.storage = loan_manager.storage
        self.clock = audit_trail.clock
        self.due_day = due_day or config.due_day_of_month
        self.accrual_day = accrual_day or config.accrual_day_of_month
        self.workers = workers or config.scheduler_workers
        self.loan_timeout = loan_timeout or config.scheduler_loan_timeout_seconds
        self.logger = get_logger("lending_ledger.scheduler")

    # Jobs

    def run_mature_due(self, as_of: Optional[date] = None) -> JobSummary:
        """Reclassify installments due on or before today from charged to due"""
        as_of = as_of or self.clock.today()
        summary = JobSummary(job="mature_due", run_date=as_of)
        if as_of.day != self.due_day:
            summary.ran = False
            summary.message = f"Due date processing only runs on day {self.due_day} of each month"
            return summary

        candidates = []
        for loan in self.loan_manager.get_active_loans():
            rows = [r for r in self.loan_manager.get_schedule(loan.id, ScheduleStatus.PENDING)
                    if r.due_date <= as_of]
            if rows:
                candidates.append((loan, rows))

        if not candidates:
            summary.message = "No loans with payments due today"
            return summary

        def mature(loan: TermLoan, rows: List[RepaymentScheduleEntry]) -> None:
            period = f"{loan.id}_{as_of.year}_{as_of.month}"
            self._reclassify(
                loan, rows,
                source=(AccountCode.CUSTOMER_PRINCIPAL_CHARGED, AccountCode.CUSTOMER_INTEREST_CHARGED),
                target=(AccountCode.CUSTOMER_PRINCIPAL_DUE, AccountCode.CUSTOMER_INTEREST_DUE),
                keys=(f"principal_reclass_{period}", f"interest_reclass_{period}"),
                reclass_types=("principal_charged_to_due", "interest_charged_to_due"),
                new_status=ScheduleStatus.DUE,
                event_type=AuditEventType.SCHEDULE_ENTRIES_MATURED
            )

        self._run_batch(summary, candidates, mature)
        summary.message = "Due date processing completed"
        return summary

    def run_aging_overdue(self, as_of: Optional[date] = None) -> JobSummary:
        """Reclassify DUE installments whose due date has passed to overdue"""
        as_of = as_of or self.clock.today()
        summary = JobSummary(job="aging_overdue", run_date=as_of)

        candidates = []
        for loan in self.loan_manager.get_active_loans():
            rows = [r for r in self.loan_manager.get_schedule(loan.id, ScheduleStatus.DUE)
                    if r.due_date < as_of]
            if rows:
                candidates.append((loan, rows))

        if not candidates:
            summary.message = "No overdue installments"
            return summary

        def age(loan: TermLoan, rows: List[RepaymentScheduleEntry]) -> None:
            by_period: Dict[date, List[RepaymentScheduleEntry]] = {}
            for row in rows:
                by_period.setdefault(row.due_date, []).append(row)
            with self.storage.atomic():
                for due_date in sorted(by_period):
                    period = f"{loan.id}_{due_date.isoformat()}"
                    self._reclassify(
                        loan, by_period[due_date],
                        source=(AccountCode.CUSTOMER_PRINCIPAL_DUE, AccountCode.CUSTOMER_INTEREST_DUE),
                        target=(AccountCode.CUSTOMER_PRINCIPAL_OVERDUE, AccountCode.CUSTOMER_INTEREST_OVERDUE),
                        keys=(f"principal_overdue_{period}", f"interest_overdue_{period}"),
                        reclass_types=("principal_due_to_overdue", "interest_due_to_overdue"),
                        new_status=ScheduleStatus.OVERDUE,
                        event_type=AuditEventType.SCHEDULE_ENTRIES_OVERDUE
                    )

        self._run_batch(summary, candidates, age)
        summary.message = "Overdue aging processing completed"
        return summary

    def run_accrue_interest(self, as_of: Optional[date] = None) -> JobSummary:
        """Recognize this month's scheduled interest as bank income"""
        as_of = as_of or self.clock.today()
        summary = JobSummary(job="accrue_interest", run_date=as_of)
        if as_of.day != self.accrual_day:
            summary.ran = False
            summary.message = f"Interest accrual only runs on day {self.accrual_day} of each month"
            return summary

        candidates = []
        for loan in self.loan_manager.get_active_loans():
            rows = [r for r in self.loan_manager.get_schedule(loan.id, ScheduleStatus.PENDING)
                    if (r.due_date.year, r.due_date.month) == (as_of.year, as_of.month)
                    and r.due_date >= as_of]
            if rows:
                candidates.append((loan, rows))

        if not candidates:
            summary.message = "No active loans with pending payments this month"
            return summary

        def accrue(loan: TermLoan, rows: List[RepaymentScheduleEntry]) -> None:
            interest = sum(r.interest_due_cents for r in rows)
            if interest <= 0:
                return
            charged = self.registry.resolve_account(
                OwnerType.LOAN, loan.owner_reference, AccountCode.CUSTOMER_INTEREST_CHARGED, loan.currency
            )
            earned = self.registry.ensure_bank_accounts(loan.currency)[AccountCode.BANK_INTEREST_EARNED]
            with self.storage.atomic():
                posting = self.ledger.post_balanced_transaction(
                    loan_initiator(loan.id),
                    f"interest_accrual_{loan.id}_{as_of.year}_{as_of.month}",
                    [PostingLine.debit(charged, interest), PostingLine.credit(earned, interest)],
                    {
                        "kind": "interest_accrual",
                        "loan_id": loan.id,
                        "accrual_period": f"{as_of.year}-{as_of.month:02d}",
                        "installments": [r.installment_number for r in rows]
                    },
                    customer_id=loan.owner_id
                )
                if not posting.replayed:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.INTEREST_ACCRUED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"txn_id": posting.txn_id, "interest_cents": interest},
                        user_id=loan.owner_id
                    )

        self._run_batch(summary, candidates, accrue)
        summary.message = "Interest accrual processing completed"
        return summary

    def run_all(self, as_of: Optional[date] = None) -> List[JobSummary]:
        """Run all three jobs for a date; each gates itself on the day of month"""
        as_of = as_of or self.clock.today()
        return [
            self.run_accrue_interest(as_of),
            self.run_mature_due(as_of),
            self.run_aging_overdue(as_of),
        ]

    # Internals

    def _reclassify(
        self,
        loan: TermLoan,
        rows: List[RepaymentScheduleEntry],
        source: Tuple[AccountCode, AccountCode],
        target: Tuple[AccountCode, AccountCode],
        keys: Tuple[str, str],
        reclass_types: Tuple[str, str],
        new_status: ScheduleStatus,
        event_type: AuditEventType
    ) -> None:
        """Post principal and interest reclassifications for rows, then advance them"""
        try:
            accounts = self.registry.resolve_accounts(
                OwnerType.LOAN, loan.owner_reference, source + target, loan.currency
            )
        except AccountNotFound:
            raise AccountNotFound("Required ledger accounts not found")

        amounts = (
            sum(r.principal_due_cents for r in rows),
            sum(r.interest_due_cents for r in rows),
        )
        txn_ids = []
        with self.storage.atomic():
            for from_code, to_code, amount, key, reclass_type in zip(source, target, amounts, keys, reclass_types):
                if amount <= 0:
                    continue
                posting = self.ledger.post_balanced_transaction(
                    loan_initiator(loan.id),
                    key,
                    [PostingLine.credit(accounts[from_code], amount),
                     PostingLine.debit(accounts[to_code], amount)],
                    {
                        "kind": reclass_type,
                        "loan_id": loan.id,
                        "reclass_type": reclass_type,
                        "due_dates": sorted({r.due_date.isoformat() for r in rows}),
                        "amount_cents": amount
                    },
                    customer_id=loan.owner_id
                )
                txn_ids.append(posting.txn_id)

            moved = [r.installment_number for r in rows
                     if self.loan_manager.transition_schedule_entry(r, new_status)]
            if moved:
                self.audit_trail.log_event(
                    event_type=event_type,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "installments": moved,
                        "status": new_status.value,
                        "txn_ids": txn_ids
                    },
                    user_id=loan.owner_id
                )

    def _run_batch(self, summary: JobSummary, candidates: List[Candidate],
                   handler: Callable[[TermLoan, Any], None]) -> None:
        """Run handler per loan on a worker pool, isolating failures and timeouts"""
        summary.total_candidates = len(candidates)

        def unit_of_work(loan: TermLoan, payload: Any) -> None:
            with self.storage.atomic():
                # The deadline starts once this loan holds the storage transaction
                deadline = time.monotonic() + self.loan_timeout
                handler(loan, payload)
                if time.monotonic() > deadline:
                    raise LoanTimeout(f"timed out after {self.loan_timeout}s")

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=summary.job) as executor:
            futures = [(loan, executor.submit(unit_of_work, loan, payload)) for loan, payload in candidates]
            for loan, future in futures:
                try:
                    future.result()
                    summary.processed_count += 1
                except LoanTimeout as e:
                    summary.errors.append(f"Loan {loan.id}: {e.message}")
                    self.logger.warning(f"{summary.job}: loan {loan.id} rolled back, {e.message}")
                except LedgerError as e:
                    summary.errors.append(f"Loan {loan.id}: {e.message}")
                    self.logger.warning(f"{summary.job}: loan {loan.id} failed: {e.message}")
                except Exception as e:
                    summary.errors.append(f"Loan {loan.id}: {e}")
                    self.logger.exception(f"{summary.job}: loan {loan.id} failed unexpectedly")

        log_action(
            self.logger, "info", f"{summary.job} processed {summary.processed_count}/{summary.total_candidates} loans",
            action=summary.job,
            extra={"run_date": summary.run_date.isoformat(), "errors": len(summary.errors)}
        )
