"""
Test suite for term loans

Covers origination against a line of credit, disbursal posting, idempotent
re-submission and repayment of matured installments.
"""

import pytest
from datetime import date

from lending_ledger.api.auth import LedgerSystem
from lending_ledger.storage import InMemoryStorage
from lending_ledger.clock import FixedClock
from lending_ledger.accounts import AccountCode, OwnerType, LOAN_ACCOUNT_CODES, is_valid_account_number
from lending_ledger.audit import AuditEventType
from lending_ledger.loans import LoanStatus, ScheduleStatus
from lending_ledger.ledger import Direction
from lending_ledger.errors import (
    CreditLimitExceeded, CurrencyMismatch, InvalidAmount, InvalidRequest, ProductNotFound
)


class LoanTestBase:

    def setup_method(self):
        self.clock = FixedClock(date(2024, 1, 15))
        self.system = LedgerSystem(storage=InMemoryStorage(), clock=self.clock)
        self.loans = self.system.loan_manager
        self.line = self.system.credit_manager.create_line_of_credit("alice", 1000000)
        self.deposit = self.system.deposit_manager.create_deposit_account("alice")

    def create_loan(self, principal=500000, bps=100, tenure=12, key="loan-1", owner="alice",
                    loc_number=None, deposit_id=None, loan_type="TERM"):
        return self.loans.create_term_loan(
            owner_id=owner,
            loc_account_number=loc_number or self.line.account_number,
            principal_amount_cents=principal,
            monthly_interest_rate_bps=bps,
            tenure_months=tenure,
            deposit_account_id=deposit_id or self.deposit.id,
            idempotency_key=key,
            loan_type=loan_type
        )

    def loan_balance(self, loan_id, code):
        account_id = self.system.registry.resolve_account(OwnerType.LOAN, str(loan_id), code, "USD")
        return self.system.ledger.calculate_account_balance(account_id)

    def deposit_balance(self):
        return self.system.ledger.calculate_account_balance(self.deposit.ledger_account_id)


class TestLoanCreation(LoanTestBase):

    def test_example_loan(self):
        result = self.create_loan()

        assert result.schedule_count == 12
        assert is_valid_account_number(result.loan_account_number)
        assert result.loan_account_number.startswith("LN-2024")

        entries = self.system.ledger.get_entries_for_transaction(result.disbursal_txn_id)
        assert len(entries) == 2
        debit, credit = entries
        assert debit.direction == Direction.DEBIT
        assert debit.account_id == self.deposit.ledger_account_id
        assert debit.amount_cents == 500000
        assert credit.direction == Direction.CREDIT
        assert credit.amount_cents == -500000
        assert credit.account_id == self.system.registry.resolve_account(
            OwnerType.LOAN, str(result.loan_id), AccountCode.CUSTOMER_PRINCIPAL_CHARGED, "USD"
        )

        transaction = self.system.ledger.get_transaction(result.disbursal_txn_id)
        assert transaction.idempotency_key == "loan-1_disbursal"
        assert transaction.kind == "loan_disbursal"
        assert self.deposit_balance() == 500000
        assert self.system.ledger.verify_ledger_balanced()

    def test_loan_record_and_schedule(self):
        result = self.create_loan()
        loan = self.loans.get_loan(result.loan_id)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.start_date == date(2024, 1, 15)
        assert loan.maturity_date == date(2025, 1, 15)
        assert loan.disbursal_txn_id == result.disbursal_txn_id

        rows = self.loans.get_schedule(result.loan_id)
        assert [r.installment_number for r in rows] == list(range(1, 13))
        assert all(r.status == ScheduleStatus.PENDING for r in rows)
        assert sum(r.principal_due_cents for r in rows) == 500000
        assert rows[0].due_date == date(2024, 2, 28)

    def test_six_loan_accounts_provisioned(self):
        result = self.create_loan()

        accounts = self.system.registry.list_owner_accounts(OwnerType.LOAN, str(result.loan_id))
        assert {a.code for a in accounts} == set(LOAN_ACCOUNT_CODES)

    def test_exposure_and_available_credit(self):
        self.create_loan()

        assert self.loans.get_exposure(self.line.id) == 500000
        assert self.loans.get_available_credit(self.line) == 500000

    def test_same_key_returns_original_loan(self):
        first = self.create_loan()
        second = self.create_loan()

        assert second.replayed
        assert second.loan_id == first.loan_id
        assert second.disbursal_txn_id == first.disbursal_txn_id
        assert len(self.loans.get_loans_for_owner("alice")) == 1
        assert self.deposit_balance() == 500000

    def test_credit_limit_enforced(self):
        self.create_loan(principal=600000, key="first")

        with pytest.raises(CreditLimitExceeded) as exc_info:
            self.create_loan(principal=400001, key="second")

        assert exc_info.value.to_dict()["error"] == (
            "Principal amount (400001 cents) exceeds available credit (400000 cents)"
        )
        assert len(self.loans.get_loans_for_owner("alice")) == 1

    def test_failed_creation_leaves_key_reusable(self):
        with pytest.raises(CreditLimitExceeded):
            self.create_loan(principal=1000001)

        assert self.system.storage.count(self.loans.loans_table) == 0
        assert self.system.storage.count(self.loans.schedule_table) == 0

        result = self.create_loan(principal=1000000)
        assert not result.replayed

    def test_line_of_another_owner(self):
        bob_deposit = self.system.deposit_manager.create_deposit_account("bob")

        with pytest.raises(ProductNotFound):
            self.create_loan(owner="bob", deposit_id=bob_deposit.id)

    def test_deposit_of_another_owner(self):
        bob_deposit = self.system.deposit_manager.create_deposit_account("bob")

        with pytest.raises(ProductNotFound):
            self.create_loan(deposit_id=bob_deposit.id)

    def test_currency_mismatch(self):
        euro_deposit = self.system.deposit_manager.create_deposit_account("alice", "EUR")

        with pytest.raises(CurrencyMismatch):
            self.create_loan(deposit_id=euro_deposit.id)

    def test_only_term_loans(self):
        with pytest.raises(InvalidRequest):
            self.create_loan(loan_type="REVOLVING")

    def test_invalid_terms(self):
        with pytest.raises(InvalidRequest):
            self.create_loan(tenure=0)
        with pytest.raises(InvalidRequest):
            self.create_loan(principal=0)

    def test_closed_deposit_rejected(self):
        other = self.system.deposit_manager.create_deposit_account("alice")
        self.system.deposit_manager.close_deposit_account("alice", other.id)

        with pytest.raises(InvalidRequest):
            self.create_loan(deposit_id=other.id)

    def test_origination_is_audited(self):
        result = self.create_loan()

        events = self.system.audit_trail.get_events_for_entity("loan", result.loan_id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_ORIGINATED, AuditEventType.LOAN_DISBURSED]

    def test_disbursal_is_posted_by_the_loan(self):
        result = self.create_loan()

        disbursal = self.system.ledger.get_transaction(result.disbursal_txn_id)
        assert disbursal.initiator == f"system:loan:{result.loan_id}"
        assert disbursal.customer_id == "alice"
        assert disbursal.idempotency_key == "loan-1_disbursal"

    def test_customer_posting_cannot_preempt_disbursal(self):
        other = self.system.deposit_manager.create_deposit_account("alice")
        self.system.ledger.transfer_internal(
            "alice", "loan-1_disbursal", self.deposit.ledger_account_id, other.ledger_account_id, 1
        )

        result = self.create_loan()

        assert self.deposit_balance() == 500000 - 1
        assert self.loan_balance(result.loan_id, AccountCode.CUSTOMER_PRINCIPAL_CHARGED) == -500000
        assert self.system.ledger.verify_ledger_balanced()


class TestRepayments(LoanTestBase):

    def setup_method(self):
        super().setup_method()
        self.loan_id = self.create_loan().loan_id
        self.scheduler = self.system.scheduler

    def row(self, number):
        return self.loans.get_schedule(self.loan_id)[number - 1]

    def test_nothing_due_yet(self):
        with pytest.raises(InvalidRequest):
            self.loans.record_repayment("alice", self.loan_id, self.deposit.id, 50000, "pay-1")

    def test_pay_due_installment(self):
        self.scheduler.run_mature_due(date(2024, 2, 28))
        first = self.row(1)

        result = self.loans.record_repayment("alice", self.loan_id, self.deposit.id,
                                             first.total_due_cents, "pay-1")

        assert result.installments_paid == [1]
        assert result.applied_cents == first.total_due_cents
        assert result.unapplied_cents == 0
        assert result.loan_status == LoanStatus.ACTIVE

        paid = self.row(1)
        assert paid.status == ScheduleStatus.PAID
        assert paid.paid_transaction_id == result.txn_id
        assert self.loan_balance(self.loan_id, AccountCode.CUSTOMER_PRINCIPAL_DUE) == 0
        assert self.loan_balance(self.loan_id, AccountCode.CUSTOMER_INTEREST_DUE) == 0
        assert self.loan_balance(self.loan_id, AccountCode.CUSTOMER_PRINCIPAL_CHARGED) == -500000
        assert self.deposit_balance() == 500000 - first.total_due_cents
        assert self.loans.outstanding_principal(self.loan_id) == 500000 - first.principal_due_cents
        assert self.system.ledger.verify_ledger_balanced()

        collections = self.system.registry.ensure_bank_accounts("USD")[AccountCode.BANK_LOAN_COLLECTIONS]
        assert self.system.ledger.calculate_account_balance(collections) == first.total_due_cents

    def test_payment_must_cover_oldest_installment(self):
        self.scheduler.run_mature_due(date(2024, 2, 28))

        with pytest.raises(InvalidAmount):
            self.loans.record_repayment("alice", self.loan_id, self.deposit.id,
                                        self.row(1).total_due_cents - 1, "pay-short")

        assert self.row(1).status == ScheduleStatus.DUE
        assert self.system.storage.count(self.loans.repayments_table) == 0

    def test_overdue_paid_before_due_and_remainder_unapplied(self):
        self.scheduler.run_mature_due(date(2024, 2, 28))
        self.scheduler.run_aging_overdue(date(2024, 3, 1))
        self.scheduler.run_mature_due(date(2024, 3, 28))
        assert self.row(1).status == ScheduleStatus.OVERDUE
        assert self.row(2).status == ScheduleStatus.DUE

        first = self.loans.record_repayment("alice", self.loan_id, self.deposit.id,
                                            self.row(1).total_due_cents + 10, "pay-1")
        assert first.installments_paid == [1]
        assert first.unapplied_cents == 10
        assert self.row(2).status == ScheduleStatus.DUE
        assert self.loan_balance(self.loan_id, AccountCode.CUSTOMER_PRINCIPAL_OVERDUE) == 0

        second = self.loans.record_repayment("alice", self.loan_id, self.deposit.id,
                                             self.row(2).total_due_cents, "pay-2")
        assert second.installments_paid == [2]
        assert self.loan_balance(self.loan_id, AccountCode.CUSTOMER_PRINCIPAL_DUE) == 0

    def test_repayment_replay(self):
        self.scheduler.run_mature_due(date(2024, 2, 28))
        amount = self.row(1).total_due_cents

        first = self.loans.record_repayment("alice", self.loan_id, self.deposit.id, amount, "pay-1")
        second = self.loans.record_repayment("alice", self.loan_id, self.deposit.id, amount, "pay-1")

        assert second.replayed
        assert second.txn_id == first.txn_id
        assert self.deposit_balance() == 500000 - amount

    def test_customer_posting_cannot_preempt_repayment(self):
        self.scheduler.run_mature_due(date(2024, 2, 28))
        amount = self.row(1).total_due_cents
        other = self.system.deposit_manager.create_deposit_account("alice")
        self.system.ledger.transfer_internal(
            "alice", "pay-1_repayment", self.deposit.ledger_account_id, other.ledger_account_id, 1
        )

        result = self.loans.record_repayment("alice", self.loan_id, self.deposit.id, amount, "pay-1")

        assert not result.replayed
        assert self.row(1).status == ScheduleStatus.PAID
        assert self.deposit_balance() == 500000 - 1 - amount
        collections = self.system.registry.ensure_bank_accounts("USD")[AccountCode.BANK_LOAN_COLLECTIONS]
        assert self.system.ledger.calculate_account_balance(collections) == amount
        assert self.system.ledger.get_transaction(result.txn_id).metadata["kind"] == "loan_repayment"

    def test_other_owner_cannot_repay(self):
        self.scheduler.run_mature_due(date(2024, 2, 28))

        with pytest.raises(ProductNotFound):
            self.loans.record_repayment("bob", self.loan_id, self.deposit.id, 100000, "pay-bob")

    def test_invalid_amount(self):
        with pytest.raises(InvalidAmount):
            self.loans.record_repayment("alice", self.loan_id, self.deposit.id, 0, "pay-0")


class TestPayOff(LoanTestBase):

    def test_single_installment_loan_is_paid_off(self):
        result = self.create_loan(principal=100000, bps=200, tenure=1, key="short")
        self.system.scheduler.run_mature_due(date(2024, 2, 28))
        row = self.loans.get_schedule(result.loan_id)[0]
        assert row.total_due_cents == 102000

        repayment = self.loans.record_repayment("alice", result.loan_id, self.deposit.id, 102000, "payoff")

        assert repayment.loan_status == LoanStatus.PAID_OFF
        assert self.loans.get_loan(result.loan_id).status == LoanStatus.PAID_OFF
        assert self.loans.get_exposure(self.line.id) == 0
        assert self.loans.get_available_credit(self.line) == 1000000
        events = self.system.audit_trail.get_events_by_type(AuditEventType.LOAN_PAID_OFF)
        assert [e.entity_id for e in events] == [str(result.loan_id)]

        with pytest.raises(InvalidRequest):
            self.loans.record_repayment("alice", result.loan_id, self.deposit.id, 100, "again")
