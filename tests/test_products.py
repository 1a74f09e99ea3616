"""
Tests for deposit accounts and lines of credit
"""

import pytest
from datetime import date

from lending_ledger.storage import InMemoryStorage
from lending_ledger.audit import AuditTrail, AuditEventType
from lending_ledger.clock import FixedClock
from lending_ledger.accounts import (
    AccountRegistry, AccountCode, AccountNumberGenerator, OwnerType, is_valid_account_number
)
from lending_ledger.ledger import GeneralLedger, PostingLine
from lending_ledger.deposits import DepositManager, DepositStatus
from lending_ledger.credit import CreditLineManager
from lending_ledger.errors import InvalidAmount, InvalidRequest, ProductNotFound


class TestDepositAccounts:
    """Test deposit account lifecycle"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = FixedClock(date(2024, 1, 15))
        self.audit = AuditTrail(self.storage, clock=self.clock)
        self.registry = AccountRegistry(self.storage, self.audit)
        self.ledger = GeneralLedger(self.storage, self.registry, self.audit)
        self.deposits = DepositManager(self.storage, self.registry, self.ledger, self.audit)

    def test_create_provisions_ledger_account(self):
        deposit = self.deposits.create_deposit_account("alice", "usd")

        assert deposit.id == 1
        assert deposit.currency == "USD"
        assert deposit.status == DepositStatus.ACTIVE
        account = self.registry.get_account(deposit.ledger_account_id)
        assert account.code == AccountCode.CUSTOMER_DEPOSIT_ACCOUNT
        assert account.owner_type == OwnerType.CUSTOMER
        assert account.owner_reference == "alice:1"
        assert self.deposits.get_balance(deposit.id) == 0

    def test_each_deposit_gets_its_own_ledger_account(self):
        first = self.deposits.create_deposit_account("alice")
        second = self.deposits.create_deposit_account("alice")

        assert first.ledger_account_id != second.ledger_account_id
        assert [d.id for d in self.deposits.get_deposit_accounts_for_owner("alice")] == [first.id, second.id]

    def test_creation_is_audited(self):
        deposit = self.deposits.create_deposit_account("alice")

        events = self.audit.get_events_for_entity("deposit_account", deposit.id)
        assert [e.event_type for e in events] == [AuditEventType.DEPOSIT_ACCOUNT_OPENED]
        assert events[0].user_id == "alice"

    def test_invalid_input(self):
        with pytest.raises(InvalidRequest):
            self.deposits.create_deposit_account("", "USD")
        with pytest.raises(InvalidRequest):
            self.deposits.create_deposit_account("alice", "DOLLARS")
        assert self.storage.count(self.deposits.deposits_table) == 0

    def test_ownership(self):
        deposit = self.deposits.create_deposit_account("alice")

        assert self.deposits.get_owned_deposit_account("alice", deposit.id).id == deposit.id
        with pytest.raises(ProductNotFound, match="not found or access denied"):
            self.deposits.get_owned_deposit_account("mallory", deposit.id)
        with pytest.raises(ProductNotFound):
            self.deposits.get_owned_deposit_account("alice", 404)

    def test_close_requires_zero_balance(self):
        deposit = self.deposits.create_deposit_account("alice")
        other = self.deposits.create_deposit_account("alice")
        lines = [PostingLine.debit(deposit.ledger_account_id, 500),
                 PostingLine.credit(other.ledger_account_id, 500)]
        self.ledger.post_balanced_transaction("alice", "fund", lines)

        with pytest.raises(InvalidRequest):
            self.deposits.close_deposit_account("alice", deposit.id)

        self.ledger.transfer_internal("alice", "drain", deposit.ledger_account_id, other.ledger_account_id, 500)
        closed = self.deposits.close_deposit_account("alice", deposit.id)

        assert closed.status == DepositStatus.CLOSED
        assert closed.closed_at == self.clock.now()
        # Closing again is a no-op
        assert self.deposits.close_deposit_account("alice", deposit.id).status == DepositStatus.CLOSED

    def test_closed_deposit_takes_no_postings(self):
        deposit = self.deposits.create_deposit_account("alice")
        other = self.deposits.create_deposit_account("alice")
        self.deposits.close_deposit_account("alice", deposit.id)

        assert not self.registry.get_account(deposit.ledger_account_id).active
        with pytest.raises(InvalidRequest, match="inactive"):
            self.ledger.transfer_internal("alice", "late", other.ledger_account_id, deposit.ledger_account_id, 100)
        with pytest.raises(InvalidRequest, match="inactive"):
            self.ledger.post_balanced_transaction("alice", "late-2", [
                PostingLine.debit(deposit.ledger_account_id, 100),
                PostingLine.credit(other.ledger_account_id, 100)
            ])
        assert self.ledger.calculate_account_balance(deposit.ledger_account_id) == 0

    def test_failed_close_leaves_account_active(self):
        deposit = self.deposits.create_deposit_account("alice")
        other = self.deposits.create_deposit_account("alice")
        self.ledger.transfer_internal("alice", "fund", other.ledger_account_id, deposit.ledger_account_id, 100)

        with pytest.raises(InvalidRequest):
            self.deposits.close_deposit_account("alice", deposit.id)

        assert self.deposits.get_deposit_account(deposit.id).status == DepositStatus.ACTIVE
        assert self.registry.get_account(deposit.ledger_account_id).active


class TestLinesOfCredit:
    """Test line of credit creation and lookup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = FixedClock(date(2024, 1, 15))
        self.audit = AuditTrail(self.storage, clock=self.clock)
        self.credit = CreditLineManager(
            self.storage, self.audit, AccountNumberGenerator(self.storage, self.clock)
        )

    def test_create_line(self):
        line = self.credit.create_line_of_credit("alice", 1000000)

        assert line.id == 1
        assert line.credit_limit_cents == 1000000
        assert line.currency == "USD"
        assert line.account_number.startswith("LOC-2024")
        assert is_valid_account_number(line.account_number)

    def test_account_numbers_are_unique(self):
        numbers = {self.credit.create_line_of_credit("alice", 1000).account_number for _ in range(10)}
        assert len(numbers) == 10

    def test_lookup_by_number(self):
        line = self.credit.create_line_of_credit("alice", 5000, "EUR")

        found = self.credit.get_line_by_number(line.account_number)
        assert found.id == line.id
        assert found.currency == "EUR"
        assert self.credit.get_line_by_number("LOC-000000000") is None
        assert self.credit.get_line_by_number("garbage") is None

    def test_owned_line(self):
        line = self.credit.create_line_of_credit("alice", 5000)

        assert self.credit.get_owned_line("alice", line.account_number).id == line.id
        with pytest.raises(ProductNotFound, match="Line of Credit not found or access denied"):
            self.credit.get_owned_line("bob", line.account_number)

    @pytest.mark.parametrize("limit", [0, -1, 10.0, True])
    def test_invalid_limit(self, limit):
        with pytest.raises(InvalidAmount):
            self.credit.create_line_of_credit("alice", limit)

    def test_creation_is_audited(self):
        line = self.credit.create_line_of_credit("alice", 5000)

        events = self.audit.get_events_for_user("alice")
        assert [e.event_type for e in events] == [AuditEventType.CREDIT_LINE_CREATED]
        assert events[0].metadata["account_number"] == line.account_number
