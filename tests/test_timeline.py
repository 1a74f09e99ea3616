"""
Tests for the customer timeline projector
"""

import pytest
from datetime import date, datetime, timezone

from lending_ledger.api.auth import LedgerSystem
from lending_ledger.storage import InMemoryStorage
from lending_ledger.clock import FixedClock
from lending_ledger.accounts import AccountCode, OwnerType
from lending_ledger.ledger import PostingLine
from lending_ledger.timeline import Pagination, clamp_limit
from lending_ledger.errors import InvalidQuery


class TimelineTestBase:

    def setup_method(self):
        self.clock = FixedClock(datetime(2024, 4, 10, 9, 0, tzinfo=timezone.utc))
        self.system = LedgerSystem(storage=InMemoryStorage(), clock=self.clock)
        self.timeline = self.system.timeline
        registry = self.system.registry
        # Accounts provisioned directly carry no user events
        self.a = registry.provision_accounts(OwnerType.CUSTOMER, "ops:1", "USD",
                                             [AccountCode.CUSTOMER_DEPOSIT_ACCOUNT])[AccountCode.CUSTOMER_DEPOSIT_ACCOUNT]
        self.b = registry.provision_accounts(OwnerType.CUSTOMER, "ops:2", "USD",
                                             [AccountCode.CUSTOMER_DEPOSIT_ACCOUNT])[AccountCode.CUSTOMER_DEPOSIT_ACCOUNT]

    def post(self, key, amount=100, user="alice"):
        return self.system.ledger.post_balanced_transaction(
            user, key, [PostingLine.debit(self.a, amount), PostingLine.credit(self.b, amount)]
        )


class TestPagination(TimelineTestBase):

    def setup_method(self):
        super().setup_method()
        for i in range(137):
            self.post(f"k-{i}")

    def test_last_page(self):
        page = self.timeline.get_timeline("alice", page=3, limit=50)

        assert len(page.items) == 37
        assert page.pagination.to_dict() == {
            "page": 3,
            "limit": 50,
            "total": 137,
            "total_pages": 3,
            "has_next": False,
            "has_prev": True
        }

    def test_first_page_defaults(self):
        page = self.timeline.get_timeline("alice")

        assert len(page.items) == 50
        assert page.pagination.has_next
        assert not page.pagination.has_prev

    def test_page_past_the_end_is_empty(self):
        page = self.timeline.get_timeline("alice", page=9, limit=50)

        assert page.items == []
        assert page.pagination.total == 137

    def test_limit_is_clamped(self):
        assert self.timeline.get_timeline("alice", limit=500).pagination.limit == 100
        assert self.timeline.get_timeline("alice", limit=0).pagination.limit == 1
        assert self.timeline.get_timeline("alice", limit=-3).pagination.limit == 1

    def test_pages_do_not_overlap(self):
        seen = []
        for number in (1, 2, 3):
            seen.extend(item.refs["txn_id"] for item in self.timeline.get_timeline("alice", page=number).items)

        assert len(seen) == 137
        assert len(set(seen)) == 137

    def test_other_customers_see_nothing(self):
        page = self.timeline.get_timeline("bob")

        assert page.items == []
        assert page.pagination.total == 0
        assert page.pagination.total_pages == 0
        assert not page.pagination.has_next


class TestQueryValidation(TimelineTestBase):

    @pytest.mark.parametrize("value", ["2024-1-5", "05/01/2024", "2024-02-30", "yesterday"])
    def test_invalid_dates(self, value):
        with pytest.raises(InvalidQuery, match="Invalid 'from' date format. Use ISO date"):
            self.timeline.get_timeline("alice", from_date=value)

    def test_invalid_to_date(self):
        with pytest.raises(InvalidQuery, match="Invalid 'to' date format"):
            self.timeline.get_timeline("alice", to_date="2024/04/01")

    def test_page_must_be_positive(self):
        with pytest.raises(InvalidQuery, match="Page number must be 1 or greater"):
            self.timeline.get_timeline("alice", page=0)

    def test_from_after_to(self):
        with pytest.raises(InvalidQuery):
            self.timeline.get_timeline("alice", from_date="2024-05-01", to_date="2024-04-01")

    def test_clamp_limit_helper(self):
        assert clamp_limit(None) == 50
        assert clamp_limit(75) == 75
        with pytest.raises(InvalidQuery):
            clamp_limit("ten")

    def test_pagination_arithmetic(self):
        pagination = Pagination(page=2, limit=50, total=100)
        assert pagination.total_pages == 2
        assert pagination.offset == 50
        assert not pagination.has_next
        assert pagination.has_prev


class TestOrderingAndFilters(TimelineTestBase):

    def setup_method(self):
        super().setup_method()
        self.clock.set(datetime(2024, 4, 1, 8, 0, tzinfo=timezone.utc))
        self.post("early")
        self.clock.set(datetime(2024, 4, 3, 8, 0, tzinfo=timezone.utc))
        self.deposit = self.system.deposit_manager.create_deposit_account("alice")
        self.clock.set(datetime(2024, 4, 3, 9, 0, tzinfo=timezone.utc))
        self.post("same-day")
        self.clock.set(datetime(2024, 4, 3, 10, 0, tzinfo=timezone.utc))
        self.post("same-day-later")

    def test_date_desc_type_asc_then_newest(self):
        items = self.timeline.get_timeline("alice").items

        assert [(i.date.isoformat(), i.type) for i in items] == [
            ("2024-04-03", "deposit_account_opened"),
            ("2024-04-03", "posting"),
            ("2024-04-03", "posting"),
            ("2024-04-01", "posting"),
        ]
        assert items[1].refs["idempotency_key"] == "same-day-later"
        assert items[2].refs["idempotency_key"] == "same-day"

    def test_item_shape(self):
        item = self.timeline.get_timeline("alice", event_type="posting").items[-1].to_dict()

        assert item["customer_id"] == "alice"
        assert item["date"] == "2024-04-01"
        assert item["type"] == "posting"
        assert item["amounts"] == {"debits_cents": 100, "credits_cents": 100, "currency": "USD"}
        assert item["refs"]["idempotency_key"] == "early"

    def test_date_filters_are_inclusive(self):
        page = self.timeline.get_timeline("alice", from_date="2024-04-03", to_date="2024-04-03")

        assert page.pagination.total == 3
        assert page.filters == {"from": "2024-04-03", "to": "2024-04-03", "type": None}

        assert self.timeline.get_timeline("alice", to_date="2024-04-02").pagination.total == 1

    def test_type_filter(self):
        page = self.timeline.get_timeline("alice", event_type="deposit_account_opened")

        assert page.pagination.total == 1
        assert page.items[0].refs["entity_id"] == str(self.deposit.id)

    def test_loan_activity_appears(self):
        line = self.system.credit_manager.create_line_of_credit("alice", 100000)
        self.system.loan_manager.create_term_loan(
            "alice", line.account_number, 50000, 100, 3, self.deposit.id, "loan"
        )

        types = {item.type for item in self.timeline.get_timeline("alice", limit=100).items}
        assert {"credit_line_created", "loan_originated", "loan_disbursal"} <= types
