"""
History/Timeline Projector

Read-only, per-customer chronological feed derived from posted ledger
transactions and product audit events. Never authoritative and never writes.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .errors import InvalidQuery
from .ledger import GeneralLedger, LedgerTransaction


# Audit events that surface on a customer's timeline; postings come from the ledger itself
PRODUCT_EVENT_TYPES = {
    AuditEventType.DEPOSIT_ACCOUNT_OPENED,
    AuditEventType.DEPOSIT_ACCOUNT_CLOSED,
    AuditEventType.CREDIT_LINE_CREATED,
    AuditEventType.LOAN_ORIGINATED,
    AuditEventType.LOAN_PAID_OFF,
}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class TimelineItem:
    customer_id: str
    date: date
    type: str
    occurred_at: datetime
    amounts: Dict[str, Any] = field(default_factory=dict)
    refs: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "date": self.date.isoformat(),
            "type": self.type,
            "amounts": self.amounts,
            "refs": self.refs
        }


@dataclass
class Pagination:
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_prev": self.has_prev
        }


@dataclass
class TimelinePage:
    items: List[TimelineItem]
    pagination: Pagination
    filters: Dict[str, Optional[str]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "pagination": self.pagination.to_dict(),
            "filters": self.filters
        }


def parse_query_date(value: Optional[str], name: str) -> Optional[date]:
    """Strict YYYY-MM-DD parsing"""
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise InvalidQuery(f"Invalid '{name}' date format. Use ISO date (YYYY-MM-DD)")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidQuery(f"Invalid '{name}' date format. Use ISO date (YYYY-MM-DD)")


def normalize_page(page: Any) -> int:
    if page is None:
        return 1
    if isinstance(page, bool) or not isinstance(page, int):
        raise InvalidQuery("Page number must be an integer")
    if page < 1:
        raise InvalidQuery("Page number must be 1 or greater")
    return page


def clamp_limit(limit: Any, default: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Clamp a page size into [1, maximum]; None means the default"""
    config = get_config()
    default = default or config.default_page_limit
    maximum = maximum or config.max_page_limit
    if limit is None:
        return min(default, maximum)
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidQuery("Limit must be an integer")
    return max(1, min(limit, maximum))


class TimelineProjector:
    """
    Builds paginated customer timelines
    """

    def __init__(self, ledger: GeneralLedger, audit_trail: AuditTrail):
        self.ledger = ledger
        self.audit_trail = audit_trail

    def get_timeline(
        self,
        customer_id: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        event_type: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None
    ) -> TimelinePage:
        """
        Get one page of a customer's timeline

        Args:
            customer_id: Verified user id
            from_date: Inclusive lower bound, YYYY-MM-DD
            to_date: Inclusive upper bound, YYYY-MM-DD
            event_type: Only items of this type
            page: 1-based page number
            limit: Page size, clamped to [1, 100]; default 50

        Returns:
            TimelinePage ordered by date descending, then type ascending
        """
        start = parse_query_date(from_date, "from")
        end = parse_query_date(to_date, "to")
        if start and end and start > end:
            raise InvalidQuery("'from' date must not be after 'to' date")
        page = normalize_page(page)
        limit = clamp_limit(limit)

        items = [
            item for item in self._collect(customer_id)
            if (start is None or item.date >= start)
            and (end is None or item.date <= end)
            and (not event_type or item.type == event_type)
        ]

        # Stable sorts: newest first, then type ascending, then date descending
        items.sort(key=lambda i: i.occurred_at, reverse=True)
        items.sort(key=lambda i: i.type)
        items.sort(key=lambda i: i.date, reverse=True)

        pagination = Pagination(page=page, limit=limit, total=len(items))
        return TimelinePage(
            items=items[pagination.offset:pagination.offset + limit],
            pagination=pagination,
            filters={"from": from_date, "to": to_date, "type": event_type}
        )

    def _collect(self, customer_id: str) -> List[TimelineItem]:
        items = [
            self._transaction_item(customer_id, txn)
            for txn in self.ledger.get_transactions_for_customer(customer_id)
        ]
        for event in self.audit_trail.get_events_for_user(customer_id):
            if event.event_type not in PRODUCT_EVENT_TYPES:
                continue
            items.append(TimelineItem(
                customer_id=customer_id,
                date=event.created_at.date(),
                type=event.event_type.value,
                occurred_at=event.created_at,
                amounts={k: v for k, v in event.metadata.items() if k.endswith("_cents")},
                refs={
                    "event_id": event.id,
                    "entity_type": event.entity_type,
                    "entity_id": event.entity_id
                }
            ))
        return items

    @staticmethod
    def _transaction_item(customer_id: str, txn: LedgerTransaction) -> TimelineItem:
        refs: Dict[str, Any] = {"txn_id": txn.id, "idempotency_key": txn.idempotency_key}
        for key in ("loan_id", "from_account_id", "to_account_id"):
            if key in txn.metadata:
                refs[key] = txn.metadata[key]
        return TimelineItem(
            customer_id=customer_id,
            date=txn.posted_at.date(),
            type=txn.kind,
            occurred_at=txn.posted_at,
            amounts={
                "debits_cents": txn.debits_cents,
                "credits_cents": txn.credits_cents,
                "currency": txn.currency
            },
            refs=refs
        )
