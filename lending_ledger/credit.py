"""
Line of Credit Module

A line of credit caps how much principal its owner may draw as term loans.
Only the limit is stored; exposure is derived from outstanding loan
principal by the loan manager.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional

from .accounts import AccountNumberGenerator, is_valid_account_number
from .audit import AuditTrail, AuditEventType
from .currency import normalize_currency
from .errors import InvalidAmount, InvalidRequest, ProductNotFound
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


@dataclass
class LineOfCredit(StorageRecord):
    owner_id: str
    account_number: str
    currency: str
    credit_limit_cents: int

    @classmethod
    def from_dict(cls, data: Dict) -> 'LineOfCredit':
        return cls(
            id=int(data['id']),
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            account_number=data['account_number'],
            currency=data['currency'],
            credit_limit_cents=data['credit_limit_cents']
        )


class CreditLineManager:
    """
    Creates and looks up lines of credit
    """

    ACCOUNT_PREFIX = "LOC"

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 number_generator: AccountNumberGenerator):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = audit_trail.clock
        self.number_generator = number_generator
        self.lines_table = "lines_of_credit"
        self.numbers_index = "lines_of_credit_by_number"
        self.logger = get_logger("lending_ledger.credit")

    def create_line_of_credit(self, owner_id: str, credit_limit_cents: int,
                              currency: str = "USD") -> LineOfCredit:
        """
        Open a line of credit with a generated LOC- account number

        Args:
            owner_id: Verified user id
            credit_limit_cents: Maximum total outstanding principal
            currency: ISO currency code

        Returns:
            The new LineOfCredit
        """
        if not owner_id:
            raise InvalidRequest("owner_id is required")
        if isinstance(credit_limit_cents, bool) or not isinstance(credit_limit_cents, int):
            raise InvalidAmount("credit_limit_cents must be an integer")
        if credit_limit_cents <= 0:
            raise InvalidAmount("credit_limit_cents must be positive")
        currency = normalize_currency(currency)

        with self.storage.atomic():
            loc_id = self.storage.next_sequence(self.lines_table)
            account_number = self.number_generator.generate(self.ACCOUNT_PREFIX, "line_of_credit", loc_id)
            now = self.clock.now()
            line = LineOfCredit(
                id=loc_id,
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                account_number=account_number,
                currency=currency,
                credit_limit_cents=credit_limit_cents
            )
            self.storage.insert(self.lines_table, str(loc_id), line.to_dict())
            self.storage.insert(self.numbers_index, account_number, {'loc_id': loc_id})

            self.audit_trail.log_event(
                event_type=AuditEventType.CREDIT_LINE_CREATED,
                entity_type="line_of_credit",
                entity_id=loc_id,
                metadata={
                    "account_number": account_number,
                    "currency": currency,
                    "credit_limit_cents": credit_limit_cents
                },
                user_id=owner_id
            )

        log_action(
            self.logger, "info", f"Line of credit {account_number} created",
            user_id=owner_id, action="create_line_of_credit",
            resource=f"line_of_credit:{loc_id}",
            extra={"credit_limit_cents": credit_limit_cents, "currency": currency}
        )
        return line

    def get_line(self, loc_id: int) -> Optional[LineOfCredit]:
        data = self.storage.load(self.lines_table, str(loc_id))
        if data:
            return LineOfCredit.from_dict(data)
        return None

    def get_line_by_number(self, account_number: str) -> Optional[LineOfCredit]:
        if not account_number or not is_valid_account_number(account_number):
            return None
        index = self.storage.load(self.numbers_index, account_number)
        if index is None:
            return None
        return self.get_line(index['loc_id'])

    def get_owned_line(self, owner_id: str, account_number: str) -> LineOfCredit:
        """Line of credit by number, visible only to its owner"""
        line = self.get_line_by_number(account_number)
        if line is None or line.owner_id != owner_id:
            raise ProductNotFound("Line of Credit not found or access denied")
        return line

    def get_lines_for_owner(self, owner_id: str) -> List[LineOfCredit]:
        lines = [
            LineOfCredit.from_dict(data)
            for data in self.storage.find(self.lines_table, {'owner_id': owner_id})
        ]
        lines.sort(key=lambda l: l.id)
        return lines
