"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Product openings, postings and every loan schedule transition are logged here.
"""

import hashlib
import json
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .clock import Clock, SystemClock
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Ledger events
    ACCOUNT_PROVISIONED = "account_provisioned"
    TRANSACTION_POSTED = "transaction_posted"

    # Product events
    DEPOSIT_ACCOUNT_OPENED = "deposit_account_opened"
    DEPOSIT_ACCOUNT_CLOSED = "deposit_account_closed"
    CREDIT_LINE_CREATED = "credit_line_created"

    # Loan events
    LOAN_ORIGINATED = "loan_originated"
    LOAN_DISBURSED = "loan_disbursed"
    SCHEDULE_ENTRIES_MATURED = "schedule_entries_matured"
    SCHEDULE_ENTRIES_OVERDUE = "schedule_entries_overdue"
    INTEREST_ACCRUED = "interest_accrued"
    LOAN_PAYMENT_MADE = "loan_payment_made"
    LOAN_PAID_OFF = "loan_paid_off"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str  # deposit_account, loan, ledger_transaction, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, (list, tuple)):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])

        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    Events are ordered by a storage sequence rather than by timestamp, and the
    chain head lives in storage, so an event logged inside a unit of work that
    is rolled back leaves no gap in the chain.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 table_name: str = "audit_events", enabled: bool = True):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: Any,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            head = self.storage.load(self.head_table, self.HEAD_ID) or {}
            sequence = self.storage.next_sequence(self.table_name)
            now = self.clock.now()

            event = AuditEvent(
                id=f"{sequence:012d}",
                created_at=now,
                updated_at=now,
                sequence=sequence,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_hash=head.get('hash', ""),
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                'sequence': sequence,
                'hash': event.current_hash
            })

        return event

    def _load_events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, filters or {})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: Any,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events for a specific entity, oldest first"""
        events = self._load_events({
            'entity_type': entity_type,
            'entity_id': str(entity_id)
        })
        if limit:
            events = events[-limit:]
        return events

    def get_events_for_user(self, user_id: str) -> List[AuditEvent]:
        """Get audit events initiated by a user, oldest first"""
        return self._load_events({'user_id': user_id})

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return self._load_events({'event_type': event_type.value})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
