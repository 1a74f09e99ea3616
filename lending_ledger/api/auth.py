"""
System container and request identity dependencies
"""

from typing import Optional

from fastapi import Header

from ..storage import StorageInterface, create_storage
from ..clock import Clock, SystemClock
from ..audit import AuditTrail
from ..accounts import AccountRegistry, AccountNumberGenerator
from ..ledger import GeneralLedger, is_system_initiator
from ..deposits import DepositManager
from ..credit import CreditLineManager
from ..loans import LoanManager
from ..scheduler import LoanLifecycleScheduler
from ..timeline import TimelineProjector
from ..config import get_config
from ..errors import AuthenticationRequired


class LedgerSystem:
    """Lending ledger with all components wired to one storage and clock"""

    def __init__(self, storage: Optional[StorageInterface] = None, clock: Optional[Clock] = None):
        config = get_config()
        self.storage = storage or create_storage(config.database_url)
        self.clock = clock or SystemClock()

        self.audit_trail = AuditTrail(self.storage, clock=self.clock, enabled=config.enable_audit_logging)
        self.registry = AccountRegistry(self.storage, self.audit_trail)
        self.ledger = GeneralLedger(self.storage, self.registry, self.audit_trail)
        self.number_generator = AccountNumberGenerator(self.storage, self.clock)

        self.deposit_manager = DepositManager(self.storage, self.registry, self.ledger, self.audit_trail)
        self.credit_manager = CreditLineManager(self.storage, self.audit_trail, self.number_generator)
        self.loan_manager = LoanManager(
            self.storage, self.registry, self.ledger, self.credit_manager,
            self.deposit_manager, self.audit_trail, self.number_generator,
            due_day=config.due_day_of_month
        )

        self.scheduler = LoanLifecycleScheduler(self.loan_manager, self.registry, self.ledger, self.audit_trail)
        self.timeline = TimelineProjector(self.ledger, self.audit_trail)

    def close(self) -> None:
        self.storage.close()


# Global ledger system instance, created on first use
ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem()
    return ledger_system


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, verified upstream and passed in the X-User-Id header"""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationRequired("Authentication required", "Missing X-User-Id header")
    user_id = x_user_id.strip()
    if is_system_initiator(user_id):
        raise AuthenticationRequired("Authentication required", "Reserved X-User-Id")
    return user_id
