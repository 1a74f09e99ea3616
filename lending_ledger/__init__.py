"""
Lending Ledger

A double-entry ledger engine with balanced, idempotent postings,
auto-provisioned accounts for deposit and lending products, and a
scheduled loan-lifecycle state machine (PENDING -> DUE -> OVERDUE -> PAID).
"""

__version__ = "1.0.0"
