"""
Scheduler job triggers

Parameterless: each job runs for the system clock's current date and gates
itself on the day of month.
"""

from fastapi import APIRouter, Depends

from .auth import LedgerSystem, get_ledger_system


router = APIRouter()


@router.post("/mature-due")
def run_mature_due(system: LedgerSystem = Depends(get_ledger_system)):
    return system.scheduler.run_mature_due().to_dict()


@router.post("/aging-overdue")
def run_aging_overdue(system: LedgerSystem = Depends(get_ledger_system)):
    return system.scheduler.run_aging_overdue().to_dict()


@router.post("/accrue-interest")
def run_accrue_interest(system: LedgerSystem = Depends(get_ledger_system)):
    return system.scheduler.run_accrue_interest().to_dict()
