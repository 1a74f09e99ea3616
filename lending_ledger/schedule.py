"""
Loan Schedule Generator

Reducing-balance (equal installment) amortization in integer cents. The
monthly payment is rounded once and held constant; each period's interest is
charged on the remaining principal, and the final installment absorbs the
rounding drift so the loan amortizes to exactly zero.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List

from .errors import InvalidRequest


DEFAULT_DUE_DAY = 28


@dataclass(frozen=True)
class ScheduleEntry:
    """One computed installment"""
    installment_number: int
    due_date: date
    principal_due_cents: int
    interest_due_cents: int
    remaining_balance_cents: int

    @property
    def total_due_cents(self) -> int:
        return self.principal_due_cents + self.interest_due_cents

    def to_dict(self) -> Dict:
        return {
            "installment_number": self.installment_number,
            "due_date": self.due_date.isoformat(),
            "principal_due_cents": self.principal_due_cents,
            "interest_due_cents": self.interest_due_cents,
            "remaining_balance_cents": self.remaining_balance_cents
        }


def round_cents(value: Decimal) -> int:
    """Round a Decimal amount of cents half-up to a whole cent"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def monthly_rate(monthly_rate_bps: int) -> Decimal:
    return Decimal(monthly_rate_bps) / Decimal(10000)


def calculate_monthly_payment(principal_cents: int, monthly_rate_bps: int, tenure_months: int) -> int:
    """
    Level payment P*r*(1+r)^n / ((1+r)^n - 1), or P/n when r is zero,
    rounded half-up to the cent.
    """
    rate = monthly_rate(monthly_rate_bps)
    principal = Decimal(principal_cents)
    if rate == 0:
        return round_cents(principal / tenure_months)
    growth = (1 + rate) ** tenure_months
    return round_cents(principal * rate * growth / (growth - 1))


def add_months(start: date, months: int, day: int = None) -> date:
    """Advance a date by whole months, pinning to `day` (clamped to month length)"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    target_day = day if day is not None else start.day
    return date(year, month, min(target_day, calendar.monthrange(year, month)[1]))


def _validate(principal_cents: int, monthly_rate_bps: int, tenure_months: int) -> None:
    for name, value in (("principal_cents", principal_cents),
                        ("monthly_rate_bps", monthly_rate_bps),
                        ("tenure_months", tenure_months)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidRequest(f"{name} must be an integer")
    if principal_cents <= 0:
        raise InvalidRequest("principal_cents must be positive")
    if monthly_rate_bps < 0:
        raise InvalidRequest("monthly_rate_bps cannot be negative")
    if tenure_months <= 0:
        raise InvalidRequest("tenure_months must be positive")


def generate_schedule(
    principal_cents: int,
    monthly_rate_bps: int,
    tenure_months: int,
    start_date: date,
    due_day: int = DEFAULT_DUE_DAY
) -> List[ScheduleEntry]:
    """
    Build the amortization schedule for a term loan.

    Installment i falls due i months after start_date on day `due_day`.

    Args:
        principal_cents: Amount disbursed
        monthly_rate_bps: Monthly interest rate in basis points (100 = 1%)
        tenure_months: Number of monthly installments
        start_date: Loan start date
        due_day: Day of month installments fall due

    Returns:
        tenure_months entries; principal sums to principal_cents exactly and
        the last entry's remaining balance is zero
    """
    _validate(principal_cents, monthly_rate_bps, tenure_months)

    rate = monthly_rate(monthly_rate_bps)
    payment = calculate_monthly_payment(principal_cents, monthly_rate_bps, tenure_months)

    schedule = []
    remaining = principal_cents
    for number in range(1, tenure_months + 1):
        interest = round_cents(Decimal(remaining) * rate)
        if number == tenure_months:
            principal = remaining
        else:
            principal = min(max(payment - interest, 0), remaining)
        remaining -= principal

        schedule.append(ScheduleEntry(
            installment_number=number,
            due_date=add_months(start_date, number, due_day),
            principal_due_cents=principal,
            interest_due_cents=interest,
            remaining_balance_cents=remaining
        ))

    return schedule


def summarize_schedule(schedule: List[ScheduleEntry]) -> Dict[str, int]:
    """Totals over a schedule"""
    total_principal = sum(e.principal_due_cents for e in schedule)
    total_interest = sum(e.interest_due_cents for e in schedule)
    return {
        "installments": len(schedule),
        "total_principal_cents": total_principal,
        "total_interest_cents": total_interest,
        "total_payable_cents": total_principal + total_interest
    }
