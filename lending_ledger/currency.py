"""
Currency Codes Module

ISO 4217 codes and their minor-unit precision. Ledger amounts are always
integer minor units (cents); Decimal is only used for display.
"""

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import re

from .errors import InvalidRequest


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)
    INR = ("INR", 2)
    KWD = ("KWD", 3)
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


def normalize_currency(code: str) -> str:
    """Validate and upper-case a 3-letter ISO currency code"""
    if not isinstance(code, str):
        raise InvalidRequest("Currency must be a 3-letter ISO code")
    normalized = code.strip().upper()
    if not _CURRENCY_CODE.match(normalized):
        raise InvalidRequest(f"Invalid currency code: {code!r}")
    return normalized


def currency_precision(code: str) -> int:
    """Minor-unit digits for a code; unknown codes default to 2"""
    for currency in Currency:
        if currency.code == code:
            return currency.precision
    return 2


def to_major_units(amount_minor: int, code: str) -> Decimal:
    """Convert integer minor units to a Decimal in major units"""
    precision = currency_precision(code)
    quantum = Decimal(1).scaleb(-precision)
    return (Decimal(amount_minor) / (Decimal(10) ** precision)).quantize(quantum, rounding=ROUND_HALF_UP)
