"""
Currency Precision Module

Single-currency support: ISO 4217 codes with their minor-unit precision and
helpers to parse amounts and round them at presentation boundaries.
Stored ledger values are never rounded. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

Number = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    DOP = ("DOP", 2)  # Dominican Peso
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    MXN = ("MXN", 2)  # Mexican Peso
    COP = ("COP", 2)  # Colombian Peso
    JPY = ("JPY", 0)  # Japanese Yen

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code}")


def to_decimal(value: Number) -> Decimal:
    """
    Convert an int, str or Decimal into a finite Decimal.

    Floats are refused: binary fractions are not acceptable for money.

    Raises:
        ValueError: If the value cannot be represented as a finite Decimal
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary values must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Monetary value must be finite, got {value}")
    return result


def round_amount(value: Decimal, currency: Currency = Currency.DOP) -> Decimal:
    """Round to currency precision (presentation boundary only)"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal, currency: Currency = Currency.DOP) -> str:
    """Format for display, e.g. 'DOP 2,016.67'"""
    rounded = round_amount(value, currency)
    if currency.precision == 0:
        return f"{currency.code} {rounded:,.0f}"
    return f"{currency.code} {rounded:,.{currency.precision}f}"


def round_percentage(value: Decimal) -> Decimal:
    """Round a percentage to two places for display"""
    return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
