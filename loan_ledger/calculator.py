"""
Amortization Calculator Module

Pure simple-interest amortization: turns loan terms into a payment schedule
summary. Interest is charged on the original principal for every month of the
term (not compounded per period). Stored derived values keep full Decimal
precision; rounding to currency precision happens only when presenting.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Union
from enum import Enum
import calendar

from .currency import Currency, Number, round_amount, to_decimal
from .exceptions import ValidationError


class PaymentFrequency(Enum):
    """Payment frequency options"""
    WEEKLY = "weekly"        # 52 payments per year
    BIWEEKLY = "biweekly"    # 26 payments per year
    MONTHLY = "monthly"      # 12 payments per year

    @property
    def payments_per_month(self) -> Decimal:
        return {
            PaymentFrequency.WEEKLY: Decimal(52) / Decimal(12),
            PaymentFrequency.BIWEEKLY: Decimal(26) / Decimal(12),
            PaymentFrequency.MONTHLY: Decimal(1),
        }[self]

    @classmethod
    def parse(cls, value: Union['PaymentFrequency', str]) -> 'PaymentFrequency':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Unknown payment frequency '{value}'; expected one of "
                f"{', '.join(f.value for f in cls)}",
                field="payment_frequency"
            )


@dataclass(frozen=True)
class AmortizationSummary:
    """Result of an amortization computation (unrounded)"""
    payment_amount: Decimal
    total_interest: Decimal
    total_amount: Decimal
    total_payments: int

    def rounded(self, currency: Currency = Currency.DOP) -> Dict[str, object]:
        """Presentation view rounded to currency precision"""
        return {
            "payment_amount": round_amount(self.payment_amount, currency),
            "total_interest": round_amount(self.total_interest, currency),
            "total_amount": round_amount(self.total_amount, currency),
            "total_payments": self.total_payments,
        }


@dataclass(frozen=True)
class ScheduledInstallment:
    """One row of the repayment plan"""
    number: int
    due_date: date
    amount: Decimal
    cumulative_due: Decimal


def _validated_principal(principal: Number) -> Decimal:
    try:
        value = to_decimal(principal)
    except ValueError as e:
        raise ValidationError(str(e), field="principal")
    if value <= 0:
        raise ValidationError(f"Principal must be positive, got {value}", field="principal")
    return value


def _validated_rate(interest_rate: Number) -> Decimal:
    try:
        value = to_decimal(interest_rate)
    except ValueError as e:
        raise ValidationError(str(e), field="interest_rate")
    if value < 0:
        raise ValidationError(f"Interest rate cannot be negative, got {value}", field="interest_rate")
    return value


def _validated_term(term_months: int) -> int:
    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise ValidationError(
            f"Term must be a whole number of months, got {term_months!r}", field="term_months"
        )
    if term_months <= 0:
        raise ValidationError(f"Term must be positive, got {term_months}", field="term_months")
    return term_months


def validate_terms(
    principal: Number,
    interest_rate: Number,
    term_months: int,
    frequency: Union[PaymentFrequency, str]
):
    """Validate and normalize loan terms, raising ValidationError on the first problem"""
    return (
        _validated_principal(principal),
        _validated_rate(interest_rate),
        _validated_term(term_months),
        PaymentFrequency.parse(frequency),
    )


def compute(
    principal: Number,
    interest_rate: Number,
    term_months: int,
    frequency: Union[PaymentFrequency, str]
) -> AmortizationSummary:
    """
    Compute the amortization summary for simple-interest loan terms.

    Args:
        principal: Amount lent, > 0
        interest_rate: Monthly interest rate as a percentage, >= 0 (10 means 10%)
        term_months: Loan term in whole months, > 0
        frequency: weekly, biweekly or monthly

    Returns:
        AmortizationSummary with unrounded Decimal values

    Raises:
        ValidationError: On invalid terms
    """
    principal, interest_rate, term_months, frequency = validate_terms(
        principal, interest_rate, term_months, frequency
    )

    rate = interest_rate / Decimal(100)
    total_interest = principal * rate * Decimal(term_months)
    total_amount = principal + total_interest

    exact_payments = Decimal(term_months) * frequency.payments_per_month
    total_payments = max(1, int(exact_payments.quantize(Decimal(1), rounding=ROUND_HALF_UP)))

    payment_amount = total_amount / Decimal(total_payments)

    return AmortizationSummary(
        payment_amount=payment_amount,
        total_interest=total_interest,
        total_amount=total_amount,
        total_payments=total_payments,
    )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for_period(start_date: date, frequency: Union[PaymentFrequency, str], periods: int) -> date:
    """Due date after `periods` whole intervals from the start date, computed from scratch"""
    frequency = PaymentFrequency.parse(frequency)
    periods = max(0, periods)
    if frequency == PaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * periods)
    if frequency == PaymentFrequency.BIWEEKLY:
        return start_date + timedelta(days=14 * periods)
    return add_months(start_date, periods)


def build_schedule(
    summary: AmortizationSummary,
    start_date: date,
    frequency: Union[PaymentFrequency, str]
) -> List[ScheduledInstallment]:
    """Equal-installment repayment plan; the first installment is due on the start date"""
    frequency = PaymentFrequency.parse(frequency)
    schedule = []
    for number in range(1, summary.total_payments + 1):
        if number == summary.total_payments:
            cumulative = summary.total_amount
        else:
            cumulative = summary.payment_amount * number
        schedule.append(ScheduledInstallment(
            number=number,
            due_date=due_date_for_period(start_date, frequency, number - 1),
            amount=summary.payment_amount,
            cumulative_due=cumulative,
        ))
    return schedule
