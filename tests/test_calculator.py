"""
Test suite for the amortization calculator

Simple-interest totals, payment counts per frequency, validation of terms,
due date arithmetic and the installment plan. All math is Decimal.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.calculator import (
    PaymentFrequency, AmortizationSummary, compute, add_months,
    due_date_for_period, build_schedule, validate_terms
)
from loan_ledger.currency import Currency, round_amount
from loan_ledger.exceptions import ValidationError


class TestCompute:
    """Test compute()"""

    def test_reference_monthly_loan(self):
        """1000 at 10% monthly for 12 months, paid monthly"""
        summary = compute(Decimal('1000'), Decimal('10'), 12, PaymentFrequency.MONTHLY)

        assert summary.total_interest == Decimal('1200')
        assert summary.total_amount == Decimal('2200')
        assert summary.total_payments == 12
        assert round_amount(summary.payment_amount) == Decimal('183.33')

    def test_total_is_principal_plus_interest(self):
        """total_amount == principal + total_interest for a spread of terms"""
        cases = [
            ('1000', '10', 12, 'monthly'),
            ('2500.50', '3.5', 7, 'weekly'),
            ('750', '0', 3, 'biweekly'),
            ('15000', '1.25', 36, 'monthly'),
            ('1', '100', 1, 'weekly'),
        ]
        for principal, rate, term, frequency in cases:
            summary = compute(principal, rate, term, frequency)
            assert summary.total_amount == Decimal(principal) + summary.total_interest

    def test_installments_cover_total_within_rounding(self):
        """payment_amount * total_payments is within a cent of total_amount"""
        for frequency in PaymentFrequency:
            for term in (1, 2, 5, 12, 18):
                summary = compute('1234.56', '7', term, frequency)
                rounded_total = round_amount(summary.payment_amount) * summary.total_payments
                assert abs(rounded_total - summary.total_amount) <= Decimal('0.01') * summary.total_payments
                assert abs(summary.payment_amount * summary.total_payments - summary.total_amount) < Decimal('0.000001')

    def test_weekly_payment_count(self):
        """52/12 weekly payments per month, rounded half up"""
        assert compute('1000', '5', 12, 'weekly').total_payments == 52
        assert compute('1000', '5', 3, 'weekly').total_payments == 13
        assert compute('1000', '5', 1, 'weekly').total_payments == 4

    def test_biweekly_payment_count(self):
        """26/12 biweekly payments per month, rounded half up"""
        assert compute('1000', '5', 12, 'biweekly').total_payments == 26
        assert compute('1000', '5', 3, 'biweekly').total_payments == 7  # 6.5 rounds up
        assert compute('1000', '5', 1, 'biweekly').total_payments == 2

    def test_zero_interest(self):
        """A 0% loan costs exactly the principal"""
        summary = compute('500', '0', 1, 'monthly')
        assert summary.total_interest == Decimal('0')
        assert summary.total_amount == Decimal('500')
        assert summary.payment_amount == Decimal('500')

    def test_stored_values_are_unrounded(self):
        """The calculator never rounds; rounding is a presentation concern"""
        summary = compute('1000', '10', 12, 'monthly')
        assert summary.payment_amount != Decimal('183.33')
        assert abs(summary.payment_amount * 12 - Decimal('2200')) < Decimal('1e-20')

    def test_rounded_view(self):
        """rounded() returns currency-precision values"""
        view = compute('1000', '10', 12, 'monthly').rounded(Currency.DOP)
        assert view["payment_amount"] == Decimal('183.33')
        assert view["total_amount"] == Decimal('2200.00')
        assert view["total_payments"] == 12

    def test_summary_is_immutable(self):
        """AmortizationSummary is frozen"""
        summary = compute('1000', '10', 12, 'monthly')
        with pytest.raises(Exception):
            summary.total_amount = Decimal('1')
        assert isinstance(summary, AmortizationSummary)


class TestValidation:
    """Invalid terms are rejected with ValidationError"""

    @pytest.mark.parametrize("principal", ['0', '-100', 'abc'])
    def test_bad_principal(self, principal):
        with pytest.raises(ValidationError) as exc_info:
            compute(principal, '10', 12, 'monthly')
        assert exc_info.value.context["field"] == "principal"

    def test_negative_rate(self):
        with pytest.raises(ValidationError):
            compute('1000', '-1', 12, 'monthly')

    @pytest.mark.parametrize("term", [0, -3, 1.5, "12", True])
    def test_bad_term(self, term):
        with pytest.raises(ValidationError):
            compute('1000', '10', term, 'monthly')

    def test_unknown_frequency(self):
        with pytest.raises(ValidationError) as exc_info:
            compute('1000', '10', 12, 'daily')
        assert "daily" in exc_info.value.message

    def test_float_amounts_refused(self):
        """Binary floats are not accepted as money"""
        with pytest.raises(ValidationError):
            compute(1000.0, '10', 12, 'monthly')

    def test_frequency_parse_is_case_insensitive(self):
        assert PaymentFrequency.parse("Monthly") == PaymentFrequency.MONTHLY
        assert PaymentFrequency.parse(PaymentFrequency.WEEKLY) == PaymentFrequency.WEEKLY

    def test_validate_terms_normalizes(self):
        principal, rate, term, frequency = validate_terms(1000, '2.5', 6, 'biweekly')
        assert principal == Decimal('1000')
        assert rate == Decimal('2.5')
        assert term == 6
        assert frequency == PaymentFrequency.BIWEEKLY


class TestDueDates:
    """Due date arithmetic"""

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_due_date_per_frequency(self):
        start = date(2024, 1, 15)
        assert due_date_for_period(start, PaymentFrequency.WEEKLY, 1) == date(2024, 1, 22)
        assert due_date_for_period(start, PaymentFrequency.BIWEEKLY, 1) == date(2024, 1, 29)
        assert due_date_for_period(start, PaymentFrequency.MONTHLY, 1) == date(2024, 2, 15)

    def test_due_date_for_period(self):
        start = date(2024, 1, 31)
        assert due_date_for_period(start, 'monthly', 0) == start
        assert due_date_for_period(start, 'monthly', 1) == date(2024, 2, 29)
        assert due_date_for_period(start, 'monthly', 2) == date(2024, 3, 31)
        assert due_date_for_period(start, 'weekly', 3) == date(2024, 2, 21)
        assert due_date_for_period(start, 'biweekly', -1) == start


class TestSchedule:
    """Installment plan"""

    def test_monthly_schedule(self):
        summary = compute('1000', '10', 12, 'monthly')
        schedule = build_schedule(summary, date(2024, 1, 15), 'monthly')

        assert len(schedule) == 12
        assert schedule[0].number == 1
        assert schedule[0].due_date == date(2024, 1, 15)
        assert schedule[1].due_date == date(2024, 2, 15)
        assert schedule[-1].due_date == date(2024, 12, 15)
        assert schedule[-1].cumulative_due == summary.total_amount
        assert all(entry.amount == summary.payment_amount for entry in schedule)

    def test_weekly_schedule_length_matches_payments(self):
        summary = compute('500', '4', 3, 'weekly')
        schedule = build_schedule(summary, date(2024, 3, 1), 'weekly')
        assert len(schedule) == summary.total_payments
        assert schedule[-1].due_date == date(2024, 5, 24)
