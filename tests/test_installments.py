"""
Tests for Installment Module

Schedule generation, due-date arithmetic, display status derivation and
persisting Overdue for past-due installments.
"""

import pytest
from datetime import date
from decimal import Decimal

from loan_servicing.currency import Money, Currency
from loan_servicing.installments import (
    InstallmentStatus, RepaymentCycle, add_months, derive_installment_status,
    generate_installment_schedule
)
from loan_servicing.exceptions import ValidationError


def kes(amount: str) -> Money:
    return Money(Decimal(amount), Currency.KES)


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple(self):
        assert add_months(date(2026, 1, 15), 1) == date(2026, 2, 15)

    def test_year_rollover(self):
        assert add_months(date(2026, 12, 5), 1) == date(2027, 1, 5)

    def test_clamps_to_month_end(self):
        assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)


class TestScheduleGeneration:
    """Test generate_installment_schedule"""

    def test_monthly_schedule(self):
        schedule = generate_installment_schedule(
            principal=kes("3000"),
            total_payable=kes("3300"),
            duration=3,
            cycle=RepaymentCycle.MONTHLY,
            disbursement_date=date(2026, 1, 10)
        )

        assert [e.installment_number for e in schedule] == [1, 2, 3]
        assert [e.due_date for e in schedule] == [
            date(2026, 2, 10), date(2026, 3, 10), date(2026, 4, 10)
        ]
        assert all(e.expected_amount == kes("1100") for e in schedule)

    def test_twelve_month_schedule(self):
        schedule = generate_installment_schedule(
            principal=kes("1000"),
            total_payable=kes("1200"),
            duration=12,
            cycle=RepaymentCycle.MONTHLY,
            disbursement_date=date(2024, 1, 15)
        )

        assert len(schedule) == 12
        assert all(e.expected_amount == kes("100") for e in schedule)
        assert schedule[0].due_date == date(2024, 2, 15)
        assert schedule[10].due_date == date(2024, 12, 15)
        assert schedule[-1].due_date == date(2025, 1, 15)

    def test_weekly_schedule(self):
        schedule = generate_installment_schedule(
            principal=kes("1000"),
            total_payable=kes("1200"),
            duration=4,
            cycle=RepaymentCycle.WEEKLY,
            disbursement_date=date(2026, 3, 2)
        )

        assert [e.due_date for e in schedule] == [
            date(2026, 3, 9), date(2026, 3, 16), date(2026, 3, 23), date(2026, 3, 30)
        ]
        assert all(e.expected_amount == kes("300") for e in schedule)

    def test_month_end_drift_is_repeated_addition(self):
        """Each due date is one month after the previous due date"""
        schedule = generate_installment_schedule(
            principal=kes("300"),
            total_payable=kes("300"),
            duration=3,
            cycle=RepaymentCycle.MONTHLY,
            disbursement_date=date(2026, 1, 31)
        )

        assert [e.due_date for e in schedule] == [
            date(2026, 2, 28), date(2026, 3, 28), date(2026, 4, 28)
        ]

    def test_due_dates_strictly_increase(self):
        schedule = generate_installment_schedule(
            principal=kes("10000"),
            total_payable=kes("12000"),
            duration=12,
            cycle=RepaymentCycle.MONTHLY,
            disbursement_date=date(2026, 8, 31)
        )
        due_dates = [e.due_date for e in schedule]
        assert all(a < b for a, b in zip(due_dates, due_dates[1:]))
        assert len(schedule) == 12

    def test_rounding_residual_is_not_redistributed(self):
        """100 over 3 installments is 33.33 each; the 0.01 residual stays unscheduled"""
        schedule = generate_installment_schedule(
            principal=kes("100"),
            total_payable=kes("100"),
            duration=3,
            cycle=RepaymentCycle.MONTHLY,
            disbursement_date=date(2026, 1, 1)
        )

        assert all(e.expected_amount == kes("33.33") for e in schedule)
        total = sum((e.expected_amount.amount for e in schedule), Decimal("0"))
        assert Decimal("100") - total == Decimal("0.01")

    def test_zero_duration_rejected(self):
        with pytest.raises(ValidationError):
            generate_installment_schedule(
                kes("100"), kes("110"), 0, RepaymentCycle.MONTHLY, date(2026, 1, 1)
            )

    def test_total_below_principal_rejected(self):
        with pytest.raises(ValidationError):
            generate_installment_schedule(
                kes("100"), kes("90"), 2, RepaymentCycle.MONTHLY, date(2026, 1, 1)
            )


class TestStatusDerivation:
    """Test derive_installment_status"""

    today = date(2026, 6, 15)

    def test_paid(self):
        status = derive_installment_status(kes("100"), kes("100"), date(2026, 1, 1), self.today)
        assert status == InstallmentStatus.PAID

    def test_past_due_unsettled_is_overdue(self):
        assert derive_installment_status(
            kes("0"), kes("100"), date(2026, 6, 14), self.today
        ) == InstallmentStatus.OVERDUE
        assert derive_installment_status(
            kes("40"), kes("100"), date(2026, 6, 14), self.today
        ) == InstallmentStatus.OVERDUE

    def test_due_today_is_not_overdue(self):
        assert derive_installment_status(
            kes("0"), kes("100"), self.today, self.today
        ) == InstallmentStatus.UNPAID

    def test_partial(self):
        assert derive_installment_status(
            kes("40"), kes("100"), date(2026, 7, 1), self.today
        ) == InstallmentStatus.PARTIAL


class TestInstallmentManager:
    """Test installment persistence on a disbursed loan"""

    @pytest.mark.asyncio
    async def test_installments_stored_in_order(self, system, active_loan):
        _, loan, _ = active_loan

        installments = await system.installment_manager.get_installments(loan.id)

        assert [i.installment_number for i in installments] == [1, 2, 3]
        assert [i.id for i in installments] == [f"{loan.id}_{n}" for n in (1, 2, 3)]
        assert all(i.status == InstallmentStatus.UNPAID for i in installments)
        assert all(i.paid_amount.is_zero() for i in installments)
        assert await system.installment_manager.has_installments(loan.id)

    @pytest.mark.asyncio
    async def test_refresh_overdue(self, system, loan_factory):
        _, loan, installments = await loan_factory(disbursement_date=date(2026, 1, 10))
        # Due 2026-02-10, 2026-03-10, 2026-04-10; only the first two are past due
        await system.allocation_engine.apply_payment(
            loan_id=loan.id, borrower_id=loan.borrower_id, trans_id="TX-OVERDUE",
            amount=Decimal("1500")
        )

        updated = await system.installment_manager.refresh_overdue(loan.id, today=date(2026, 3, 20))

        assert updated == 1
        statuses = [i.status for i in await system.installment_manager.get_installments(loan.id)]
        assert statuses == [InstallmentStatus.PAID, InstallmentStatus.OVERDUE, InstallmentStatus.UNPAID]

    @pytest.mark.asyncio
    async def test_refresh_overdue_is_idempotent(self, system, loan_factory):
        _, loan, _ = await loan_factory(disbursement_date=date(2026, 1, 10))

        assert await system.installment_manager.refresh_overdue(loan.id, today=date(2026, 5, 1)) == 3
        assert await system.installment_manager.refresh_overdue(loan.id, today=date(2026, 5, 1)) == 0
