"""Tests for installment schedules, payment allocation and overdue derivation."""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from treasury_kernel.domain.loan_schedule import (
    PaymentAllocation,
    allocate_payment,
    build_schedule,
    effective_status,
    installment_is_overdue,
    minimum_principal,
    months_before,
    outstanding_components,
)
from treasury_kernel.models.loan import LoanStatus


class TestMonthsBefore:
    def test_simple_shift(self):
        assert months_before(date(2025, 3, 15), 2) == date(2025, 1, 15)

    def test_crosses_year(self):
        assert months_before(date(2025, 2, 10), 3) == date(2024, 11, 10)

    def test_clamps_to_month_end(self):
        assert months_before(date(2025, 3, 31), 1) == date(2025, 2, 28)
        assert months_before(date(2024, 3, 31), 1) == date(2024, 2, 29)

    def test_zero_months(self):
        assert months_before(date(2025, 3, 31), 0) == date(2025, 3, 31)


class TestBuildSchedule:
    def test_even_split(self):
        schedule = build_schedule(Decimal("12000"), 12, date(2025, 3, 15))
        assert len(schedule) == 12
        assert all(item.amount == Decimal("1000.00") for item in schedule)
        assert [item.number for item in schedule] == list(range(1, 13))

    def test_due_dates_run_monthly_up_to_final_due_date(self):
        schedule = build_schedule(Decimal("12000"), 12, date(2025, 3, 15))
        assert schedule[-1].due_date == date(2025, 3, 15)
        assert schedule[0].due_date == date(2024, 4, 15)
        assert schedule[5].due_date == date(2024, 9, 15)

    def test_last_installment_absorbs_remainder(self):
        schedule = build_schedule(Decimal("100"), 3, date(2025, 1, 1))
        assert [item.amount for item in schedule] == [
            Decimal("33.33"),
            Decimal("33.33"),
            Decimal("33.34"),
        ]

    def test_no_interest_by_default(self):
        schedule = build_schedule(Decimal("1000"), 2, date(2025, 1, 1))
        assert all(item.interest_amount == 0 for item in schedule)

    def test_simple_interest_per_installment(self):
        schedule = build_schedule(Decimal("1000"), 2, date(2025, 1, 1), Decimal("5"))
        assert [item.interest_amount for item in schedule] == [Decimal("25.00"), Decimal("25.00")]

    def test_single_installment(self):
        schedule = build_schedule(Decimal("750.50"), 1, date(2025, 6, 30))
        assert len(schedule) == 1
        assert schedule[0].amount == Decimal("750.50")
        assert schedule[0].due_date == date(2025, 6, 30)

    def test_zero_installments_rejected(self):
        with pytest.raises(ValueError):
            build_schedule(Decimal("100"), 0, date(2025, 1, 1))

    @settings(max_examples=200, deadline=None)
    @given(
        principal=st.decimals(min_value=Decimal("0.01"), max_value=Decimal("10000000"), places=2),
        count=st.integers(min_value=1, max_value=360),
    )
    def test_installments_always_sum_to_principal(self, principal, count):
        assume(principal >= minimum_principal(count))
        schedule = build_schedule(principal, count, date(2040, 12, 31))
        assert sum(item.amount for item in schedule) == principal
        assert len(schedule) == count
        assert all(item.amount >= Decimal("0.01") for item in schedule)
        assert schedule[-1].amount >= schedule[0].amount

    def test_every_installment_gets_at_least_a_cent(self):
        schedule = build_schedule(Decimal("0.18"), 12, date(2025, 1, 1))
        assert [item.amount for item in schedule] == [Decimal("0.01")] * 11 + [Decimal("0.07")]

    @pytest.mark.parametrize("principal,count", [("0.05", 12), ("0.11", 12), ("0.01", 2)])
    def test_principal_below_a_cent_per_installment_rejected(self, principal, count):
        with pytest.raises(ValueError):
            build_schedule(Decimal(principal), count, date(2025, 1, 1))

    def test_minimum_principal(self):
        assert minimum_principal(12) == Decimal("0.12")
        assert minimum_principal(3, decimal_places=0) == Decimal("3")


class TestAllocatePayment:
    def test_order_is_late_fee_then_interest_then_principal(self):
        owed = PaymentAllocation(late_fee=Decimal("10"), interest=Decimal("20"), principal=Decimal("100"))
        allocation = allocate_payment(Decimal("25"), owed)
        assert allocation == PaymentAllocation(Decimal("10"), Decimal("15"), Decimal("0"))

    def test_full_payment(self):
        owed = PaymentAllocation(late_fee=Decimal("10"), interest=Decimal("20"), principal=Decimal("100"))
        allocation = allocate_payment(Decimal("130"), owed)
        assert allocation == owed

    def test_overpayment_rejected(self):
        owed = PaymentAllocation(late_fee=Decimal("0"), interest=Decimal("0"), principal=Decimal("100"))
        with pytest.raises(ValueError):
            allocate_payment(Decimal("100.01"), owed)

    @settings(max_examples=200, deadline=None)
    @given(
        late_fee=st.decimals(min_value=0, max_value=1000, places=2),
        interest=st.decimals(min_value=0, max_value=1000, places=2),
        principal=st.decimals(min_value=0, max_value=100000, places=2),
        fraction=st.decimals(min_value=0, max_value=1, places=4),
    )
    def test_allocation_never_exceeds_components(self, late_fee, interest, principal, fraction):
        owed = PaymentAllocation(late_fee, interest, principal)
        payment = (owed.total * fraction).quantize(Decimal("0.01"))
        if payment > owed.total:
            payment = owed.total
        allocation = allocate_payment(payment, owed)
        assert allocation.total == payment
        assert 0 <= allocation.late_fee <= late_fee
        assert 0 <= allocation.interest <= interest
        assert 0 <= allocation.principal <= principal


class TestOutstandingComponents:
    def test_nothing_paid(self):
        owed = outstanding_components(
            Decimal("100"), Decimal("5"), Decimal("2"), Decimal("0"), Decimal("0"), Decimal("0")
        )
        assert owed == PaymentAllocation(Decimal("2"), Decimal("5"), Decimal("100"))

    def test_partial_payment(self):
        # 10 paid: 2 fee, 5 interest, 3 principal
        owed = outstanding_components(
            Decimal("100"), Decimal("5"), Decimal("2"), Decimal("3"), Decimal("5"), Decimal("2")
        )
        assert owed == PaymentAllocation(Decimal("0"), Decimal("0"), Decimal("97"))

    def test_fee_assessed_after_interest_was_paid(self):
        # Interest of 5 paid in full, then a 4 fee was assessed
        owed = outstanding_components(
            Decimal("100"), Decimal("5"), Decimal("4"), Decimal("0"), Decimal("5"), Decimal("0")
        )
        assert owed == PaymentAllocation(Decimal("4"), Decimal("0"), Decimal("100"))
        assert allocate_payment(Decimal("6"), owed) == PaymentAllocation(
            Decimal("4"), Decimal("0"), Decimal("2")
        )


class TestOverdue:
    TODAY = date(2025, 5, 1)

    @pytest.mark.parametrize(
        "status,due,expected",
        [
            ("pending", date(2025, 4, 30), True),
            ("partial", date(2025, 4, 30), True),
            ("pending", date(2025, 5, 1), False),
            ("paid", date(2025, 1, 1), False),
            ("cancelled", date(2025, 1, 1), False),
        ],
    )
    def test_installment_is_overdue(self, status, due, expected):
        assert installment_is_overdue(status, due, self.TODAY) is expected

    def test_active_loan_with_late_installment_is_overdue(self):
        status = effective_status(
            "active",
            date(2025, 12, 1),
            [("paid", date(2025, 3, 1)), ("pending", date(2025, 4, 1))],
            self.TODAY,
        )
        assert status is LoanStatus.OVERDUE

    def test_active_loan_past_final_due_date_is_overdue(self):
        assert effective_status("active", date(2025, 4, 1), [], self.TODAY) is LoanStatus.OVERDUE

    def test_active_loan_on_schedule_stays_active(self):
        status = effective_status(
            "active",
            date(2025, 12, 1),
            [("paid", date(2025, 4, 1)), ("pending", date(2025, 6, 1))],
            self.TODAY,
        )
        assert status is LoanStatus.ACTIVE

    @pytest.mark.parametrize("stored", ["draft", "pending", "paid", "cancelled"])
    def test_only_active_loans_become_overdue(self, stored):
        status = effective_status(stored, date(2020, 1, 1), [("pending", date(2020, 1, 1))], self.TODAY)
        assert status is LoanStatus(stored)
