"""Loan selector tests: read-time overdue status, listings and statistics."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from treasury_kernel.models.loan import LoanStatus
from treasury_kernel.selectors.loan_selector import LoanSelector


@pytest.fixture
def selector(session, deterministic_clock):
    return LoanSelector(session, deterministic_clock)


@pytest.fixture
def active_loan(loan_engine, fund, project_a, project_b):
    fund(project_a, "3000")
    fund(project_b, "1000", "USD")
    receipt = loan_engine.issue_loan(
        project_a, project_b, Decimal("1200"), "ARS", date(2024, 6, 15), 3
    )
    loan_engine.activate_loan(receipt.loan_id)
    return receipt


class TestOverdue:
    def test_not_overdue_before_first_due_date(self, selector, active_loan):
        loan = selector.get_loan(active_loan.loan_id)
        assert loan.status is LoanStatus.ACTIVE
        assert not any(i.is_overdue for i in loan.installments)
        assert selector.overdue_installments() == []

    def test_open_installment_past_due(self, selector, active_loan, deterministic_clock):
        deterministic_clock.advance_days(32)
        loan = selector.get_loan(active_loan.loan_id)
        assert loan.status is LoanStatus.OVERDUE
        assert loan.stored_status is LoanStatus.ACTIVE
        assert [i.is_overdue for i in loan.installments] == [True, False, False]
        assert [i.number for i in selector.overdue_installments()] == [1]

    def test_paying_overdue_installment_clears_status(
        self, selector, active_loan, loan_engine, deterministic_clock
    ):
        deterministic_clock.advance_days(32)
        first = selector.get_loan(active_loan.loan_id).installments[0]
        loan_engine.register_installment_payment(first.id, Decimal("400"))
        assert selector.get_loan(active_loan.loan_id).status is LoanStatus.ACTIVE

    def test_final_due_date_passed(self, selector, active_loan, deterministic_clock):
        deterministic_clock.advance_days(100)
        assert selector.get_loan(active_loan.loan_id).status is LoanStatus.OVERDUE
        assert len(selector.overdue_installments()) == 3

    def test_pending_loan_is_never_overdue(self, selector, loan_engine, fund, project_a, project_b,
                                           deterministic_clock):
        fund(project_a, "100")
        receipt = loan_engine.issue_loan(
            project_a, project_b, Decimal("100"), "ARS", date(2024, 4, 1), 1
        )
        deterministic_clock.advance_days(60)
        assert selector.get_loan(receipt.loan_id).status is LoanStatus.PENDING


class TestListings:
    def test_lookup(self, selector, active_loan):
        assert selector.get_loan_by_code(active_loan.code).id == active_loan.loan_id
        assert selector.get_loan(uuid4()) is None
        assert selector.get_installment(uuid4()) is None

    def test_filters(self, selector, active_loan, loan_engine, project_a, project_b,
                     deterministic_clock):
        deterministic_clock.advance_days(1)
        usd = loan_engine.issue_loan(
            project_b, project_a, Decimal("100"), "USD", date(2024, 9, 1), 2, as_draft=True
        )

        assert [loan.id for loan in selector.list_loans()] == [usd.loan_id, active_loan.loan_id]
        assert [loan.id for loan in selector.list_loans(status="draft")] == [usd.loan_id]
        assert [loan.id for loan in selector.list_loans(lender_project_id=project_a)] == [
            active_loan.loan_id
        ]
        assert len(selector.loans_of_project(project_a)) == 2

    def test_statistics(self, selector, active_loan, loan_engine, project_a, project_b):
        first = selector.get_loan(active_loan.loan_id).installments[0]
        loan_engine.register_installment_payment(first.id, Decimal("400"))
        loan_engine.issue_loan(
            project_b, project_a, Decimal("100"), "USD", date(2024, 9, 1), 2, as_draft=True
        )

        stats = selector.statistics()
        assert stats.total_active == 1
        assert stats.total_overdue == 0
        assert stats.total_paid == 0
        assert stats.total_lent_ars == Decimal("1200")
        # Drafts were never disbursed
        assert stats.total_lent_usd == 0
        assert stats.total_outstanding_ars == Decimal("800")
        assert stats.total_outstanding_usd == 0
