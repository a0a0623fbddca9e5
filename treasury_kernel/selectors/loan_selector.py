"""
Module: treasury_kernel.selectors.loan_selector
Responsibility: Read-only loan queries with the read-time overdue status.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/.

Invariants enforced:
    - ``overdue`` is derived here from the clock, never read from storage.
    - Returns frozen DTOs.

Failure modes:
    - get_loan/get_installment return None for unknown ids.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury_kernel.db.types import ARS, USD
from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.loan_schedule import (
    OPEN_INSTALLMENT_STATUSES,
    effective_status,
    installment_is_overdue,
)
from treasury_kernel.models.loan import InstallmentStatus, Loan, LoanInstallment, LoanStatus
from treasury_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")

# Statuses in which money is owed to the lender
_OWING_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.ACTIVE, LoanStatus.OVERDUE})


@dataclass(frozen=True)
class InstallmentDTO:
    id: UUID
    loan_id: UUID
    number: int
    amount: Decimal
    interest_amount: Decimal
    late_fee_amount: Decimal
    amount_due: Decimal
    paid_amount: Decimal
    principal_paid: Decimal
    interest_paid: Decimal
    late_fee_paid: Decimal
    remaining_due: Decimal
    due_date: date
    status: InstallmentStatus
    is_overdue: bool
    paid_date: date | None


@dataclass(frozen=True)
class LoanDTO:
    id: UUID
    code: str
    lender_project_id: UUID
    borrower_project_id: UUID
    principal: Decimal
    currency: str
    interest_rate: Decimal
    stored_status: LoanStatus
    status: LoanStatus
    outstanding_balance: Decimal
    total_paid: Decimal
    due_date: date
    installment_count: int
    description: str | None
    created_at: datetime
    activated_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    installments: tuple[InstallmentDTO, ...]


@dataclass(frozen=True)
class LoanStatistics:
    total_active: int
    total_overdue: int
    total_paid: int
    total_lent_ars: Decimal
    total_lent_usd: Decimal
    total_outstanding_ars: Decimal
    total_outstanding_usd: Decimal


class LoanSelector(BaseSelector[Loan]):
    """
    Loan queries.

    ``status`` on every LoanDTO is the status as of ``clock.today()``;
    ``stored_status`` is what the row holds.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def _installment_dto(self, installment: LoanInstallment, today: date) -> InstallmentDTO:
        return InstallmentDTO(
            id=installment.id,
            loan_id=installment.loan_id,
            number=installment.number,
            amount=installment.amount,
            interest_amount=installment.interest_amount,
            late_fee_amount=installment.late_fee_amount,
            amount_due=installment.amount_due,
            paid_amount=installment.paid_amount,
            principal_paid=installment.principal_paid,
            interest_paid=installment.interest_paid,
            late_fee_paid=installment.late_fee_paid,
            remaining_due=installment.remaining_due,
            due_date=installment.due_date,
            status=InstallmentStatus(installment.status),
            is_overdue=installment_is_overdue(installment.status, installment.due_date, today),
            paid_date=installment.paid_date,
        )

    def _to_dto(self, loan: Loan, today: date) -> LoanDTO:
        return LoanDTO(
            id=loan.id,
            code=loan.code,
            lender_project_id=loan.lender_project_id,
            borrower_project_id=loan.borrower_project_id,
            principal=loan.principal,
            currency=loan.currency,
            interest_rate=loan.interest_rate,
            stored_status=LoanStatus(loan.status),
            status=effective_status(
                loan.status,
                loan.due_date,
                [(i.status, i.due_date) for i in loan.installments],
                today,
            ),
            outstanding_balance=loan.outstanding_balance,
            total_paid=loan.total_paid,
            due_date=loan.due_date,
            installment_count=loan.installment_count,
            description=loan.description,
            created_at=loan.created_at,
            activated_at=loan.activated_at,
            paid_at=loan.paid_at,
            cancelled_at=loan.cancelled_at,
            cancellation_reason=loan.cancellation_reason,
            installments=tuple(self._installment_dto(i, today) for i in loan.installments),
        )

    def get_loan(self, loan_id: UUID) -> LoanDTO | None:
        loan = self.session.get(Loan, loan_id)
        return self._to_dto(loan, self._clock.today()) if loan else None

    def get_loan_by_code(self, code: str) -> LoanDTO | None:
        loan = self.session.execute(select(Loan).where(Loan.code == code)).scalar_one_or_none()
        return self._to_dto(loan, self._clock.today()) if loan else None

    def get_installment(self, installment_id: UUID) -> InstallmentDTO | None:
        installment = self.session.get(LoanInstallment, installment_id)
        if installment is None:
            return None
        return self._installment_dto(installment, self._clock.today())

    def list_loans(
        self,
        status: LoanStatus | str | None = None,
        lender_project_id: UUID | None = None,
        borrower_project_id: UUID | None = None,
    ) -> list[LoanDTO]:
        """
        Loans, newest first.

        ``status`` filters on the effective status, so ``overdue`` works.
        """
        stmt = select(Loan).order_by(Loan.created_at.desc(), Loan.code.desc())
        if lender_project_id is not None:
            stmt = stmt.where(Loan.lender_project_id == lender_project_id)
        if borrower_project_id is not None:
            stmt = stmt.where(Loan.borrower_project_id == borrower_project_id)

        today = self._clock.today()
        loans = [self._to_dto(loan, today) for loan in self.session.execute(stmt).scalars()]
        if status is not None:
            wanted = LoanStatus(status)
            loans = [loan for loan in loans if loan.status is wanted]
        return loans

    def loans_of_project(self, project_id: UUID) -> list[LoanDTO]:
        """Loans where the project is lender or borrower."""
        lent = self.list_loans(lender_project_id=project_id)
        borrowed = self.list_loans(borrower_project_id=project_id)
        return sorted(lent + borrowed, key=lambda loan: loan.created_at, reverse=True)

    def overdue_installments(self) -> list[InstallmentDTO]:
        """Open installments of live loans past their due date, oldest first."""
        today = self._clock.today()
        stmt = (
            select(LoanInstallment)
            .join(Loan, Loan.id == LoanInstallment.loan_id)
            .where(LoanInstallment.status.in_([s.value for s in OPEN_INSTALLMENT_STATUSES]))
            .where(LoanInstallment.due_date < today)
            .where(Loan.status.in_([LoanStatus.PENDING.value, LoanStatus.ACTIVE.value]))
            .order_by(LoanInstallment.due_date, LoanInstallment.number)
        )
        return [self._installment_dto(i, today) for i in self.session.execute(stmt).scalars()]

    def statistics(self) -> LoanStatistics:
        """
        Portfolio figures.

        Lent totals count disbursed loans; outstanding totals count loans
        still owing (pending, active, overdue).
        """
        loans = self.list_loans()
        counts = {s: 0 for s in LoanStatus}
        lent = {ARS: _ZERO, USD: _ZERO}
        outstanding = {ARS: _ZERO, USD: _ZERO}
        disbursed = set(
            self.session.execute(
                select(Loan.id).where(Loan.disbursement_operation_id.is_not(None))
            ).scalars()
        )
        for loan in loans:
            counts[loan.status] += 1
            if loan.id in disbursed:
                lent[loan.currency] += loan.principal
            if loan.status in _OWING_STATUSES:
                outstanding[loan.currency] += loan.outstanding_balance

        return LoanStatistics(
            total_active=counts[LoanStatus.ACTIVE],
            total_overdue=counts[LoanStatus.OVERDUE],
            total_paid=counts[LoanStatus.PAID],
            total_lent_ars=lent[ARS],
            total_lent_usd=lent[USD],
            total_outstanding_ars=outstanding[ARS],
            total_outstanding_usd=outstanding[USD],
        )
