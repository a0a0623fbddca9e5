"""
Module: treasury_kernel.models.loan
Responsibility: ORM persistence for inter-project loans and their installment
    schedules.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Loan code uniqueness (UNIQUE code, allocated from a locked counter).
    - (loan_id, number) uniqueness for installments.
    - outstanding_balance == principal - sum(installment.principal_paid),
      maintained by LoanEngine and checked by BalanceAuditor.

Note:
    ``overdue`` is never stored.  It is derived at read time from the stored
    status, the due dates and the clock (see LoanSelector).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from treasury_kernel.db.base import TrackedBase, UUIDString
from treasury_kernel.db.types import MoneyAmount


class LoanStatus(str, Enum):
    """Lifecycle status of a loan.

    draft -> pending -> active -> paid
    draft/pending -> cancelled
    active -> overdue is derived, never stored.
    """

    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InstallmentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"


class Loan(TrackedBase):
    """A loan from a lender project's box to a borrower project's box."""

    __tablename__ = "loans"

    __table_args__ = (
        UniqueConstraint("code", name="uq_loan_code"),
        Index("idx_loan_lender", "lender_project_id"),
        Index("idx_loan_borrower", "borrower_project_id"),
        Index("idx_loan_status", "status"),
    )

    code: Mapped[str] = mapped_column(String(20), nullable=False)

    lender_project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    borrower_project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    principal: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Simple interest per installment, in percent
    interest_rate: Mapped[Decimal] = mapped_column(
        MoneyAmount(18),
        default=Decimal("0"),
        nullable=False,
    )

    status: Mapped[LoanStatus] = mapped_column(
        String(20),
        default=LoanStatus.PENDING,
        nullable=False,
    )

    outstanding_balance: Mapped[Decimal] = mapped_column(nullable=False)
    total_paid: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    # Final due date; installment due dates step back monthly from here
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    installment_count: Mapped[int] = mapped_column(Integer, nullable=False)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    disbursement_operation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_operations.id"),
        nullable=True,
    )

    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    installments: Mapped[list["LoanInstallment"]] = relationship(
        back_populates="loan",
        order_by="LoanInstallment.number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Loan {self.code} {self.status} {self.outstanding_balance} {self.currency}>"


class LoanInstallment(TrackedBase):
    """
    One scheduled repayment of a loan.

    ``paid_amount`` is everything paid against the installment.  Payments are
    allocated to late fee, then interest, then principal, and each part
    accumulates in its own column so a fee assessed after interest was paid
    is still owed as a fee.
    """

    __tablename__ = "loan_installments"

    __table_args__ = (
        UniqueConstraint("loan_id", "number", name="uq_installment_loan_number"),
        Index("idx_installment_due_date", "due_date"),
        Index("idx_installment_status", "status"),
    )

    loan_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("loans.id"),
        nullable=False,
    )

    number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Principal share
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    interest_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    late_fee_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[InstallmentStatus] = mapped_column(
        String(20),
        default=InstallmentStatus.PENDING,
        nullable=False,
    )

    paid_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    principal_paid: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    interest_paid: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    late_fee_paid: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    loan: Mapped[Loan] = relationship(back_populates="installments")

    @property
    def amount_due(self) -> Decimal:
        return self.amount + self.interest_amount + self.late_fee_amount

    @property
    def remaining_due(self) -> Decimal:
        return self.amount_due - self.paid_amount

    def __repr__(self) -> str:
        return f"<LoanInstallment #{self.number} {self.paid_amount}/{self.amount_due} {self.status}>"
