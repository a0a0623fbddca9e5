"""
Module: treasury_kernel.models.admin_fee
Responsibility: ORM persistence for administrator fees accrued on project
    income and collected later.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - At most one fee per (project_id, installment_ref) when a reference is
      given (UNIQUE; NULL references never collide).
    - pending -> collected | cancelled, each at most once (AdminFeeService).
    - A collected fee points at the ledger operation that moved the money.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from treasury_kernel.db.base import TrackedBase, UUIDString
from treasury_kernel.db.types import MoneyAmount


class AdminFeeStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    CANCELLED = "cancelled"


class AdminFee(TrackedBase):
    """
    A fee owed by a project to the admin box.

    ``amount`` is fixed when the fee is accrued; collecting it moves exactly
    that amount from the project box to the admin box.
    """

    __tablename__ = "admin_fees"

    __table_args__ = (
        UniqueConstraint("project_id", "installment_ref", name="uq_admin_fee_installment"),
        Index("idx_admin_fee_project", "project_id"),
        Index("idx_admin_fee_status", "status"),
    )

    project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    installment_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    base_amount: Mapped[Decimal] = mapped_column(nullable=False)
    basis: Mapped[str] = mapped_column(String(20), nullable=False)
    percentage: Mapped[Decimal | None] = mapped_column(MoneyAmount(18), nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[AdminFeeStatus] = mapped_column(
        String(20),
        default=AdminFeeStatus.PENDING,
        nullable=False,
    )

    accrual_operation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_operations.id"),
        nullable=False,
    )
    collection_operation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_operations.id"),
        nullable=True,
    )

    collected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<AdminFee {self.amount} {self.currency} {self.status}>"
