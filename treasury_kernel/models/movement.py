"""
Module: treasury_kernel.models.movement
Responsibility: ORM persistence for the append-only movement log and the
    ledger operations that group movements into atomic units.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Movements are immutable once created (ORM listeners in
      db/immutability.py).  Corrections are new reversal movements.
    - seq is strictly monotonic (UNIQUE, allocated from a locked counter).
    - One ledger operation per idempotency key (UNIQUE).

Failure modes:
    - IntegrityError on a duplicate idempotency key; the service layer
      treats it as a replay of the original operation.
    - ImmutabilityViolationError on UPDATE/DELETE.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from treasury_kernel.db.base import Base, UUIDString


class MovementType(str, Enum):
    """Every kind of entry the movement log records."""

    PROJECT_INCOME = "project_income"
    MASTER_DUPLICATION = "master_duplication"
    FEE_COLLECTION = "fee_collection"
    ADMIN_EXPENSE = "admin_expense"
    MASTER_WITHDRAWAL = "master_withdrawal"
    CURRENCY_EXCHANGE = "currency_exchange"
    TRANSFER = "transfer"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_CANCELLATION_REFUND = "loan_cancellation_refund"
    PROJECT_EXPENSE = "project_expense"
    MASTER_EXPENSE_MIRROR = "master_expense_mirror"
    REVERSAL = "reversal"


class EndpointKind(str, Enum):
    """One side of a movement: a box owner, or the world outside the firm."""

    MASTER = "master"
    ADMIN = "admin"
    PROJECT = "project"
    EXTERNAL = "external"


class LedgerOperation(Base):
    """
    One atomic ledger operation.

    All movements of a compound operation (e.g. project income plus its
    master duplication) reference the same row.  ``result`` holds the
    response payload so an idempotent replay returns what the first call
    returned.
    """

    __tablename__ = "ledger_operations"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_ledger_operation_idempotency"),
        Index("idx_ledger_operation_kind", "kind"),
    )

    kind: Mapped[str] = mapped_column(String(40), nullable=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Reversal links
    reversal_of_operation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_operations.id"),
        nullable=True,
    )
    reversed_by_operation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    # Response payload, written once when the operation completes
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<LedgerOperation {self.kind} {self.id}>"


class CashMovement(Base):
    """
    An immutable record of money moving between endpoints.

    ``amount`` is always positive; direction is given by source and
    destination, and which of them is actually debited or credited is
    defined per movement type in domain/posting_rules.py.
    """

    __tablename__ = "cash_movements"

    __table_args__ = (
        UniqueConstraint("seq", name="uq_cash_movement_seq"),
        Index("idx_cash_movement_operation", "operation_id"),
        Index("idx_cash_movement_source_box", "source_box_id"),
        Index("idx_cash_movement_destination_box", "destination_box_id"),
        Index("idx_cash_movement_project", "related_project_id"),
        Index("idx_cash_movement_loan", "related_loan_id"),
        Index("idx_cash_movement_type", "movement_type"),
        Index("idx_cash_movement_created_at", "created_at"),
        Index("idx_cash_movement_idempotency", "idempotency_key"),
    )

    seq: Mapped[int] = mapped_column(nullable=False)

    operation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_operations.id"),
        nullable=False,
    )

    # Position within the operation
    leg_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    movement_type: Mapped[MovementType] = mapped_column(String(40), nullable=False)

    source_kind: Mapped[EndpointKind] = mapped_column(String(20), nullable=False)
    source_box_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cash_boxes.id"),
        nullable=True,
    )

    destination_kind: Mapped[EndpointKind] = mapped_column(String(20), nullable=False)
    destination_box_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cash_boxes.id"),
        nullable=True,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    related_project_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    related_loan_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    related_installment_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Typed per movement type; see domain/movement_details.py
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CashMovement #{self.seq} {self.movement_type} "
            f"{self.amount} {self.currency}>"
        )
