"""
Module: treasury_kernel.models.cash_box
Responsibility: ORM persistence for cash boxes -- the master box, the admin
    (fee) box and one box per project, each with an ARS and a USD balance.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One box per owner (UNIQUE owner_key).
    - Balances are never written here directly; LedgerEngine applies deltas
      under a row lock and BalanceAuditor recomputes them from the log.

Failure modes:
    - IntegrityError on a second box for the same owner (handled by
      CashBoxStore.ensure_box as an idempotent create).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from treasury_kernel.db.base import TrackedBase, UUIDString
from treasury_kernel.db.types import ARS, USD, validate_currency


class OwnerKind(str, Enum):
    """Who a cash box belongs to."""

    MASTER = "master"
    ADMIN = "admin"
    PROJECT = "project"


def owner_key_for(owner_kind: OwnerKind | str, owner_ref: UUID | None) -> str:
    """Stable unique key for a box owner: ``master``, ``admin``, ``project:<id>``."""
    kind = OwnerKind(owner_kind)
    if kind is OwnerKind.PROJECT:
        if owner_ref is None:
            raise ValueError("project boxes require an owner_ref")
        return f"{kind.value}:{owner_ref}"
    if owner_ref is not None:
        raise ValueError(f"{kind.value} box takes no owner_ref")
    return kind.value


class CashBox(TrackedBase):
    """
    A holder of ARS and USD balances.

    Lifetime counters are kept per currency: every credit adds to
    lifetime_received, every debit adds to lifetime_paid, so
    balance == lifetime_received - lifetime_paid holds per currency.
    """

    __tablename__ = "cash_boxes"

    __table_args__ = (
        UniqueConstraint("owner_key", name="uq_cash_box_owner"),
        Index("idx_cash_box_owner_kind", "owner_kind"),
    )

    owner_kind: Mapped[OwnerKind] = mapped_column(String(20), nullable=False)

    # Project id for project boxes, NULL for master/admin
    owner_ref: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    owner_key: Mapped[str] = mapped_column(String(80), nullable=False)

    balance_ars: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    balance_usd: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    lifetime_received_ars: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    lifetime_received_usd: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    lifetime_paid_ars: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    lifetime_paid_usd: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    last_movement_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Soft retirement (project archival)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    retired_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def balance(self, currency: str) -> Decimal:
        return getattr(self, f"balance_{_suffix(currency)}")

    def lifetime_received(self, currency: str) -> Decimal:
        return getattr(self, f"lifetime_received_{_suffix(currency)}")

    def lifetime_paid(self, currency: str) -> Decimal:
        return getattr(self, f"lifetime_paid_{_suffix(currency)}")

    def apply_delta(self, currency: str, delta: Decimal, at: datetime) -> None:
        """
        Apply a signed amount to one currency balance.

        Caller holds the row lock and has already checked the result is
        non-negative.
        """
        suffix = _suffix(currency)
        setattr(self, f"balance_{suffix}", self.balance(currency) + delta)
        if delta > 0:
            setattr(
                self,
                f"lifetime_received_{suffix}",
                self.lifetime_received(currency) + delta,
            )
        elif delta < 0:
            setattr(
                self,
                f"lifetime_paid_{suffix}",
                self.lifetime_paid(currency) - delta,
            )
        self.last_movement_at = at

    def __repr__(self) -> str:
        return (
            f"<CashBox {self.owner_key}: ARS {self.balance_ars} "
            f"USD {self.balance_usd}>"
        )


def _suffix(currency: str) -> str:
    code = validate_currency(currency)
    return {ARS: "ars", USD: "usd"}[code]
