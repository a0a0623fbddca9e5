"""
Module: treasury_kernel.selectors.admin_fee_selector
Responsibility: Read-only queries over accrued administrator fees: single
    fee, pending fees, pending totals and per-status statistics.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/.

Invariants enforced:
    - Returns frozen DTOs.

Failure modes:
    - get_fee returns None for an unknown id.
    - total_pending raises UnsupportedCurrencyError for a currency the
      boxes do not hold.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury_kernel.db.types import ARS, validate_currency
from treasury_kernel.models.admin_fee import AdminFee, AdminFeeStatus
from treasury_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")


@dataclass(frozen=True)
class AdminFeeDTO:
    id: UUID
    project_id: UUID
    installment_ref: str | None
    base_amount: Decimal
    basis: str
    percentage: Decimal | None
    amount: Decimal
    currency: str
    status: AdminFeeStatus
    accrual_operation_id: UUID
    collection_operation_id: UUID | None
    created_at: datetime
    collected_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None


@dataclass(frozen=True)
class AdminFeeStats:
    """Fee amounts and counts per status, for one currency."""

    currency: str
    pending_total: Decimal
    collected_total: Decimal
    cancelled_total: Decimal
    pending_count: int
    collected_count: int
    cancelled_count: int


class AdminFeeSelector(BaseSelector[AdminFee]):
    def __init__(self, session: Session):
        super().__init__(session)

    def _to_dto(self, fee: AdminFee) -> AdminFeeDTO:
        return AdminFeeDTO(
            id=fee.id,
            project_id=fee.project_id,
            installment_ref=fee.installment_ref,
            base_amount=fee.base_amount,
            basis=fee.basis,
            percentage=fee.percentage,
            amount=fee.amount,
            currency=fee.currency,
            status=AdminFeeStatus(fee.status),
            accrual_operation_id=fee.accrual_operation_id,
            collection_operation_id=fee.collection_operation_id,
            created_at=fee.created_at,
            collected_at=fee.collected_at,
            cancelled_at=fee.cancelled_at,
            cancellation_reason=fee.cancellation_reason,
        )

    def get_fee(self, fee_id: UUID) -> AdminFeeDTO | None:
        fee = self.session.get(AdminFee, fee_id)
        return self._to_dto(fee) if fee is not None else None

    def pending_fees(self, project_id: UUID | None = None) -> list[AdminFeeDTO]:
        """Pending fees, oldest first."""
        stmt = (
            select(AdminFee)
            .where(AdminFee.status == AdminFeeStatus.PENDING.value)
            .order_by(AdminFee.created_at, AdminFee.id)
        )
        if project_id is not None:
            stmt = stmt.where(AdminFee.project_id == project_id)
        return [self._to_dto(fee) for fee in self.session.execute(stmt).scalars()]

    def total_pending(self, currency: str = ARS) -> Decimal:
        currency = validate_currency(currency)
        return sum(
            (fee.amount for fee in self.pending_fees() if fee.currency == currency),
            _ZERO,
        )

    def fee_stats(self, currency: str = ARS) -> AdminFeeStats:
        currency = validate_currency(currency)
        totals = {s: _ZERO for s in AdminFeeStatus}
        counts = {s: 0 for s in AdminFeeStatus}
        stmt = select(AdminFee).where(AdminFee.currency == currency)
        for fee in self.session.execute(stmt).scalars():
            status = AdminFeeStatus(fee.status)
            totals[status] += fee.amount
            counts[status] += 1
        return AdminFeeStats(
            currency=currency,
            pending_total=totals[AdminFeeStatus.PENDING],
            collected_total=totals[AdminFeeStatus.COLLECTED],
            cancelled_total=totals[AdminFeeStatus.CANCELLED],
            pending_count=counts[AdminFeeStatus.PENDING],
            collected_count=counts[AdminFeeStatus.COLLECTED],
            cancelled_count=counts[AdminFeeStatus.CANCELLED],
        )
