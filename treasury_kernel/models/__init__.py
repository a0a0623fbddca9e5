"""ORM models for the treasury kernel."""

from treasury_kernel.models.admin_fee import AdminFee, AdminFeeStatus
from treasury_kernel.models.cash_box import CashBox, OwnerKind, owner_key_for
from treasury_kernel.models.loan import InstallmentStatus, Loan, LoanInstallment, LoanStatus
from treasury_kernel.models.movement import (
    CashMovement,
    EndpointKind,
    LedgerOperation,
    MovementType,
)
from treasury_kernel.models.sequence import SequenceCounter

__all__ = [
    "AdminFee",
    "AdminFeeStatus",
    "CashBox",
    "CashMovement",
    "EndpointKind",
    "InstallmentStatus",
    "LedgerOperation",
    "Loan",
    "LoanInstallment",
    "LoanStatus",
    "MovementType",
    "OwnerKind",
    "SequenceCounter",
    "owner_key_for",
]
