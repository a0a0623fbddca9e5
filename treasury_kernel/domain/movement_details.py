"""
MovementDetails -- typed per-type metadata for movements.

Every movement type has exactly one details dataclass.  Details are stored
in the movement's JSON column with a ``kind`` discriminator and decoded back
into the same dataclass on read, so consumers never handle untyped dicts.

    payload = details_to_payload(FeeCollectionDetails(...))
    details = details_from_payload(payload)   # -> FeeCollectionDetails
"""

from __future__ import annotations

import typing
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Union

from treasury_kernel.domain.serialization import decode_dataclass, encode_dataclass
from treasury_kernel.models.movement import MovementType


class PaymentMethod(str, Enum):
    """How money left the firm."""

    TRANSFER = "transfer"
    CASH = "cash"
    CHECK = "check"


@dataclass(frozen=True)
class ProjectIncomeDetails:
    kind: ClassVar[MovementType] = MovementType.PROJECT_INCOME

    installment_ref: str | None = None


@dataclass(frozen=True)
class MasterDuplicationDetails:
    kind: ClassVar[MovementType] = MovementType.MASTER_DUPLICATION

    mirrored_project_id: str
    installment_ref: str | None = None


@dataclass(frozen=True)
class FeeCollectionDetails:
    kind: ClassVar[MovementType] = MovementType.FEE_COLLECTION

    basis: str
    base_amount: Decimal
    percentage: Decimal | None = None
    # Set when the fee was accrued first and collected later
    admin_fee_id: str | None = None


@dataclass(frozen=True)
class AdminExpenseDetails:
    kind: ClassVar[MovementType] = MovementType.ADMIN_EXPENSE

    method: PaymentMethod = PaymentMethod.TRANSFER
    reference: str | None = None


@dataclass(frozen=True)
class MasterWithdrawalDetails:
    kind: ClassVar[MovementType] = MovementType.MASTER_WITHDRAWAL

    method: PaymentMethod = PaymentMethod.TRANSFER
    reference: str | None = None


@dataclass(frozen=True)
class CurrencyExchangeDetails:
    kind: ClassVar[MovementType] = MovementType.CURRENCY_EXCHANGE

    to_currency: str
    to_amount: Decimal
    rate: Decimal
    side: str
    rate_source: str
    quoted_at: datetime


@dataclass(frozen=True)
class TransferDetails:
    kind: ClassVar[MovementType] = MovementType.TRANSFER

    note: str | None = None


@dataclass(frozen=True)
class LoanDisbursementDetails:
    kind: ClassVar[MovementType] = MovementType.LOAN_DISBURSEMENT

    loan_id: str
    loan_code: str


@dataclass(frozen=True)
class LoanRepaymentDetails:
    kind: ClassVar[MovementType] = MovementType.LOAN_REPAYMENT

    loan_id: str
    loan_code: str
    installment_number: int
    principal_part: Decimal
    interest_part: Decimal = Decimal("0")
    late_fee_part: Decimal = Decimal("0")


@dataclass(frozen=True)
class LoanCancellationRefundDetails:
    kind: ClassVar[MovementType] = MovementType.LOAN_CANCELLATION_REFUND

    loan_id: str
    loan_code: str


@dataclass(frozen=True)
class ProjectExpenseDetails:
    kind: ClassVar[MovementType] = MovementType.PROJECT_EXPENSE

    method: PaymentMethod = PaymentMethod.TRANSFER
    reference: str | None = None


@dataclass(frozen=True)
class MasterExpenseMirrorDetails:
    kind: ClassVar[MovementType] = MovementType.MASTER_EXPENSE_MIRROR

    mirrored_project_id: str


@dataclass(frozen=True)
class ReversalDetails:
    """Inverse of one earlier movement.

    ``reversed_type`` is needed to derive the reversal's balance effect
    (a reversed mirror only touches the master side).
    """

    kind: ClassVar[MovementType] = MovementType.REVERSAL

    reversed_movement_id: str
    reversed_operation_id: str
    reversed_type: MovementType
    # Set when reversing a currency exchange: what the box gets back
    credit_currency: str | None = None
    credit_amount: Decimal | None = None
    reason: str | None = None


MovementDetails = Union[
    ProjectIncomeDetails,
    MasterDuplicationDetails,
    FeeCollectionDetails,
    AdminExpenseDetails,
    MasterWithdrawalDetails,
    CurrencyExchangeDetails,
    TransferDetails,
    LoanDisbursementDetails,
    LoanRepaymentDetails,
    LoanCancellationRefundDetails,
    ProjectExpenseDetails,
    MasterExpenseMirrorDetails,
    ReversalDetails,
]

DETAILS_BY_TYPE: dict[MovementType, type] = {
    cls.kind: cls for cls in typing.get_args(MovementDetails)
}

# Every movement type has a details class
assert set(DETAILS_BY_TYPE) == set(MovementType), "details registry incomplete"


def details_to_payload(details: MovementDetails) -> dict[str, Any]:
    """Encode details for the JSON column."""
    return {"kind": details.kind.value, **encode_dataclass(details)}


def details_from_payload(payload: dict[str, Any]) -> MovementDetails:
    """
    Decode a JSON payload into its details dataclass.

    Raises:
        ValueError: Unknown ``kind`` or missing required field.
    """
    try:
        cls = DETAILS_BY_TYPE[MovementType(payload["kind"])]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown movement details kind: {payload.get('kind')!r}") from None
    return decode_dataclass(cls, payload)
