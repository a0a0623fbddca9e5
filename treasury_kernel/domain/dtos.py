"""
Request and response types for the treasury service.

Requests are frozen dataclasses, one per write operation.  Every write
request takes an optional ``idempotency_key``: a second submission under the
same key is not applied again and returns the first call's receipt.

Responses are receipts (LedgerReceipt, LoanReceipt, AdminFeeReceipt,
BoxReceipt) wrapped in an OperationResult, which carries either the receipt
or an ErrorKind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Union
from uuid import UUID

from treasury_kernel.domain.movement_details import PaymentMethod
from treasury_kernel.domain.posting_rules import TransferKind
from treasury_kernel.domain.serialization import decode_dataclass, encode_dataclass
from treasury_kernel.domain.values import BoxRef, FeeSpec
from treasury_kernel.exceptions import ErrorKind, TreasuryKernelError

# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class RecordProjectPayment:
    operation: ClassVar[str] = "record_project_payment"

    project_id: UUID
    amount: Decimal
    currency: str
    installment_ref: str | None = None
    description: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class CollectFee:
    operation: ClassVar[str] = "collect_fee"

    project_id: UUID
    amount: Decimal
    currency: str
    fee_spec: FeeSpec
    description: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class RecordAdminExpense:
    operation: ClassVar[str] = "record_admin_expense"

    amount: Decimal
    currency: str
    description: str
    method: PaymentMethod = PaymentMethod.TRANSFER
    reference: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class RecordMasterWithdrawal:
    operation: ClassVar[str] = "record_master_withdrawal"

    amount: Decimal
    currency: str
    description: str
    method: PaymentMethod = PaymentMethod.TRANSFER
    reference: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class RecordProjectExpense:
    operation: ClassVar[str] = "record_project_expense"

    project_id: UUID
    amount: Decimal
    currency: str
    description: str
    method: PaymentMethod = PaymentMethod.TRANSFER
    reference: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class ConvertCurrency:
    operation: ClassVar[str] = "convert_currency"

    box: BoxRef
    from_currency: str
    amount: Decimal
    to_currency: str
    rate_source: str | None = None
    description: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class TransferBetweenBoxes:
    operation: ClassVar[str] = "transfer_between_boxes"

    from_box: BoxRef
    to_box: BoxRef
    amount: Decimal
    currency: str
    kind: TransferKind = TransferKind.TRANSFER
    description: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class ReverseOperation:
    operation: ClassVar[str] = "reverse_operation"

    operation_id: UUID
    reason: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class IssueLoan:
    operation: ClassVar[str] = "issue_loan"

    lender_project_id: UUID
    borrower_project_id: UUID
    principal: Decimal
    currency: str
    due_date: date
    installment_count: int
    interest_rate: Decimal = Decimal("0")
    description: str | None = None
    as_draft: bool = False
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class SubmitLoan:
    operation: ClassVar[str] = "submit_loan"

    loan_id: UUID
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class ActivateLoan:
    operation: ClassVar[str] = "activate_loan"

    loan_id: UUID
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class RegisterInstallmentPayment:
    operation: ClassVar[str] = "register_installment_payment"

    installment_id: UUID
    amount: Decimal
    payment_date: date | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class CancelLoan:
    operation: ClassVar[str] = "cancel_loan"

    loan_id: UUID
    reason: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class AssessLateFee:
    operation: ClassVar[str] = "assess_late_fee"

    installment_id: UUID
    amount: Decimal
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class AccrueAdminFee:
    operation: ClassVar[str] = "accrue_admin_fee"

    project_id: UUID
    base_amount: Decimal
    currency: str
    fee_spec: FeeSpec | None = None
    installment_ref: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class CollectAdminFee:
    operation: ClassVar[str] = "collect_admin_fee"

    fee_id: UUID
    description: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class CancelAdminFee:
    operation: ClassVar[str] = "cancel_admin_fee"

    fee_id: UUID
    reason: str | None = None
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class OpenProjectBox:
    operation: ClassVar[str] = "open_project_box"

    project_id: UUID
    idempotency_key: str | None = None
    actor_id: UUID | None = None


@dataclass(frozen=True)
class RetireProjectBox:
    operation: ClassVar[str] = "retire_project_box"

    project_id: UUID
    idempotency_key: str | None = None
    actor_id: UUID | None = None


WriteRequest = Union[
    RecordProjectPayment,
    CollectFee,
    RecordAdminExpense,
    RecordMasterWithdrawal,
    RecordProjectExpense,
    ConvertCurrency,
    TransferBetweenBoxes,
    ReverseOperation,
    IssueLoan,
    SubmitLoan,
    ActivateLoan,
    RegisterInstallmentPayment,
    CancelLoan,
    AssessLateFee,
    AccrueAdminFee,
    CollectAdminFee,
    CancelAdminFee,
    OpenProjectBox,
    RetireProjectBox,
]


# =============================================================================
# Receipts
# =============================================================================


@dataclass(frozen=True)
class LedgerReceipt:
    """What a ledger operation did."""

    receipt_type: ClassVar[str] = "ledger"

    operation_id: UUID
    kind: str
    movement_ids: tuple[UUID, ...]
    amount: Decimal
    currency: str
    converted_amount: Decimal | None = None
    converted_currency: str | None = None
    rate: Decimal | None = None


@dataclass(frozen=True)
class LoanReceipt:
    """Loan state after a loan operation."""

    receipt_type: ClassVar[str] = "loan"

    operation_id: UUID
    loan_id: UUID
    code: str
    status: str
    outstanding_balance: Decimal
    total_paid: Decimal
    movement_ids: tuple[UUID, ...] = ()
    installment_id: UUID | None = None
    installment_status: str | None = None


@dataclass(frozen=True)
class AdminFeeReceipt:
    """Fee state after an administrator fee operation."""

    receipt_type: ClassVar[str] = "admin_fee"

    operation_id: UUID
    fee_id: UUID
    project_id: UUID
    amount: Decimal
    currency: str
    status: str
    created: bool = True
    movement_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class BoxReceipt:
    receipt_type: ClassVar[str] = "box"

    operation_id: UUID
    box_id: UUID
    owner_key: str
    is_active: bool


Receipt = Union[LedgerReceipt, LoanReceipt, AdminFeeReceipt, BoxReceipt]

_RECEIPT_TYPES: dict[str, type] = {
    LedgerReceipt.receipt_type: LedgerReceipt,
    LoanReceipt.receipt_type: LoanReceipt,
    AdminFeeReceipt.receipt_type: AdminFeeReceipt,
    BoxReceipt.receipt_type: BoxReceipt,
}


def receipt_to_payload(receipt: Receipt) -> dict[str, Any]:
    return {"receipt_type": receipt.receipt_type, **encode_dataclass(receipt)}


def receipt_from_payload(payload: dict[str, Any]) -> Receipt:
    cls = _RECEIPT_TYPES.get(payload.get("receipt_type", ""))
    if cls is None:
        raise ValueError(f"Unknown receipt type: {payload.get('receipt_type')!r}")
    return decode_dataclass(cls, payload)


# =============================================================================
# Result envelope
# =============================================================================


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of one service call: ``ok`` with ``data``, or an ``error_kind``.

    ``replayed`` marks a result returned from an earlier submission with the
    same idempotency key.  ``retryable`` is set for transaction failures
    only.
    """

    ok: bool
    data: Any = None
    error_kind: ErrorKind | None = None
    error_code: str | None = None
    message: str | None = None
    retryable: bool = False
    replayed: bool = False
    error_details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, data: Any, replayed: bool = False) -> "OperationResult":
        return cls(ok=True, data=data, replayed=replayed)

    @classmethod
    def failure(cls, exc: TreasuryKernelError) -> "OperationResult":
        details = {
            k: v for k, v in vars(exc).items() if not k.startswith("_")
        }
        return cls(
            ok=False,
            error_kind=exc.kind,
            error_code=exc.code,
            message=str(exc),
            retryable=exc.retryable,
            error_details=details,
        )
