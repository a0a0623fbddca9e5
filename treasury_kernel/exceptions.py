"""
Typed Exception Hierarchy for the Treasury Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the ledger must be able to react to a rejected operation without
parsing messages.  Every error therefore has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. A KIND class attribute, one of the ErrorKind values returned to clients
  4. Structured DATA attributes (box, currency, amounts, ids)

Example:
    try:
        engine.collect_fee(project_id, amount, "ARS", FeeSpec.fixed(fee))
    except InsufficientFundsError as e:
        notify(f"Box {e.box_id} holds {e.available} {e.currency}")

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    TreasuryKernelError (base)
    |
    +-- InvalidAmountError
    |
    +-- UnknownEntityError
    |   +-- BoxNotFoundError
    |   +-- BoxRetiredError
    |   +-- ProjectNotFoundError
    |   +-- LoanNotFoundError
    |   +-- InstallmentNotFoundError
    |   +-- OperationNotFoundError
    |
    +-- InsufficientFundsError
    |
    +-- RateUnavailableError
    |
    +-- TransactionFailedError
    |
    +-- InvariantViolationError
    |   +-- ImmutabilityViolationError
    |
    +-- ValidationError
    |   +-- UnsupportedCurrencyError
    |   +-- InvalidFeeSpecError
    |   +-- InvalidConversionError
    |   +-- InvalidLoanRequestError
    |
    +-- InvalidStateError
        +-- InvalidLoanTransitionError
        +-- AlreadyReversedError
        +-- OperationNotReversibleError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Kind                | Code                      | When Raised
--------------------|---------------------------|-------------------------------------
invalid_amount      | INVALID_AMOUNT            | Amount <= 0, non-finite, above due
unknown_entity      | BOX_NOT_FOUND             | No box for owner
                    | BOX_RETIRED               | Box soft-retired, no new movements
                    | PROJECT_NOT_FOUND         | Registry has no such project
                    | LOAN_NOT_FOUND            | Loan id doesn't exist
                    | INSTALLMENT_NOT_FOUND     | Installment id doesn't exist
                    | OPERATION_NOT_FOUND       | Ledger operation id doesn't exist
                    | ADMIN_FEE_NOT_FOUND       | Administrator fee id doesn't exist
insufficient_funds  | INSUFFICIENT_FUNDS        | Debit would drive a balance below 0
rate_unavailable    | RATE_UNAVAILABLE          | Oracle has no quote for pair/source
transaction_failed  | TRANSACTION_FAILED        | Lock timeout, deadlock, serialization
invariant_violation | INVARIANT_VIOLATION       | Stored balance disagrees with log
                    | IMMUTABILITY_VIOLATION    | Update/delete of a movement
validation_error    | UNSUPPORTED_CURRENCY      | Currency outside ARS/USD
                    | INVALID_FEE_SPEC          | Both or neither of pct/fixed
                    | INVALID_CONVERSION        | Same-currency conversion
                    | INVALID_LOAN_REQUEST      | Bad loan terms
invalid_state       | INVALID_LOAN_TRANSITION   | Illegal loan status change
                    | INVALID_ADMIN_FEE_TRANSITION | Fee no longer pending
                    | ALREADY_REVERSED          | Operation reversed before
                    | OPERATION_NOT_REVERSIBLE  | Loan operations, reversals

===============================================================================
HANDLING PATTERNS
===============================================================================

Engines raise.  TreasuryService rolls the transaction back and returns an
OperationResult carrying ``error_kind``.  Only TRANSACTION_FAILED is
retryable; the caller may resubmit with the same idempotency key.
"""

from decimal import Decimal
from enum import Enum


class ErrorKind(str, Enum):
    """Client-facing error classification."""

    INVALID_AMOUNT = "invalid_amount"
    UNKNOWN_ENTITY = "unknown_entity"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RATE_UNAVAILABLE = "rate_unavailable"
    TRANSACTION_FAILED = "transaction_failed"
    INVARIANT_VIOLATION = "invariant_violation"
    VALIDATION_ERROR = "validation_error"
    INVALID_STATE = "invalid_state"


class TreasuryKernelError(Exception):
    """
    Base exception for all treasury kernel errors.

    All subclasses carry a static ``code`` and ``kind``.
    """

    code: str = "TREASURY_KERNEL_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    retryable: bool = False


# Amount exceptions


class InvalidAmountError(TreasuryKernelError):
    """Amount is not a positive, finite decimal (or exceeds what is owed)."""

    code: str = "INVALID_AMOUNT"
    kind: ErrorKind = ErrorKind.INVALID_AMOUNT

    def __init__(self, amount: object, reason: str = "amount must be positive"):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


# Entity lookup exceptions


class UnknownEntityError(TreasuryKernelError):
    """Base exception for references to entities that don't exist."""

    code: str = "UNKNOWN_ENTITY"
    kind: ErrorKind = ErrorKind.UNKNOWN_ENTITY

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} not found: {entity_id}")


class BoxNotFoundError(UnknownEntityError):
    """No cash box exists for the given owner."""

    code: str = "BOX_NOT_FOUND"

    def __init__(self, owner_kind: str, owner_ref: object = None):
        self.owner_kind = owner_kind
        self.owner_ref = None if owner_ref is None else str(owner_ref)
        label = owner_kind if owner_ref is None else f"{owner_kind}:{owner_ref}"
        super().__init__("CashBox", label)


class BoxRetiredError(UnknownEntityError):
    """Cash box was soft-retired and accepts no new movements."""

    code: str = "BOX_RETIRED"

    def __init__(self, box_id: str):
        self.entity_type = "CashBox"
        self.entity_id = str(box_id)
        self.box_id = str(box_id)
        TreasuryKernelError.__init__(self, f"Cash box {box_id} is retired")


class ProjectNotFoundError(UnknownEntityError):
    """Project registry has no such project."""

    code: str = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str):
        self.project_id = str(project_id)
        super().__init__("Project", project_id)


class LoanNotFoundError(UnknownEntityError):
    """Loan with given ID was not found."""

    code: str = "LOAN_NOT_FOUND"

    def __init__(self, loan_id: str):
        self.loan_id = str(loan_id)
        super().__init__("Loan", loan_id)


class InstallmentNotFoundError(UnknownEntityError):
    """Loan installment with given ID was not found."""

    code: str = "INSTALLMENT_NOT_FOUND"

    def __init__(self, installment_id: str):
        self.installment_id = str(installment_id)
        super().__init__("LoanInstallment", installment_id)


class OperationNotFoundError(UnknownEntityError):
    """Ledger operation with given ID was not found."""

    code: str = "OPERATION_NOT_FOUND"

    def __init__(self, operation_id: str):
        self.operation_id = str(operation_id)
        super().__init__("LedgerOperation", operation_id)


class AdminFeeNotFoundError(UnknownEntityError):
    """Administrator fee with given ID was not found."""

    code: str = "ADMIN_FEE_NOT_FOUND"

    def __init__(self, fee_id: str):
        self.fee_id = str(fee_id)
        super().__init__("AdminFee", fee_id)


# Funds exceptions


class InsufficientFundsError(TreasuryKernelError):
    """A debit would drive a box balance below zero."""

    code: str = "INSUFFICIENT_FUNDS"
    kind: ErrorKind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(
        self,
        box_id: str,
        currency: str,
        available: Decimal,
        requested: Decimal,
    ):
        self.box_id = str(box_id)
        self.currency = currency
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient {currency} funds in box {box_id}: "
            f"available {available}, requested {requested}"
        )


# Rate exceptions


class RateUnavailableError(TreasuryKernelError):
    """The exchange rate oracle has no usable quote."""

    code: str = "RATE_UNAVAILABLE"
    kind: ErrorKind = ErrorKind.RATE_UNAVAILABLE

    def __init__(self, pair: str, source: str, reason: str | None = None):
        self.pair = pair
        self.source = source
        self.reason = reason
        msg = f"No {source} rate available for {pair}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


# Concurrency exceptions


class TransactionFailedError(TreasuryKernelError):
    """
    The transaction aborted on lock timeout, deadlock or serialization failure.

    No partial state is committed.  Safe to retry.
    """

    code: str = "TRANSACTION_FAILED"
    kind: ErrorKind = ErrorKind.TRANSACTION_FAILED
    retryable: bool = True

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Transaction for {operation} failed: {reason}")


# Invariant exceptions


class InvariantViolationError(TreasuryKernelError):
    """A stored value disagrees with what the movement log implies."""

    code: str = "INVARIANT_VIOLATION"
    kind: ErrorKind = ErrorKind.INVARIANT_VIOLATION

    def __init__(
        self,
        box_id: str,
        currency: str,
        stored: Decimal,
        recomputed: Decimal,
        field_name: str = "balance",
        entity_type: str = "CashBox",
    ):
        self.box_id = str(box_id)
        self.entity_type = entity_type
        self.currency = currency
        self.stored = stored
        self.recomputed = recomputed
        self.field_name = field_name
        super().__init__(
            f"{entity_type} {box_id} {field_name} {currency} is {stored} "
            f"but the recorded history implies {recomputed}"
        )


class ImmutabilityViolationError(InvariantViolationError):
    """Attempted update or delete of an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        TreasuryKernelError.__init__(
            self, f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Validation exceptions


class ValidationError(TreasuryKernelError):
    """Base exception for malformed requests."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR


class UnsupportedCurrencyError(ValidationError):
    """Currency is not one the boxes hold."""

    code: str = "UNSUPPORTED_CURRENCY"

    def __init__(self, currency: object):
        self.currency = str(currency)
        super().__init__(f"Unsupported currency: '{currency}'")


class InvalidFeeSpecError(ValidationError):
    """Fee spec must carry exactly one of percentage or fixed amount."""

    code: str = "INVALID_FEE_SPEC"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid fee spec: {reason}")


class InvalidConversionError(ValidationError):
    """Conversion request is malformed (e.g. same currency on both sides)."""

    code: str = "INVALID_CONVERSION"

    def __init__(self, from_currency: str, to_currency: str, reason: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.reason = reason
        super().__init__(
            f"Cannot convert {from_currency} to {to_currency}: {reason}"
        )


class InvalidLoanRequestError(ValidationError):
    """Loan terms are malformed."""

    code: str = "INVALID_LOAN_REQUEST"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid loan request: {reason}")


# State exceptions


class InvalidStateError(TreasuryKernelError):
    """Base exception for operations not allowed in the current state."""

    code: str = "INVALID_STATE"
    kind: ErrorKind = ErrorKind.INVALID_STATE


class InvalidLoanTransitionError(InvalidStateError):
    """Loan status change not allowed by the loan lifecycle."""

    code: str = "INVALID_LOAN_TRANSITION"

    def __init__(self, loan_id: str, from_status: str, action: str):
        self.loan_id = str(loan_id)
        self.from_status = from_status
        self.action = action
        super().__init__(
            f"Cannot {action} loan {loan_id} in status '{from_status}'"
        )


class InvalidAdminFeeTransitionError(InvalidStateError):
    """Only pending administrator fees can be collected or cancelled."""

    code: str = "INVALID_ADMIN_FEE_TRANSITION"

    def __init__(self, fee_id: str, from_status: str, action: str):
        self.fee_id = str(fee_id)
        self.from_status = from_status
        self.action = action
        super().__init__(
            f"Cannot {action} administrator fee {fee_id} in status '{from_status}'"
        )


class AlreadyReversedError(InvalidStateError):
    """Ledger operation already has a reversal."""

    code: str = "ALREADY_REVERSED"

    def __init__(self, operation_id: str, reversal_operation_id: str):
        self.operation_id = str(operation_id)
        self.reversal_operation_id = str(reversal_operation_id)
        super().__init__(
            f"Operation {operation_id} already reversed by {reversal_operation_id}"
        )


class OperationNotReversibleError(InvalidStateError):
    """Operation kind cannot be undone by a ledger reversal."""

    code: str = "OPERATION_NOT_REVERSIBLE"

    def __init__(self, operation_id: str, kind: str):
        self.operation_id = str(operation_id)
        self.operation_kind = kind
        super().__init__(
            f"Operation {operation_id} ({kind}) cannot be reversed through the ledger"
        )
