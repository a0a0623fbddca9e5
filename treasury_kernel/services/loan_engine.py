"""
LoanEngine -- inter-project loans reconciled through the movement log.

Responsibility:
    Issues loans with an installment schedule, walks them through their
    lifecycle and records every money movement (disbursement, repayment,
    cancellation refund) through LedgerEngine in the same operation.

        draft --submit--> pending --activate--> active --last payment--> paid
        draft/pending --cancel--> cancelled
        active is reported as overdue at read time (loan_schedule.effective_status)

Invariants enforced:
    - outstanding_balance == principal - sum(installment.principal_paid).
    - An installment is paid only when paid_amount >= amount + interest +
      late fee.  Payments are allocated late fee, interest, principal.
    - A loan becomes paid in the same operation as its last payment.
    - The loan row is locked before it or its installments change.
    - Lender and borrower are different projects.

Failure modes:
    - InvalidLoanRequestError for malformed terms.
    - ProjectNotFoundError when a registry is configured and does not know
      a project; BoxNotFoundError when the project has no box.
    - LoanNotFoundError, InstallmentNotFoundError.
    - InvalidLoanTransitionError for an action the status does not allow.
    - InvalidAmountError for a payment above the remaining due.
    - InsufficientFundsError from the underlying transfer.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury_kernel.config import LoanCancellationPolicy, RepaymentDestination, TreasuryConfig
from treasury_kernel.db.types import validate_currency
from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.dtos import LoanReceipt
from treasury_kernel.domain.loan_schedule import (
    OPEN_INSTALLMENT_STATUSES,
    allocate_payment,
    build_schedule,
    installment_is_overdue,
    minimum_principal,
    outstanding_components,
)
from treasury_kernel.domain.movement_details import (
    LoanCancellationRefundDetails,
    LoanDisbursementDetails,
    LoanRepaymentDetails,
)
from treasury_kernel.domain.posting_rules import TransferKind
from treasury_kernel.domain.projects import ProjectRegistry
from treasury_kernel.domain.values import BoxRef, validate_amount
from treasury_kernel.exceptions import (
    InstallmentNotFoundError,
    InvalidAmountError,
    InvalidLoanRequestError,
    InvalidLoanTransitionError,
    LoanNotFoundError,
)
from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.loan import InstallmentStatus, Loan, LoanInstallment, LoanStatus
from treasury_kernel.models.movement import LedgerOperation
from treasury_kernel.services.ledger_engine import LedgerEngine
from treasury_kernel.services.sequence_service import SequenceService

logger = get_logger("services.loan_engine")

MAX_INSTALLMENTS = 360

_ZERO = Decimal("0")


class LoanEngine:
    """
    Loan lifecycle operations.

    Every write opens one ledger operation; the movements it causes join
    that operation, so a loan change and its money commit together.

    Non-goals:
        - Does NOT store ``overdue``; see LoanSelector.
        - Does NOT run on a timer.  Late fees are assessed on request.
    """

    def __init__(
        self,
        session: Session,
        ledger: LedgerEngine,
        clock: Clock | None = None,
        config: TreasuryConfig | None = None,
        project_registry: ProjectRegistry | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._config = config or TreasuryConfig()
        self._places = self._config.money_decimal_places
        self._registry = project_registry
        self._sequences = SequenceService(session)

    # =========================================================================
    # Issuance
    # =========================================================================

    def issue_loan(
        self,
        lender_project_id: UUID,
        borrower_project_id: UUID,
        principal: Decimal,
        currency: str,
        due_date: date,
        installment_count: int,
        interest_rate: Decimal = _ZERO,
        description: str | None = None,
        as_draft: bool = False,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LoanReceipt:
        """
        Create a loan and its schedule.

        Unless ``as_draft``, the principal is disbursed from the lender's
        box to the borrower's box and the loan starts ``pending``.
        """
        principal = validate_amount(principal, self._places)
        currency = validate_currency(currency)
        self._validate_terms(
            lender_project_id, borrower_project_id, principal, due_date, installment_count,
            interest_rate,
        )
        interest_rate = Decimal(interest_rate)

        logger.info(
            "loan_issue_started",
            extra={
                "lender_project_id": str(lender_project_id),
                "borrower_project_id": str(borrower_project_id),
                "principal": principal,
                "currency": currency,
                "installment_count": installment_count,
                "as_draft": as_draft,
            },
        )

        operation = self._ledger.movement_log.begin_operation(
            "issue_loan", idempotency_key, actor_id
        )
        now = self._clock.now()
        number = self._sequences.next_value(SequenceService.LOAN_CODE)
        loan = Loan(
            code=f"{self._config.loan_code_prefix}-{number:04d}",
            lender_project_id=lender_project_id,
            borrower_project_id=borrower_project_id,
            principal=principal,
            currency=currency,
            interest_rate=interest_rate,
            status=LoanStatus.DRAFT.value if as_draft else LoanStatus.PENDING.value,
            outstanding_balance=principal,
            total_paid=_ZERO,
            due_date=due_date,
            installment_count=installment_count,
            description=description,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        for item in build_schedule(principal, installment_count, due_date, interest_rate, self._places):
            loan.installments.append(
                LoanInstallment(
                    number=item.number,
                    amount=item.amount,
                    interest_amount=item.interest_amount,
                    late_fee_amount=_ZERO,
                    due_date=item.due_date,
                    status=InstallmentStatus.PENDING.value,
                    paid_amount=_ZERO,
                    principal_paid=_ZERO,
                    interest_paid=_ZERO,
                    late_fee_paid=_ZERO,
                    created_at=now,
                    updated_at=now,
                    created_by_id=actor_id,
                )
            )
        self._session.add(loan)
        self._session.flush()

        movement_ids: tuple[UUID, ...] = ()
        if not as_draft:
            movement_ids = self._disburse(loan, operation)

        logger.info(
            "loan_issued",
            extra={"loan_id": str(loan.id), "code": loan.code, "status": loan.status},
        )
        return self._receipt(operation, loan, movement_ids)

    def submit_loan(
        self,
        loan_id: UUID,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LoanReceipt:
        """Disburse a draft loan: draft -> pending."""
        loan = self._lock_loan(loan_id)
        self._require_status(loan, "submit", LoanStatus.DRAFT)
        operation = self._ledger.movement_log.begin_operation(
            "submit_loan", idempotency_key, actor_id
        )
        movement_ids = self._disburse(loan, operation)
        self._transition(loan, LoanStatus.PENDING, actor_id)
        return self._receipt(operation, loan, movement_ids)

    def activate_loan(
        self,
        loan_id: UUID,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LoanReceipt:
        loan = self._lock_loan(loan_id)
        self._require_status(loan, "activate", LoanStatus.PENDING)
        operation = self._ledger.movement_log.begin_operation(
            "activate_loan", idempotency_key, actor_id
        )
        loan.activated_at = self._clock.now()
        self._transition(loan, LoanStatus.ACTIVE, actor_id)
        return self._receipt(operation, loan)

    # =========================================================================
    # Payments
    # =========================================================================

    def register_installment_payment(
        self,
        installment_id: UUID,
        amount: Decimal,
        payment_date: date | None = None,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LoanReceipt:
        """
        Apply a payment to one installment and move the money.

        The payment goes from the borrower's box to the lender's (or the
        master box, per ``loan_repayment_destination``).
        """
        amount = validate_amount(amount, self._places)
        loan, installment = self._lock_installment(installment_id)
        self._require_status(loan, "pay", LoanStatus.PENDING, LoanStatus.ACTIVE)
        if InstallmentStatus(installment.status) not in OPEN_INSTALLMENT_STATUSES:
            raise InvalidLoanTransitionError(
                str(loan.id), f"installment {installment.number} {installment.status}", "pay"
            )

        owed = outstanding_components(
            installment.amount,
            installment.interest_amount,
            installment.late_fee_amount,
            installment.principal_paid,
            installment.interest_paid,
            installment.late_fee_paid,
        )
        if amount > owed.total:
            raise InvalidAmountError(
                amount, f"exceeds remaining due {owed.total} on installment {installment.number}"
            )
        allocation = allocate_payment(amount, owed)

        logger.info(
            "installment_payment_started",
            extra={
                "loan_id": str(loan.id),
                "installment_number": installment.number,
                "amount": amount,
                "principal_part": allocation.principal,
                "interest_part": allocation.interest,
                "late_fee_part": allocation.late_fee,
            },
        )

        operation = self._ledger.movement_log.begin_operation(
            "register_installment_payment", idempotency_key, actor_id
        )
        destination = (
            BoxRef.master()
            if self._config.loan_repayment_destination is RepaymentDestination.MASTER
            else BoxRef.project(loan.lender_project_id)
        )
        receipt = self._ledger.transfer_between_boxes(
            BoxRef.project(loan.borrower_project_id),
            destination,
            amount,
            loan.currency,
            TransferKind.LOAN_REPAYMENT,
            f"{loan.code} installment {installment.number}",
            details=LoanRepaymentDetails(
                loan_id=str(loan.id),
                loan_code=loan.code,
                installment_number=installment.number,
                principal_part=allocation.principal,
                interest_part=allocation.interest,
                late_fee_part=allocation.late_fee,
            ),
            related_project_id=loan.borrower_project_id,
            related_loan_id=loan.id,
            related_installment_id=installment.id,
            operation=operation,
        )

        now = self._clock.now()
        installment.paid_amount += amount
        installment.principal_paid += allocation.principal
        installment.interest_paid += allocation.interest
        installment.late_fee_paid += allocation.late_fee
        installment.paid_date = payment_date or self._clock.today()
        installment.status = (
            InstallmentStatus.PAID.value
            if installment.paid_amount >= installment.amount_due
            else InstallmentStatus.PARTIAL.value
        )
        installment.touch(now, actor_id)

        loan.total_paid += amount
        loan.outstanding_balance -= allocation.principal
        if loan.outstanding_balance == 0:
            loan.paid_at = now
            self._transition(loan, LoanStatus.PAID, actor_id)
        else:
            loan.touch(now, actor_id)
            self._session.flush()

        logger.info(
            "installment_payment_completed",
            extra={
                "loan_id": str(loan.id),
                "installment_status": installment.status,
                "outstanding_balance": loan.outstanding_balance,
                "loan_status": loan.status,
            },
        )
        return self._receipt(operation, loan, receipt.movement_ids, installment)

    def assess_late_fee(
        self,
        installment_id: UUID,
        amount: Decimal,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LoanReceipt:
        """Add a late fee to an open installment past its due date."""
        amount = validate_amount(amount, self._places)
        loan, installment = self._lock_installment(installment_id)
        self._require_status(loan, "assess a late fee on", LoanStatus.ACTIVE)
        if not installment_is_overdue(installment.status, installment.due_date, self._clock.today()):
            raise InvalidLoanTransitionError(
                str(loan.id),
                f"installment {installment.number} {installment.status}, due {installment.due_date}",
                "assess a late fee on",
            )

        operation = self._ledger.movement_log.begin_operation(
            "assess_late_fee", idempotency_key, actor_id
        )
        installment.late_fee_amount += amount
        installment.touch(self._clock.now(), actor_id)
        self._session.flush()

        logger.info(
            "late_fee_assessed",
            extra={
                "loan_id": str(loan.id),
                "installment_number": installment.number,
                "late_fee": amount,
                "late_fee_total": installment.late_fee_amount,
            },
        )
        return self._receipt(operation, loan, installment=installment)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_loan(
        self,
        loan_id: UUID,
        reason: str | None = None,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LoanReceipt:
        """
        Cancel a draft or pending loan.

        Open installments are cancelled.  Under the ``refund`` policy a
        disbursed principal (less principal already repaid) moves back from
        the borrower to the lender; under ``retain`` the borrower keeps it.
        """
        loan = self._lock_loan(loan_id)
        self._require_status(loan, "cancel", LoanStatus.DRAFT, LoanStatus.PENDING)
        operation = self._ledger.movement_log.begin_operation(
            "cancel_loan", idempotency_key, actor_id
        )
        now = self._clock.now()

        movement_ids: tuple[UUID, ...] = ()
        refund = (
            self._config.loan_cancellation_policy is LoanCancellationPolicy.REFUND
            and loan.disbursement_operation_id is not None
            and loan.outstanding_balance > 0
        )
        if refund:
            receipt = self._ledger.transfer_between_boxes(
                BoxRef.project(loan.borrower_project_id),
                BoxRef.project(loan.lender_project_id),
                loan.outstanding_balance,
                loan.currency,
                TransferKind.LOAN_CANCELLATION_REFUND,
                f"{loan.code} cancellation refund",
                details=LoanCancellationRefundDetails(loan_id=str(loan.id), loan_code=loan.code),
                related_loan_id=loan.id,
                operation=operation,
            )
            movement_ids = receipt.movement_ids

        for installment in loan.installments:
            if InstallmentStatus(installment.status) in OPEN_INSTALLMENT_STATUSES:
                installment.status = InstallmentStatus.CANCELLED.value
                installment.touch(now, actor_id)

        loan.cancelled_at = now
        loan.cancellation_reason = reason
        self._transition(loan, LoanStatus.CANCELLED, actor_id)

        logger.info(
            "loan_cancelled",
            extra={
                "loan_id": str(loan.id),
                "policy": self._config.loan_cancellation_policy.value,
                "refunded": refund,
                "reason": reason,
            },
        )
        return self._receipt(operation, loan, movement_ids)

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate_terms(
        self,
        lender_project_id: UUID,
        borrower_project_id: UUID,
        principal: Decimal,
        due_date: date,
        installment_count: int,
        interest_rate: Decimal,
    ) -> None:
        if lender_project_id == borrower_project_id:
            raise InvalidLoanRequestError("lender and borrower must be different projects")
        if isinstance(installment_count, bool) or not isinstance(installment_count, int):
            raise InvalidLoanRequestError("installment_count must be an integer")
        if not 1 <= installment_count <= MAX_INSTALLMENTS:
            raise InvalidLoanRequestError(
                f"installment_count must be between 1 and {MAX_INSTALLMENTS}"
            )
        if principal < minimum_principal(installment_count, self._places):
            raise InvalidLoanRequestError(
                f"principal {principal} is too small for {installment_count} installments"
            )
        if not isinstance(due_date, date):
            raise InvalidLoanRequestError("due_date must be a date")
        if (
            not isinstance(interest_rate, (Decimal, int))
            or isinstance(interest_rate, bool)
            or not Decimal(interest_rate).is_finite()
            or interest_rate < 0
        ):
            raise InvalidLoanRequestError("interest_rate must be a non-negative Decimal")
        if self._registry is not None:
            self._registry.get_project(lender_project_id)
            self._registry.get_project(borrower_project_id)

    def _disburse(self, loan: Loan, operation: LedgerOperation) -> tuple[UUID, ...]:
        receipt = self._ledger.transfer_between_boxes(
            BoxRef.project(loan.lender_project_id),
            BoxRef.project(loan.borrower_project_id),
            loan.principal,
            loan.currency,
            TransferKind.LOAN_DISBURSEMENT,
            f"{loan.code} disbursement",
            details=LoanDisbursementDetails(loan_id=str(loan.id), loan_code=loan.code),
            related_loan_id=loan.id,
            operation=operation,
        )
        loan.disbursement_operation_id = operation.id
        self._session.flush()
        return receipt.movement_ids

    def _transition(self, loan: Loan, to_status: LoanStatus, actor_id: UUID | None) -> None:
        from_status = loan.status
        loan.status = to_status.value
        loan.touch(self._clock.now(), actor_id)
        self._session.flush()
        logger.info(
            "loan_status_changed",
            extra={
                "loan_id": str(loan.id),
                "code": loan.code,
                "from_status": from_status,
                "to_status": to_status.value,
            },
        )

    def _require_status(self, loan: Loan, action: str, *allowed: LoanStatus) -> None:
        if LoanStatus(loan.status) not in allowed:
            logger.warning(
                "loan_transition_rejected",
                extra={"loan_id": str(loan.id), "status": loan.status, "action": action},
            )
            raise InvalidLoanTransitionError(str(loan.id), loan.status, action)

    def _lock_loan(self, loan_id: UUID) -> Loan:
        loan = self._session.execute(
            select(Loan)
            .where(Loan.id == loan_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if loan is None:
            raise LoanNotFoundError(str(loan_id))
        return loan

    def _lock_installment(self, installment_id: UUID) -> tuple[Loan, LoanInstallment]:
        loan_id = self._session.execute(
            select(LoanInstallment.loan_id).where(LoanInstallment.id == installment_id)
        ).scalar_one_or_none()
        if loan_id is None:
            raise InstallmentNotFoundError(str(installment_id))
        loan = self._lock_loan(loan_id)
        installment = next(i for i in loan.installments if i.id == installment_id)
        return loan, installment

    def _receipt(
        self,
        operation: LedgerOperation,
        loan: Loan,
        movement_ids: tuple[UUID, ...] = (),
        installment: LoanInstallment | None = None,
    ) -> LoanReceipt:
        return LoanReceipt(
            operation_id=operation.id,
            loan_id=loan.id,
            code=loan.code,
            status=loan.status,
            outstanding_balance=loan.outstanding_balance,
            total_paid=loan.total_paid,
            movement_ids=tuple(movement_ids),
            installment_id=installment.id if installment else None,
            installment_status=installment.status if installment else None,
        )
