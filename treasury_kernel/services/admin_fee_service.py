"""
AdminFeeService -- administrator fees accrued now and collected later.

Responsibility:
    Records the fee a project owes the admin box on a piece of income,
    then either collects it through LedgerEngine.collect_fee or cancels it.

        pending --collect--> collected
        pending --cancel--> cancelled

Invariants enforced:
    - The fee amount is computed once, at accrual, and collection moves
      exactly that amount.
    - One fee per (project, installment_ref); accruing again for the same
      installment returns the existing fee unchanged.
    - The fee row is locked before its status changes.

Failure modes:
    - InvalidAmountError, InvalidCurrencyError, InvalidFeeSpecError for a
      malformed accrual.
    - ProjectNotFoundError when a registry is configured and does not know
      the project.
    - AdminFeeNotFoundError, InvalidAdminFeeTransitionError.
    - InsufficientFundsError from the underlying collection; the fee stays
      pending.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury_kernel.config import TreasuryConfig
from treasury_kernel.db.types import validate_currency
from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.dtos import AdminFeeReceipt
from treasury_kernel.domain.projects import ProjectRegistry
from treasury_kernel.domain.values import FeeSpec, validate_amount
from treasury_kernel.exceptions import AdminFeeNotFoundError, InvalidAdminFeeTransitionError
from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.admin_fee import AdminFee, AdminFeeStatus
from treasury_kernel.models.movement import LedgerOperation
from treasury_kernel.services.ledger_engine import LedgerEngine

logger = get_logger("services.admin_fee_service")


class AdminFeeService:
    """
    Pending administrator fee lifecycle.

    Accrual moves no money.  Collection opens its own ledger operation and
    posts one fee_collection through it.
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

    def accrue_admin_fee(
        self,
        project_id: UUID,
        base_amount: Decimal,
        currency: str,
        fee_spec: FeeSpec | None = None,
        installment_ref: str | None = None,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> AdminFeeReceipt:
        """
        Record a pending fee on ``base_amount`` of project income.

        Without ``fee_spec`` the configured default percentage applies.
        """
        base_amount = validate_amount(base_amount, self._places)
        currency = validate_currency(currency)
        fee_spec = fee_spec or FeeSpec.percent(self._config.default_admin_fee_percentage)
        amount = fee_spec.compute(base_amount, self._places)
        if self._registry is not None:
            self._registry.get_project(project_id)

        operation = self._ledger.movement_log.begin_operation(
            "accrue_admin_fee", idempotency_key, actor_id
        )

        if installment_ref is not None:
            existing = self._session.execute(
                select(AdminFee).where(
                    AdminFee.project_id == project_id,
                    AdminFee.installment_ref == installment_ref,
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(
                    "admin_fee_already_accrued",
                    extra={
                        "fee_id": str(existing.id),
                        "project_id": str(project_id),
                        "installment_ref": installment_ref,
                    },
                )
                return self._receipt(operation, existing, created=False)

        now = self._clock.now()
        fee = AdminFee(
            project_id=project_id,
            installment_ref=installment_ref,
            base_amount=base_amount,
            basis=fee_spec.basis,
            percentage=fee_spec.percentage,
            amount=amount,
            currency=currency,
            status=AdminFeeStatus.PENDING.value,
            accrual_operation_id=operation.id,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self._session.add(fee)
        self._session.flush()

        logger.info(
            "admin_fee_accrued",
            extra={
                "fee_id": str(fee.id),
                "project_id": str(project_id),
                "amount": amount,
                "currency": currency,
                "basis": fee_spec.basis,
            },
        )
        return self._receipt(operation, fee)

    def collect_admin_fee(
        self,
        fee_id: UUID,
        description: str | None = None,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> AdminFeeReceipt:
        """Move a pending fee from the project box to the admin box."""
        fee = self._lock_fee(fee_id)
        self._require_pending(fee, "collect")
        operation = self._ledger.movement_log.begin_operation(
            "collect_admin_fee", idempotency_key, actor_id
        )
        ledger_receipt = self._ledger.collect_fee(
            fee.project_id,
            fee.base_amount,
            fee.currency,
            FeeSpec.fixed_amount(fee.amount),
            description or "Administrator fee",
            operation=operation,
            admin_fee_id=fee.id,
        )
        fee.status = AdminFeeStatus.COLLECTED.value
        fee.collection_operation_id = operation.id
        fee.collected_at = self._clock.now()
        fee.touch(fee.collected_at, actor_id)
        self._session.flush()

        logger.info(
            "admin_fee_collected",
            extra={"fee_id": str(fee.id), "operation_id": str(operation.id), "amount": fee.amount},
        )
        return self._receipt(operation, fee, movement_ids=ledger_receipt.movement_ids)

    def cancel_admin_fee(
        self,
        fee_id: UUID,
        reason: str | None = None,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> AdminFeeReceipt:
        fee = self._lock_fee(fee_id)
        self._require_pending(fee, "cancel")
        operation = self._ledger.movement_log.begin_operation(
            "cancel_admin_fee", idempotency_key, actor_id
        )
        fee.status = AdminFeeStatus.CANCELLED.value
        fee.cancelled_at = self._clock.now()
        fee.cancellation_reason = reason
        fee.touch(fee.cancelled_at, actor_id)
        self._session.flush()

        logger.info("admin_fee_cancelled", extra={"fee_id": str(fee.id), "reason": reason})
        return self._receipt(operation, fee)

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_fee(self, fee_id: UUID) -> AdminFee:
        fee = self._session.execute(
            select(AdminFee)
            .where(AdminFee.id == fee_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if fee is None:
            raise AdminFeeNotFoundError(str(fee_id))
        return fee

    def _require_pending(self, fee: AdminFee, action: str) -> None:
        if fee.status != AdminFeeStatus.PENDING.value:
            logger.warning(
                "admin_fee_transition_rejected",
                extra={"fee_id": str(fee.id), "status": fee.status, "action": action},
            )
            raise InvalidAdminFeeTransitionError(str(fee.id), fee.status, action)

    def _receipt(
        self,
        operation: LedgerOperation,
        fee: AdminFee,
        created: bool = True,
        movement_ids: tuple[UUID, ...] = (),
    ) -> AdminFeeReceipt:
        return AdminFeeReceipt(
            operation_id=operation.id,
            fee_id=fee.id,
            project_id=fee.project_id,
            amount=fee.amount,
            currency=fee.currency,
            status=fee.status,
            created=created,
            movement_ids=tuple(movement_ids),
        )
