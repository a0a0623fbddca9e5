"""
LedgerEngine -- atomic multi-box operations over the cash boxes.

Responsibility:
    Turns one business operation (a project payment, a fee, an expense, a
    conversion, a transfer, a reversal) into balance deltas plus the
    movements that explain them, inside the caller's transaction.  Which
    boxes an operation touches and how each movement moves money is read
    from the declarative tables in domain/posting_rules.py; nothing here
    decides a debit or a credit ad hoc.

Architecture position:
    Kernel > Services.  Consumes CashBoxStore, MovementLog, BalanceAuditor
    and an ExchangeRateOracle.  LoanEngine drives it for disbursements and
    repayments.

Invariants enforced:
    - Every box an operation touches is locked (id order) before any
      balance is read.
    - No balance goes negative; the whole operation is rejected first.
    - Deltas and movements are flushed in the same transaction.
    - Project income is always mirrored on the master box (rule table).
    - Corrections are reversal movements; nothing is updated in place.

Failure modes:
    - InvalidAmountError, UnsupportedCurrencyError, InvalidFeeSpecError,
      InvalidConversionError on malformed input (nothing is locked).
    - BoxNotFoundError / BoxRetiredError for a missing or retired box.
    - InsufficientFundsError, RateUnavailableError.
    - OperationNotFoundError, AlreadyReversedError,
      OperationNotReversibleError from reverse_operation.
    - InvariantViolationError when verify_after_operation is on and the
      touched boxes disagree with the log.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from treasury_kernel.config import TreasuryConfig
from treasury_kernel.db.types import validate_currency
from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.dtos import LedgerReceipt
from treasury_kernel.domain.movement_details import (
    AdminExpenseDetails,
    CurrencyExchangeDetails,
    FeeCollectionDetails,
    MasterDuplicationDetails,
    MasterExpenseMirrorDetails,
    MasterWithdrawalDetails,
    MovementDetails,
    PaymentMethod,
    ProjectExpenseDetails,
    ProjectIncomeDetails,
    ReversalDetails,
    TransferDetails,
    details_from_payload,
)
from treasury_kernel.domain.posting_rules import (
    OPERATION_RULES,
    BoxDelta,
    BoxRole,
    OperationKind,
    TransferKind,
    effects_of,
)
from treasury_kernel.domain.rates import (
    USD_ARS,
    ConversionQuote,
    ExchangeRateOracle,
    compute_conversion,
)
from treasury_kernel.domain.values import BoxRef, FeeSpec, validate_amount
from treasury_kernel.exceptions import (
    AlreadyReversedError,
    OperationNotReversibleError,
    RateUnavailableError,
    ValidationError,
)
from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.cash_box import CashBox
from treasury_kernel.models.movement import (
    CashMovement,
    EndpointKind,
    LedgerOperation,
    MovementType,
)
from treasury_kernel.services.balance_auditor import BalanceAuditor
from treasury_kernel.services.cash_box_store import CashBoxStore
from treasury_kernel.services.movement_log import MovementDraft, MovementLog

logger = get_logger("services.ledger_engine")

# Movements a ledger reversal may undo.  Loan movements are owned by the
# loan lifecycle and reversals are never reversed.
REVERSIBLE_MOVEMENT_TYPES = frozenset({
    MovementType.PROJECT_INCOME,
    MovementType.MASTER_DUPLICATION,
    MovementType.FEE_COLLECTION,
    MovementType.ADMIN_EXPENSE,
    MovementType.MASTER_WITHDRAWAL,
    MovementType.PROJECT_EXPENSE,
    MovementType.MASTER_EXPENSE_MIRROR,
    MovementType.CURRENCY_EXCHANGE,
    MovementType.TRANSFER,
})


class LedgerEngine:
    """
    Ledger operations.

    Every public write takes either an already-open ``operation`` (to join
    a larger unit, as LoanEngine does) or an ``idempotency_key`` and
    ``actor_id`` for a new one.

    Non-goals:
        - Does NOT commit or roll back.
        - Does NOT check idempotency replays; TreasuryService does.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        oracle: ExchangeRateOracle | None = None,
        config: TreasuryConfig | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._oracle = oracle
        self._config = config or TreasuryConfig()
        self._places = self._config.money_decimal_places
        self._boxes = CashBoxStore(session, self._clock)
        self._log = MovementLog(session, self._clock)
        self._auditor = BalanceAuditor(session)

    @property
    def boxes(self) -> CashBoxStore:
        return self._boxes

    @property
    def movement_log(self) -> MovementLog:
        return self._log

    # =========================================================================
    # Income and fees
    # =========================================================================

    def record_project_payment(
        self,
        project_id: UUID,
        amount: Decimal,
        currency: str,
        installment_ref: str | None = None,
        description: str | None = None,
        *,
        operation: LedgerOperation | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """
        Record a client payment into a project.

        The project box is credited and the master box receives an equal
        mirror credit.  The project is not debited.
        """
        amount = validate_amount(amount, self._places)
        currency = validate_currency(currency)
        logger.info(
            "project_payment_started",
            extra={"project_id": str(project_id), "amount": amount, "currency": currency},
        )

        operation = operation or self._log.begin_operation(
            "record_project_payment", idempotency_key, actor_id
        )
        movements = self._post(
            operation,
            OperationKind.PROJECT_PAYMENT,
            {BoxRole.PROJECT: BoxRef.project(project_id), BoxRole.MASTER: BoxRef.master()},
            amount,
            currency,
            [
                ProjectIncomeDetails(installment_ref=installment_ref),
                MasterDuplicationDetails(
                    mirrored_project_id=str(project_id),
                    installment_ref=installment_ref,
                ),
            ],
            description or "Project payment",
            related_project_id=project_id,
        )

        logger.info(
            "project_payment_completed",
            extra={"project_id": str(project_id), "operation_id": str(operation.id)},
        )
        return self._receipt(operation, movements, amount, currency)

    def collect_fee(
        self,
        project_id: UUID,
        amount: Decimal,
        currency: str,
        fee_spec: FeeSpec,
        description: str | None = None,
        *,
        operation: LedgerOperation | None = None,
        admin_fee_id: UUID | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """
        Move an administrator fee from a project box to the admin box.

        ``amount`` is the base the fee is computed on; with a fixed fee it
        is recorded for reference only.
        """
        amount = validate_amount(amount, self._places)
        currency = validate_currency(currency)
        fee_spec.validate()
        fee = fee_spec.compute(amount, self._places)
        logger.info(
            "fee_collection_started",
            extra={
                "project_id": str(project_id),
                "base_amount": amount,
                "fee": fee,
                "basis": fee_spec.basis,
                "currency": currency,
            },
        )

        operation = operation or self._log.begin_operation(
            "collect_fee", idempotency_key, actor_id
        )
        movements = self._post(
            operation,
            OperationKind.FEE_COLLECTION,
            {BoxRole.PROJECT: BoxRef.project(project_id), BoxRole.ADMIN: BoxRef.admin()},
            fee,
            currency,
            [
                FeeCollectionDetails(
                    basis=fee_spec.basis,
                    base_amount=amount,
                    percentage=fee_spec.percentage,
                    admin_fee_id=str(admin_fee_id) if admin_fee_id else None,
                )
            ],
            description or "Administrator fee",
            related_project_id=project_id,
        )

        logger.info(
            "fee_collection_completed",
            extra={"project_id": str(project_id), "operation_id": str(operation.id), "fee": fee},
        )
        return self._receipt(operation, movements, fee, currency)

    # =========================================================================
    # Outflows
    # =========================================================================

    def record_admin_expense(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        method: PaymentMethod = PaymentMethod.TRANSFER,
        reference: str | None = None,
        *,
        operation: LedgerOperation | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """Pay an expense out of the admin box."""
        return self._outflow(
            OperationKind.ADMIN_EXPENSE,
            "record_admin_expense",
            {BoxRole.ADMIN: BoxRef.admin()},
            amount,
            currency,
            [AdminExpenseDetails(method=PaymentMethod(method), reference=reference)],
            description,
            None,
            operation,
            idempotency_key,
            actor_id,
        )

    def record_master_withdrawal(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        method: PaymentMethod = PaymentMethod.TRANSFER,
        reference: str | None = None,
        *,
        operation: LedgerOperation | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """Withdraw funds from the master box."""
        return self._outflow(
            OperationKind.MASTER_WITHDRAWAL,
            "record_master_withdrawal",
            {BoxRole.MASTER: BoxRef.master()},
            amount,
            currency,
            [MasterWithdrawalDetails(method=PaymentMethod(method), reference=reference)],
            description,
            None,
            operation,
            idempotency_key,
            actor_id,
        )

    def record_project_expense(
        self,
        project_id: UUID,
        amount: Decimal,
        currency: str,
        description: str,
        method: PaymentMethod = PaymentMethod.TRANSFER,
        reference: str | None = None,
        *,
        operation: LedgerOperation | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """
        Pay a project expense.

        The project box is debited and the master box carries the same
        debit as a mirror, the outbound counterpart of master duplication.
        """
        return self._outflow(
            OperationKind.PROJECT_EXPENSE,
            "record_project_expense",
            {BoxRole.PROJECT: BoxRef.project(project_id), BoxRole.MASTER: BoxRef.master()},
            amount,
            currency,
            [
                ProjectExpenseDetails(method=PaymentMethod(method), reference=reference),
                MasterExpenseMirrorDetails(mirrored_project_id=str(project_id)),
            ],
            description,
            project_id,
            operation,
            idempotency_key,
            actor_id,
        )

    def _outflow(
        self,
        kind: OperationKind,
        operation_name: str,
        roles: dict[BoxRole, BoxRef],
        amount: Decimal,
        currency: str,
        details: list[MovementDetails],
        description: str,
        project_id: UUID | None,
        operation: LedgerOperation | None,
        idempotency_key: str | None,
        actor_id: UUID | None,
    ) -> LedgerReceipt:
        amount = validate_amount(amount, self._places)
        currency = validate_currency(currency)
        logger.info(
            f"{kind.value}_started",
            extra={
                "amount": amount,
                "currency": currency,
                "project_id": str(project_id) if project_id else None,
            },
        )

        operation = operation or self._log.begin_operation(
            operation_name, idempotency_key, actor_id
        )
        movements = self._post(
            operation,
            kind,
            roles,
            amount,
            currency,
            details,
            description,
            related_project_id=project_id,
        )

        logger.info(f"{kind.value}_completed", extra={"operation_id": str(operation.id)})
        return self._receipt(operation, movements, amount, currency)

    # =========================================================================
    # Currency exchange
    # =========================================================================

    def preview_conversion(
        self,
        from_currency: str,
        amount: Decimal,
        to_currency: str,
        rate_source: str | None = None,
    ) -> ConversionQuote:
        """Quote a conversion without touching any box."""
        amount = validate_amount(amount, self._places)
        source = rate_source or self._config.default_rate_source
        if self._oracle is None:
            raise RateUnavailableError(USD_ARS, source, "no exchange rate oracle configured")
        quote = self._oracle.get_rate(USD_ARS, source)
        return compute_conversion(
            from_currency, to_currency, amount, quote, source, self._places
        )

    def convert_currency(
        self,
        box: BoxRef,
        from_currency: str,
        amount: Decimal,
        to_currency: str,
        rate_source: str | None = None,
        description: str | None = None,
        *,
        operation: LedgerOperation | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """
        Exchange currency within one box.

        ARS to USD uses the buy quote, USD to ARS the sell quote; the
        spread between them stays with the desk.
        """
        conversion = self.preview_conversion(from_currency, amount, to_currency, rate_source)
        logger.info(
            "currency_exchange_started",
            extra={
                "box": box.owner_key,
                "from_currency": conversion.from_currency,
                "amount": conversion.from_amount,
                "to_currency": conversion.to_currency,
                "to_amount": conversion.to_amount,
                "rate": conversion.rate,
                "side": conversion.side.value,
                "rate_source": conversion.source,
            },
        )

        operation = operation or self._log.begin_operation(
            "convert_currency", idempotency_key, actor_id
        )
        movements = self._post(
            operation,
            OperationKind.CURRENCY_EXCHANGE,
            {BoxRole.SUBJECT: box},
            conversion.from_amount,
            conversion.from_currency,
            [
                CurrencyExchangeDetails(
                    to_currency=conversion.to_currency,
                    to_amount=conversion.to_amount,
                    rate=conversion.rate,
                    side=conversion.side.value,
                    rate_source=conversion.source,
                    quoted_at=conversion.quoted_at,
                )
            ],
            description
            or f"{conversion.from_currency} to {conversion.to_currency} ({conversion.source})",
            related_project_id=box.owner_ref,
        )

        logger.info("currency_exchange_completed", extra={"operation_id": str(operation.id)})
        return LedgerReceipt(
            operation_id=operation.id,
            kind=operation.kind,
            movement_ids=tuple(m.id for m in movements),
            amount=conversion.from_amount,
            currency=conversion.from_currency,
            converted_amount=conversion.to_amount,
            converted_currency=conversion.to_currency,
            rate=conversion.rate,
        )

    # =========================================================================
    # Transfers
    # =========================================================================

    def transfer_between_boxes(
        self,
        from_box: BoxRef,
        to_box: BoxRef,
        amount: Decimal,
        currency: str,
        kind: TransferKind = TransferKind.TRANSFER,
        description: str | None = None,
        *,
        details: MovementDetails | None = None,
        related_project_id: UUID | None = None,
        related_loan_id: UUID | None = None,
        related_installment_id: UUID | None = None,
        operation: LedgerOperation | None = None,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """
        Debit one box and credit another by the same amount.

        Loan-tagged transfers carry loan details and are issued by
        LoanEngine; a bare loan-tagged transfer is rejected.
        """
        kind = TransferKind(kind)
        amount = validate_amount(amount, self._places)
        currency = validate_currency(currency)
        if from_box.owner_key == to_box.owner_key:
            raise ValidationError(f"Cannot transfer from {from_box} to itself")
        if details is None:
            if kind is not TransferKind.TRANSFER:
                raise ValidationError(
                    f"{kind.value} transfers are recorded through the loan engine"
                )
            details = TransferDetails(note=description)

        logger.info(
            "transfer_started",
            extra={
                "from_box": from_box.owner_key,
                "to_box": to_box.owner_key,
                "amount": amount,
                "currency": currency,
                "transfer_kind": kind.value,
            },
        )

        operation = operation or self._log.begin_operation(
            "transfer_between_boxes", idempotency_key, actor_id
        )
        movements = self._post(
            operation,
            kind.operation_kind,
            {BoxRole.FROM: from_box, BoxRole.TO: to_box},
            amount,
            currency,
            [details],
            description or kind.value.replace("_", " ").capitalize(),
            related_project_id=related_project_id,
            related_loan_id=related_loan_id,
            related_installment_id=related_installment_id,
        )

        logger.info("transfer_completed", extra={"operation_id": str(operation.id)})
        return self._receipt(operation, movements, amount, currency)

    # =========================================================================
    # Reversal
    # =========================================================================

    def reverse_operation(
        self,
        operation_id: UUID,
        reason: str | None = None,
        *,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
    ) -> LedgerReceipt:
        """
        Undo an earlier operation with one reversal movement per original
        movement, in reverse leg order.

        The original movements are untouched.  The original operation is
        linked to its reversal once; a second reversal is rejected.
        """
        original = self._log.get_operation(operation_id, for_update=True)
        if original.reversed_by_operation_id is not None:
            raise AlreadyReversedError(str(original.id), str(original.reversed_by_operation_id))

        originals = self._log.movements_of(original.id)
        if not originals or any(
            MovementType(m.movement_type) not in REVERSIBLE_MOVEMENT_TYPES for m in originals
        ):
            raise OperationNotReversibleError(str(original.id), original.kind)

        logger.info(
            "reversal_started",
            extra={
                "reversed_operation_id": str(original.id),
                "reversed_kind": original.kind,
                "movement_count": len(originals),
            },
        )

        operation = self._log.begin_operation(
            "reverse_operation", idempotency_key, actor_id, reversal_of=original.id
        )

        drafts: list[MovementDraft] = []
        for movement in reversed(originals):
            details = details_from_payload(movement.details)
            debit_amount, debit_currency = movement.amount, movement.currency
            credit_amount: Decimal | None = None
            credit_currency: str | None = None
            if isinstance(details, CurrencyExchangeDetails):
                # Give back what was credited, take back what was debited
                debit_amount, debit_currency = details.to_amount, details.to_currency
                credit_amount, credit_currency = movement.amount, movement.currency
            drafts.append(
                MovementDraft(
                    movement_type=MovementType.REVERSAL,
                    source_kind=EndpointKind(movement.destination_kind),
                    source_box_id=movement.destination_box_id,
                    destination_kind=EndpointKind(movement.source_kind),
                    destination_box_id=movement.source_box_id,
                    amount=debit_amount,
                    currency=debit_currency,
                    details=ReversalDetails(
                        reversed_movement_id=str(movement.id),
                        reversed_operation_id=str(original.id),
                        reversed_type=MovementType(movement.movement_type),
                        credit_currency=credit_currency,
                        credit_amount=credit_amount,
                        reason=reason,
                    ),
                    description=f"Reversal of {movement.description}"[:500],
                    related_project_id=movement.related_project_id,
                    related_loan_id=movement.related_loan_id,
                    related_installment_id=movement.related_installment_id,
                )
            )

        box_ids = {
            box_id
            for m in originals
            for box_id in (m.source_box_id, m.destination_box_id)
            if box_id is not None
        }
        locked = self._lock_by_id(box_ids)
        movements = self._apply(operation, drafts, locked)
        self._log.mark_reversed(original, operation.id)

        logger.info(
            "reversal_completed",
            extra={
                "reversed_operation_id": str(original.id),
                "operation_id": str(operation.id),
            },
        )
        first = originals[0]
        return self._receipt(operation, movements, first.amount, first.currency)

    # =========================================================================
    # Core
    # =========================================================================

    def _post(
        self,
        operation: LedgerOperation,
        kind: OperationKind,
        roles: dict[BoxRole, BoxRef],
        amount: Decimal,
        currency: str,
        details: list[MovementDetails],
        description: str,
        related_project_id: UUID | None = None,
        related_loan_id: UUID | None = None,
        related_installment_id: UUID | None = None,
    ) -> list[CashMovement]:
        """Expand ``kind`` through the rule table and apply it."""
        legs = OPERATION_RULES[kind]
        if len(details) != len(legs):
            raise ValueError(f"{kind.value} has {len(legs)} legs, got {len(details)} details")

        locked = self._boxes.lock_boxes(list(roles.values()))

        def endpoint(role: BoxRole) -> tuple[EndpointKind, CashBox | None]:
            if role is BoxRole.EXTERNAL:
                return EndpointKind.EXTERNAL, None
            box = locked[roles[role].owner_key]
            return EndpointKind(box.owner_kind), box

        drafts = []
        for leg, leg_details in zip(legs, details):
            source_kind, source = endpoint(leg.source)
            destination_kind, destination = endpoint(leg.destination)
            drafts.append(
                MovementDraft(
                    movement_type=leg.movement_type,
                    source_kind=source_kind,
                    source_box_id=source.id if source else None,
                    destination_kind=destination_kind,
                    destination_box_id=destination.id if destination else None,
                    amount=amount,
                    currency=currency,
                    details=leg_details,
                    description=description,
                    related_project_id=related_project_id,
                    related_loan_id=related_loan_id,
                    related_installment_id=related_installment_id,
                )
            )
        return self._apply(operation, drafts, {box.id: box for box in locked.values()})

    def _apply(
        self,
        operation: LedgerOperation,
        drafts: list[MovementDraft],
        boxes: dict[UUID, CashBox],
    ) -> list[CashMovement]:
        deltas: list[BoxDelta] = []
        for draft in drafts:
            deltas.extend(
                effects_of(
                    draft.movement_type,
                    draft.source_box_id,
                    draft.destination_box_id,
                    draft.amount,
                    draft.currency,
                    draft.details,
                )
            )
        self._boxes.apply_deltas(boxes, deltas)

        offset = len(self._log.movements_of(operation.id))
        movements = [
            self._log.append(operation, draft, leg_index=offset + i)
            for i, draft in enumerate(drafts)
        ]

        if self._config.verify_after_operation:
            self._auditor.verify_boxes(sorted(boxes))
        return movements

    def _lock_by_id(self, box_ids: set[UUID]) -> dict[UUID, CashBox]:
        refs = [
            BoxRef(box.owner_kind, box.owner_ref)
            for box in (self._session.get(CashBox, box_id) for box_id in box_ids)
            if box is not None
        ]
        locked = self._boxes.lock_boxes(refs)
        return {box.id: box for box in locked.values()}

    def _receipt(
        self,
        operation: LedgerOperation,
        movements: list[CashMovement],
        amount: Decimal,
        currency: str,
    ) -> LedgerReceipt:
        return LedgerReceipt(
            operation_id=operation.id,
            kind=operation.kind,
            movement_ids=tuple(m.id for m in movements),
            amount=amount,
            currency=currency,
        )
