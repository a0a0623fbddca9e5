"""
MovementLog -- the append-only write side of the movement log.

Responsibility:
    Opens ledger operations (the atomic unit that groups movements and
    carries the idempotency key) and appends movements to them.  ``append``
    is the only way a movement row comes into existence.  Reads live in
    selectors/movement_selector.py.

Invariants enforced:
    - Every movement belongs to exactly one ledger operation.
    - ``seq`` comes from a locked counter, so log order is total and
      strictly monotonic across concurrent writers.
    - Appends are flushed in the caller's transaction, never committed here;
      balance deltas and their movements commit together.
    - Movement rows are never updated or deleted (db/immutability.py).

Failure modes:
    - IntegrityError when a second operation claims an idempotency key;
      TreasuryService turns that into a replay.
    - OperationNotFoundError from get_operation.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.movement_details import MovementDetails, details_to_payload
from treasury_kernel.exceptions import OperationNotFoundError
from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.movement import (
    CashMovement,
    EndpointKind,
    LedgerOperation,
    MovementType,
)
from treasury_kernel.services.base import BaseService
from treasury_kernel.services.sequence_service import SequenceService

logger = get_logger("services.movement_log")


@dataclass(frozen=True)
class MovementDraft:
    """A movement about to be appended.  Amount is positive and rounded."""

    movement_type: MovementType
    source_kind: EndpointKind
    source_box_id: UUID | None
    destination_kind: EndpointKind
    destination_box_id: UUID | None
    amount: Decimal
    currency: str
    details: MovementDetails
    description: str = ""
    related_project_id: UUID | None = None
    related_loan_id: UUID | None = None
    related_installment_id: UUID | None = None


class MovementLog(BaseService[CashMovement]):
    """Append-only movement writer."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    def begin_operation(
        self,
        kind: str,
        idempotency_key: str | None = None,
        actor_id: UUID | None = None,
        reversal_of: UUID | None = None,
    ) -> LedgerOperation:
        """
        Open a ledger operation in the current transaction.

        The row is flushed immediately so a duplicate idempotency key fails
        here, before any balance is touched.
        """
        operation = LedgerOperation(
            kind=kind,
            idempotency_key=idempotency_key,
            created_at=self._clock.now(),
            created_by_id=actor_id,
            reversal_of_operation_id=reversal_of,
        )
        self.session.add(operation)
        self.session.flush()
        logger.debug(
            "ledger_operation_opened",
            extra={
                "operation_id": str(operation.id),
                "operation_kind": kind,
                "idempotency_key": idempotency_key,
            },
        )
        return operation

    def append(
        self,
        operation: LedgerOperation,
        draft: MovementDraft,
        leg_index: int = 0,
    ) -> CashMovement:
        """Append one movement to ``operation`` and return it (flushed)."""
        if draft.amount <= 0:
            raise ValueError(f"movement amount must be positive, got {draft.amount}")
        if draft.details.kind is not MovementType(draft.movement_type):
            raise ValueError(
                f"{type(draft.details).__name__} does not describe a "
                f"{MovementType(draft.movement_type).value} movement"
            )

        movement = CashMovement(
            seq=self._sequences.next_value(SequenceService.MOVEMENT),
            operation_id=operation.id,
            leg_index=leg_index,
            movement_type=MovementType(draft.movement_type).value,
            source_kind=EndpointKind(draft.source_kind).value,
            source_box_id=draft.source_box_id,
            destination_kind=EndpointKind(draft.destination_kind).value,
            destination_box_id=draft.destination_box_id,
            amount=draft.amount,
            currency=draft.currency,
            description=draft.description or "",
            related_project_id=draft.related_project_id,
            related_loan_id=draft.related_loan_id,
            related_installment_id=draft.related_installment_id,
            details=details_to_payload(draft.details),
            idempotency_key=operation.idempotency_key,
            created_at=self._clock.now(),
            created_by_id=operation.created_by_id,
        )
        self.session.add(movement)
        self.session.flush()

        logger.info(
            "movement_appended",
            extra={
                "movement_id": str(movement.id),
                "operation_id": str(operation.id),
                "seq": movement.seq,
                "movement_type": movement.movement_type,
                "amount": movement.amount,
                "currency": movement.currency,
            },
        )
        return movement

    def complete_operation(self, operation: LedgerOperation, result: dict[str, Any]) -> None:
        """Store the response payload an idempotent replay will return."""
        operation.result = result
        self.session.flush()

    def mark_reversed(self, operation: LedgerOperation, reversal_id: UUID) -> None:
        operation.reversed_by_operation_id = reversal_id
        self.session.flush()

    def get_operation(self, operation_id: UUID, for_update: bool = False) -> LedgerOperation:
        stmt = select(LedgerOperation).where(LedgerOperation.id == operation_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        operation = self.session.execute(stmt).scalar_one_or_none()
        if operation is None:
            raise OperationNotFoundError(str(operation_id))
        return operation

    def find_by_idempotency_key(self, idempotency_key: str) -> LedgerOperation | None:
        return self.session.execute(
            select(LedgerOperation).where(
                LedgerOperation.idempotency_key == idempotency_key
            )
        ).scalar_one_or_none()

    def movements_of(self, operation_id: UUID) -> list[CashMovement]:
        """Movements of one operation in leg order."""
        return list(
            self.session.execute(
                select(CashMovement)
                .where(CashMovement.operation_id == operation_id)
                .order_by(CashMovement.leg_index, CashMovement.seq)
            ).scalars()
        )

