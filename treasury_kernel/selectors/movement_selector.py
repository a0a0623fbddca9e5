"""
Module: treasury_kernel.selectors.movement_selector
Responsibility: Read-only queries over the movement log for audit-trail
    views and export tooling.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/.

Invariants enforced:
    - Newest first (descending seq).
    - ``query`` is lazy and finite: it fetches keyset pages (``seq <
      last_seen``) with a fresh statement each time and keeps no cursor open
      between pages, so a caller can stop early and call again to restart.
    - Details are decoded into their typed dataclass.

Failure modes:
    - Returns empty results when nothing matches (never raises on absence).
    - ValueError from details decoding if a row was written with an unknown
      details kind.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from treasury_kernel.domain.movement_details import MovementDetails, details_from_payload
from treasury_kernel.domain.values import BoxRef
from treasury_kernel.models.cash_box import CashBox
from treasury_kernel.models.movement import CashMovement, EndpointKind, MovementType
from treasury_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000


@dataclass(frozen=True)
class MovementDTO:
    id: UUID
    seq: int
    operation_id: UUID
    leg_index: int
    movement_type: MovementType
    source_kind: EndpointKind
    source_box_id: UUID | None
    destination_kind: EndpointKind
    destination_box_id: UUID | None
    amount: Decimal
    currency: str
    description: str
    related_project_id: UUID | None
    related_loan_id: UUID | None
    related_installment_id: UUID | None
    details: MovementDetails
    idempotency_key: str | None
    created_at: datetime
    created_by_id: UUID | None


@dataclass(frozen=True)
class MovementFilter:
    """
    Movement query criteria.  All given criteria must match.

    ``box`` matches movements into or out of the box.  ``project_id``
    matches movements of the project's box and movements tagged with the
    project (e.g. its master mirrors).  ``start`` is inclusive, ``end``
    exclusive.
    """

    box: BoxRef | None = None
    project_id: UUID | None = None
    start: datetime | None = None
    end: datetime | None = None
    movement_types: tuple[MovementType, ...] = ()
    loan_id: UUID | None = None
    operation_id: UUID | None = None


@dataclass(frozen=True)
class MovementPage:
    items: list[MovementDTO]
    next_before_seq: int | None

    @property
    def has_more(self) -> bool:
        return self.next_before_seq is not None


class MovementSelector(BaseSelector[CashMovement]):
    """Movement log queries."""

    def __init__(self, session: Session):
        super().__init__(session)

    def _to_dto(self, movement: CashMovement) -> MovementDTO:
        return MovementDTO(
            id=movement.id,
            seq=movement.seq,
            operation_id=movement.operation_id,
            leg_index=movement.leg_index,
            movement_type=MovementType(movement.movement_type),
            source_kind=EndpointKind(movement.source_kind),
            source_box_id=movement.source_box_id,
            destination_kind=EndpointKind(movement.destination_kind),
            destination_box_id=movement.destination_box_id,
            amount=movement.amount,
            currency=movement.currency,
            description=movement.description,
            related_project_id=movement.related_project_id,
            related_loan_id=movement.related_loan_id,
            related_installment_id=movement.related_installment_id,
            details=details_from_payload(movement.details),
            idempotency_key=movement.idempotency_key,
            created_at=movement.created_at,
            created_by_id=movement.created_by_id,
        )

    def _filtered(self, criteria: MovementFilter) -> Select:
        stmt = select(CashMovement)

        if criteria.box is not None:
            box_id = (
                select(CashBox.id)
                .where(CashBox.owner_key == criteria.box.owner_key)
                .scalar_subquery()
            )
            stmt = stmt.where(
                or_(
                    CashMovement.source_box_id == box_id,
                    CashMovement.destination_box_id == box_id,
                )
            )

        if criteria.project_id is not None:
            project_box_id = (
                select(CashBox.id)
                .where(CashBox.owner_key == BoxRef.project(criteria.project_id).owner_key)
                .scalar_subquery()
            )
            stmt = stmt.where(
                or_(
                    CashMovement.related_project_id == criteria.project_id,
                    CashMovement.source_box_id == project_box_id,
                    CashMovement.destination_box_id == project_box_id,
                )
            )

        if criteria.start is not None:
            stmt = stmt.where(CashMovement.created_at >= criteria.start)
        if criteria.end is not None:
            stmt = stmt.where(CashMovement.created_at < criteria.end)
        if criteria.movement_types:
            stmt = stmt.where(
                CashMovement.movement_type.in_(
                    [MovementType(t).value for t in criteria.movement_types]
                )
            )
        if criteria.loan_id is not None:
            stmt = stmt.where(CashMovement.related_loan_id == criteria.loan_id)
        if criteria.operation_id is not None:
            stmt = stmt.where(CashMovement.operation_id == criteria.operation_id)
        return stmt

    def page(
        self,
        criteria: MovementFilter | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        before_seq: int | None = None,
    ) -> MovementPage:
        """
        One page of matching movements, newest first.

        Pass ``next_before_seq`` from the previous page to continue.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        stmt = self._filtered(criteria or MovementFilter())
        if before_seq is not None:
            stmt = stmt.where(CashMovement.seq < before_seq)
        rows = list(
            self.session.execute(
                stmt.order_by(CashMovement.seq.desc()).limit(limit + 1)
            ).scalars()
        )
        has_more = len(rows) > limit
        rows = rows[:limit]
        return MovementPage(
            items=[self._to_dto(m) for m in rows],
            next_before_seq=rows[-1].seq if has_more else None,
        )

    def query(
        self,
        criteria: MovementFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[MovementDTO]:
        """Every matching movement, newest first, fetched page by page."""
        before_seq = None
        while True:
            page = self.page(criteria, page_size, before_seq)
            yield from page.items
            if not page.has_more:
                return
            before_seq = page.next_before_seq

    def count(self, criteria: MovementFilter | None = None) -> int:
        subquery = self._filtered(criteria or MovementFilter()).subquery()
        return self.session.execute(select(func.count()).select_from(subquery)).scalar_one()

    def get_movement(self, movement_id: UUID) -> MovementDTO | None:
        movement = self.session.get(CashMovement, movement_id)
        return self._to_dto(movement) if movement else None

    def operation_movements(self, operation_id: UUID) -> list[MovementDTO]:
        stmt = (
            select(CashMovement)
            .where(CashMovement.operation_id == operation_id)
            .order_by(CashMovement.leg_index, CashMovement.seq)
        )
        return [self._to_dto(m) for m in self.session.execute(stmt).scalars()]
