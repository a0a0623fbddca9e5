"""
Module: treasury_kernel.selectors.balance_selector
Responsibility: Read-only access to cash box balances: single box, box
    listings, the firm-wide financial summary, the per-project breakdown
    of the master box, fees collected per project and monthly box activity.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/.

Invariants enforced:
    - Read-only.  Two calls with no intervening write return equal results.
    - Returns frozen DTOs, never ORM instances.

Failure modes:
    - BoxNotFoundError from get_balance/get_box/monthly_stats for an owner
      with no box.
    - ValueError from monthly_stats for a month outside 1..12.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from treasury_kernel.db.types import ARS, USD
from treasury_kernel.domain.movement_details import ReversalDetails, details_from_payload
from treasury_kernel.domain.posting_rules import effects_of
from treasury_kernel.domain.values import BoxRef
from treasury_kernel.exceptions import BoxNotFoundError
from treasury_kernel.models.cash_box import CashBox, OwnerKind
from treasury_kernel.models.movement import CashMovement, MovementType
from treasury_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")

# Movement types that can move the master box on behalf of a project
_MIRROR_TYPES = (
    MovementType.MASTER_DUPLICATION.value,
    MovementType.MASTER_EXPENSE_MIRROR.value,
    MovementType.REVERSAL.value,
)


@dataclass(frozen=True)
class BoxBalance:
    ars: Decimal = _ZERO
    usd: Decimal = _ZERO

    def get(self, currency: str) -> Decimal:
        return {ARS: self.ars, USD: self.usd}[currency]

    def __add__(self, other: "BoxBalance") -> "BoxBalance":
        return BoxBalance(self.ars + other.ars, self.usd + other.usd)


@dataclass(frozen=True)
class BoxSummary:
    id: UUID
    owner_kind: OwnerKind
    owner_ref: UUID | None
    owner_key: str
    balance: BoxBalance
    lifetime_received: BoxBalance
    lifetime_paid: BoxBalance
    last_movement_at: datetime | None
    is_active: bool
    retired_at: datetime | None


@dataclass(frozen=True)
class FinancialSummary:
    """Firm-wide position.  Project totals count active boxes only."""

    master: BoxBalance
    admin: BoxBalance
    projects_total: BoxBalance
    project_count: int


@dataclass(frozen=True)
class MasterProjectShare:
    """How much of the master box's balance each project accounts for."""

    project_id: UUID
    balance: BoxBalance


@dataclass(frozen=True)
class ProjectFees:
    """Net administrator fees collected from one project."""

    project_id: UUID
    total: BoxBalance
    collection_count: int


@dataclass(frozen=True)
class MonthlyStats:
    owner_key: str
    year: int
    month: int
    received: BoxBalance
    paid: BoxBalance
    net: BoxBalance
    movement_count: int
    net_by_type: dict[str, BoxBalance]
    project_count: int


class BalanceSelector(BaseSelector[CashBox]):
    """
    Balance queries.

    Non-goals:
        - Does NOT recompute balances from the log; BalanceAuditor does.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def _find(self, ref: BoxRef) -> CashBox:
        box = self.session.execute(
            select(CashBox).where(CashBox.owner_key == ref.owner_key)
        ).scalar_one_or_none()
        if box is None:
            raise BoxNotFoundError(ref.owner_kind.value, ref.owner_ref)
        return box

    def _to_dto(self, box: CashBox) -> BoxSummary:
        return BoxSummary(
            id=box.id,
            owner_kind=OwnerKind(box.owner_kind),
            owner_ref=box.owner_ref,
            owner_key=box.owner_key,
            balance=BoxBalance(box.balance_ars, box.balance_usd),
            lifetime_received=BoxBalance(box.lifetime_received_ars, box.lifetime_received_usd),
            lifetime_paid=BoxBalance(box.lifetime_paid_ars, box.lifetime_paid_usd),
            last_movement_at=box.last_movement_at,
            is_active=box.is_active,
            retired_at=box.retired_at,
        )

    def get_balance(self, owner_kind: OwnerKind | str, owner_ref: UUID | None = None) -> BoxBalance:
        box = self._find(BoxRef(OwnerKind(owner_kind), owner_ref))
        return BoxBalance(box.balance_ars, box.balance_usd)

    def get_box(self, ref: BoxRef) -> BoxSummary:
        return self._to_dto(self._find(ref))

    def list_boxes(
        self,
        owner_kind: OwnerKind | str | None = None,
        include_retired: bool = False,
    ) -> list[BoxSummary]:
        stmt = select(CashBox).order_by(CashBox.owner_key)
        if owner_kind is not None:
            stmt = stmt.where(CashBox.owner_kind == OwnerKind(owner_kind).value)
        if not include_retired:
            stmt = stmt.where(CashBox.is_active.is_(True))
        return [self._to_dto(box) for box in self.session.execute(stmt).scalars()]

    def financial_summary(self) -> FinancialSummary:
        master = self.get_balance(OwnerKind.MASTER)
        admin = self.get_balance(OwnerKind.ADMIN)
        projects = self.list_boxes(OwnerKind.PROJECT)
        total = sum((p.balance for p in projects), BoxBalance())
        return FinancialSummary(
            master=master,
            admin=admin,
            projects_total=total,
            project_count=len(projects),
        )

    def master_by_project(self) -> list[MasterProjectShare]:
        """
        Break the master box down by the project each mirrored movement
        came from.  Only projects with a non-zero share are listed.
        """
        master = self._find(BoxRef.master())
        stmt = (
            select(CashMovement)
            .where(CashMovement.movement_type.in_(_MIRROR_TYPES))
            .where(CashMovement.related_project_id.is_not(None))
            .where(
                or_(
                    CashMovement.source_box_id == master.id,
                    CashMovement.destination_box_id == master.id,
                )
            )
            .order_by(CashMovement.seq)
        )

        shares: dict[UUID, dict[str, Decimal]] = defaultdict(lambda: {ARS: _ZERO, USD: _ZERO})
        for movement in self.session.execute(stmt).scalars():
            deltas = effects_of(
                movement.movement_type,
                movement.source_box_id,
                movement.destination_box_id,
                movement.amount,
                movement.currency,
                details_from_payload(movement.details),
            )
            for delta in deltas:
                if delta.box_id == master.id:
                    shares[movement.related_project_id][delta.currency] += delta.amount

        return [
            MasterProjectShare(project_id=project_id, balance=BoxBalance(s[ARS], s[USD]))
            for project_id, s in sorted(shares.items(), key=lambda item: str(item[0]))
            if s[ARS] or s[USD]
        ]

    def fees_by_project(self) -> list[ProjectFees]:
        """
        Administrator fees each project has paid, net of reversed
        collections.  Projects whose collections were all reversed are
        left out.
        """
        stmt = (
            select(CashMovement)
            .where(
                CashMovement.movement_type.in_(
                    (MovementType.FEE_COLLECTION.value, MovementType.REVERSAL.value)
                )
            )
            .where(CashMovement.related_project_id.is_not(None))
            .order_by(CashMovement.seq)
        )

        totals: dict[UUID, dict[str, Decimal]] = defaultdict(lambda: {ARS: _ZERO, USD: _ZERO})
        counts: dict[UUID, int] = defaultdict(int)
        for movement in self.session.execute(stmt).scalars():
            sign = 1
            if movement.movement_type == MovementType.REVERSAL.value:
                details = details_from_payload(movement.details)
                if not (
                    isinstance(details, ReversalDetails)
                    and details.reversed_type == MovementType.FEE_COLLECTION
                ):
                    continue
                sign = -1
            totals[movement.related_project_id][movement.currency] += sign * movement.amount
            counts[movement.related_project_id] += sign

        return [
            ProjectFees(
                project_id=project_id,
                total=BoxBalance(t[ARS], t[USD]),
                collection_count=counts[project_id],
            )
            for project_id, t in sorted(totals.items(), key=lambda item: str(item[0]))
            if counts[project_id]
        ]

    def monthly_stats(self, ref: BoxRef, year: int, month: int) -> MonthlyStats:
        """
        What moved through one box during a calendar month (UTC).

        Amounts come from the balance effect of each movement on this box,
        so a currency exchange counts as paid in one currency and received
        in the other.
        """
        if not 1 <= month <= 12:
            raise ValueError("month must be between 1 and 12")
        box = self._find(ref)
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = (
            datetime(year + 1, 1, 1, tzinfo=timezone.utc)
            if month == 12
            else datetime(year, month + 1, 1, tzinfo=timezone.utc)
        )
        stmt = (
            select(CashMovement)
            .where(
                or_(
                    CashMovement.source_box_id == box.id,
                    CashMovement.destination_box_id == box.id,
                )
            )
            .where(CashMovement.created_at >= start)
            .where(CashMovement.created_at < end)
            .order_by(CashMovement.seq)
        )

        received = {ARS: _ZERO, USD: _ZERO}
        paid = {ARS: _ZERO, USD: _ZERO}
        by_type: dict[str, dict[str, Decimal]] = defaultdict(lambda: {ARS: _ZERO, USD: _ZERO})
        projects: set[UUID] = set()
        count = 0
        for movement in self.session.execute(stmt).scalars():
            deltas = effects_of(
                movement.movement_type,
                movement.source_box_id,
                movement.destination_box_id,
                movement.amount,
                movement.currency,
                details_from_payload(movement.details),
            )
            own = [d for d in deltas if d.box_id == box.id]
            if not own:
                # A mirror leg naming this box without moving it
                continue
            count += 1
            if movement.related_project_id is not None:
                projects.add(movement.related_project_id)
            for delta in own:
                if delta.amount > 0:
                    received[delta.currency] += delta.amount
                else:
                    paid[delta.currency] -= delta.amount
                by_type[movement.movement_type][delta.currency] += delta.amount

        return MonthlyStats(
            owner_key=box.owner_key,
            year=year,
            month=month,
            received=BoxBalance(received[ARS], received[USD]),
            paid=BoxBalance(paid[ARS], paid[USD]),
            net=BoxBalance(received[ARS] - paid[ARS], received[USD] - paid[USD]),
            movement_count=count,
            net_by_type={t: BoxBalance(v[ARS], v[USD]) for t, v in sorted(by_type.items())},
            project_count=len(projects),
        )
