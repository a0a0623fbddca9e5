"""
CashBoxStore -- persistence and locking for cash boxes.

Responsibility:
    Creates boxes (master and admin at bootstrap, one per project when the
    project is created), soft-retires project boxes on archival, and hands
    the LedgerEngine row-locked, freshly read boxes to apply balance deltas
    to.  Balance reads for clients live in selectors/balance_selector.py.

Invariants enforced:
    - One box per owner (UNIQUE owner_key; creation is idempotent and
      race-safe).
    - Balances are computed only from rows locked in the current
      transaction (``SELECT ... FOR UPDATE`` with populate_existing).
    - No delta is applied if any resulting balance would be negative.
    - Retired boxes accept no new movements.

Failure modes:
    - BoxNotFoundError for an owner with no box.
    - BoxRetiredError when locking a retired box for a write.
    - InsufficientFundsError from apply_deltas; nothing is mutated.
"""

from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.posting_rules import BoxDelta
from treasury_kernel.domain.values import BoxRef
from treasury_kernel.exceptions import (
    BoxNotFoundError,
    BoxRetiredError,
    InsufficientFundsError,
)
from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.cash_box import CashBox
from treasury_kernel.services.base import BaseService

logger = get_logger("services.cash_box_store")

_ZERO = Decimal("0")


class CashBoxStore(BaseService[CashBox]):
    """
    Box lifecycle and row locking.

    Non-goals:
        - Does NOT append movements; LedgerEngine pairs every delta with
          its movement.
        - Does NOT commit.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ensure_box(self, ref: BoxRef, actor_id: UUID | None = None) -> CashBox:
        """
        Return the box for ``ref``, creating it if needed.

        Concurrent first creation is resolved through a savepoint: the
        loser of the race re-reads the winner's row.
        """
        existing = self._find(ref.owner_key)
        if existing is not None:
            return existing

        now = self._clock.now()
        savepoint = self.session.begin_nested()
        try:
            box = CashBox(
                owner_kind=ref.owner_kind.value,
                owner_ref=ref.owner_ref,
                owner_key=ref.owner_key,
                balance_ars=_ZERO,
                balance_usd=_ZERO,
                lifetime_received_ars=_ZERO,
                lifetime_received_usd=_ZERO,
                lifetime_paid_ars=_ZERO,
                lifetime_paid_usd=_ZERO,
                is_active=True,
                created_at=now,
                updated_at=now,
                created_by_id=actor_id,
            )
            self.session.add(box)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("cash_box_create_race", extra={"owner_key": ref.owner_key})
            box = self._find(ref.owner_key)
            if box is None:
                raise
            return box

        logger.info(
            "cash_box_created",
            extra={"box_id": str(box.id), "owner_key": box.owner_key},
        )
        return box

    def bootstrap(self, actor_id: UUID | None = None) -> tuple[CashBox, CashBox]:
        """Create the master and admin boxes if they don't exist."""
        master = self.ensure_box(BoxRef.master(), actor_id)
        admin = self.ensure_box(BoxRef.admin(), actor_id)
        return master, admin

    def open_project_box(self, project_id: UUID, actor_id: UUID | None = None) -> CashBox:
        """
        Create (or reactivate) the box of a project.

        Call inside the transaction that creates the project so both commit
        together.
        """
        box = self.ensure_box(BoxRef.project(project_id), actor_id)
        if not box.is_active:
            box = self._lock_one(box.owner_key)
            box.is_active = True
            box.retired_at = None
            box.touch(self._clock.now(), actor_id)
            self.session.flush()
            logger.info(
                "cash_box_reactivated",
                extra={"box_id": str(box.id), "owner_key": box.owner_key},
            )
        return box

    def retire_project_box(self, project_id: UUID, actor_id: UUID | None = None) -> CashBox:
        """Soft-retire a project's box.  Idempotent; history is preserved."""
        box = self._lock_one(BoxRef.project(project_id).owner_key)
        if box.is_active:
            now = self._clock.now()
            box.is_active = False
            box.retired_at = now
            box.touch(now, actor_id)
            self.session.flush()
            logger.info(
                "cash_box_retired",
                extra={
                    "box_id": str(box.id),
                    "owner_key": box.owner_key,
                    "balance_ars": box.balance_ars,
                    "balance_usd": box.balance_usd,
                },
            )
        return box

    # =========================================================================
    # Lookup and locking
    # =========================================================================

    def get_box(self, ref: BoxRef) -> CashBox:
        """Unlocked lookup.  Raises BoxNotFoundError."""
        box = self._find(ref.owner_key)
        if box is None:
            raise BoxNotFoundError(ref.owner_kind.value, ref.owner_ref)
        return box

    def lock_boxes(self, refs: list[BoxRef], require_active: bool = True) -> dict[str, CashBox]:
        """
        Lock every referenced box for the rest of the transaction.

        Rows are locked in id order so two operations over the same boxes
        cannot deadlock each other.  Locked rows are re-read
        (populate_existing); stale identity-map state is never used.

        Returns:
            Boxes keyed by owner_key.
        """
        keys = sorted({ref.owner_key for ref in refs})
        rows = self.session.execute(
            select(CashBox)
            .where(CashBox.owner_key.in_(keys))
            .order_by(CashBox.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        boxes = {box.owner_key: box for box in rows}

        for ref in refs:
            box = boxes.get(ref.owner_key)
            if box is None:
                raise BoxNotFoundError(ref.owner_kind.value, ref.owner_ref)
            if require_active and not box.is_active:
                raise BoxRetiredError(str(box.id))
        return boxes

    def apply_deltas(self, boxes: dict[UUID, CashBox], deltas: list[BoxDelta]) -> None:
        """
        Apply signed deltas to locked boxes.

        All resulting balances are checked before any is changed, so a
        rejected operation leaves every box untouched.

        Raises:
            InsufficientFundsError: A balance would drop below zero.
        """
        net: dict[tuple[UUID, str], Decimal] = defaultdict(lambda: _ZERO)
        for delta in deltas:
            net[(delta.box_id, delta.currency)] += delta.amount

        for (box_id, currency), amount in net.items():
            box = boxes[box_id]
            available = box.balance(currency)
            if available + amount < 0:
                logger.warning(
                    "insufficient_funds",
                    extra={
                        "box_id": str(box_id),
                        "owner_key": box.owner_key,
                        "currency": currency,
                        "available": available,
                        "requested": -amount,
                    },
                )
                raise InsufficientFundsError(str(box_id), currency, available, -amount)

        now = self._clock.now()
        for delta in deltas:
            box = boxes[delta.box_id]
            box.apply_delta(delta.currency, delta.amount, now)
            box.touch(now)
        self.session.flush()

    def _find(self, owner_key: str) -> CashBox | None:
        return self.session.execute(
            select(CashBox).where(CashBox.owner_key == owner_key)
        ).scalar_one_or_none()

    def _lock_one(self, owner_key: str) -> CashBox:
        box = self.session.execute(
            select(CashBox)
            .where(CashBox.owner_key == owner_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if box is None:
            kind, _, ref = owner_key.partition(":")
            raise BoxNotFoundError(kind, ref or None)
        return box
