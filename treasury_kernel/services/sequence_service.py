"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Hands out strictly increasing numbers for movement ordering (``seq``)
    and loan codes (LOAN-0001, LOAN-0002, ...).  A dedicated counter row
    is locked with ``SELECT ... FOR UPDATE`` so concurrent allocations
    serialize.  The max-plus-one query pattern is never used.

Invariants enforced:
    - Monotonicity: every value is greater than any value previously
      returned for the same name.
    - Transactional: an allocation becomes visible only when the caller
      commits; on rollback the value is returned.

Failure modes:
    - IntegrityError on a concurrent first use of a name; handled by a
      savepoint rollback and re-select.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()``; caller controls boundaries.

    Usage:
        with session.begin():
            seq = SequenceService(session).next_value(SequenceService.MOVEMENT)
    """

    MOVEMENT = "cash_movement"
    LOAN_CODE = "loan_code"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Locks the counter row (creating it on first use), increments it and
        returns the new value.  The row stays locked until the caller's
        transaction ends.

        Returns:
            The next sequence value (always > 0).
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use.  Another transaction may create it at the same time,
            # so insert inside a savepoint.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing, or None if unused."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
