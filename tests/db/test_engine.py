"""Engine setup and column types."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from treasury_kernel.db.engine import (
    apply_lock_timeout,
    get_engine,
    get_session_factory,
    reset_engine,
    session_scope,
)
from treasury_kernel.domain.values import BoxRef
from treasury_kernel.models.cash_box import CashBox
from treasury_kernel.models.sequence import SequenceCounter
from treasury_kernel.services.cash_box_store import CashBoxStore
from treasury_kernel.services.sequence_service import SequenceService


class TestEngine:
    def test_uninitialized_engine_raises(self, db_engine):
        reset_engine()
        with pytest.raises(RuntimeError):
            get_engine()
        with pytest.raises(RuntimeError):
            get_session_factory()

    def test_session_scope_commits(self, db_engine):
        with session_scope() as s:
            CashBoxStore(s).bootstrap()
        with session_scope() as s:
            assert s.query(CashBox).count() == 2

    def test_session_scope_rolls_back_on_error(self, db_engine):
        with pytest.raises(ValueError):
            with session_scope() as s:
                CashBoxStore(s).bootstrap()
                raise ValueError("boom")
        with session_scope() as s:
            assert s.query(CashBox).count() == 0

    def test_lock_timeout_is_noop_on_sqlite(self, session, is_sqlite):
        if not is_sqlite:
            pytest.skip("PostgreSQL sets a real lock_timeout")
        with session.begin():
            apply_lock_timeout(session, 0.5)

    def test_lock_timeout_set_locally_on_postgres(self, session, is_sqlite):
        if is_sqlite:
            pytest.skip("SQLite has no lock_timeout")
        with session.begin():
            apply_lock_timeout(session, 0.25)
            assert session.execute(text("SHOW lock_timeout")).scalar() == "250ms"


class TestColumnTypes:
    def test_money_round_trips_exactly(self, session_factory):
        with session_factory() as s, s.begin():
            master, _ = CashBoxStore(s).bootstrap()
            master.balance_ars = Decimal("12345678901234.123456789")
            box_id = master.id

        with session_factory() as s:
            box = s.get(CashBox, box_id)
            assert box.balance_ars == Decimal("12345678901234.123456789")
            assert isinstance(box.balance_ars, Decimal)

    def test_datetimes_read_back_as_utc(self, session_factory):
        local = datetime(2024, 3, 15, 9, 0, tzinfo=timezone(timedelta(hours=-3)))
        with session_factory() as s, s.begin():
            master, _ = CashBoxStore(s).bootstrap()
            master.last_movement_at = local
            box_id = master.id

        with session_factory() as s:
            stored = s.get(CashBox, box_id).last_movement_at
            assert stored.tzinfo is not None
            assert stored == datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

    def test_owner_key_is_unique(self, session_factory):
        with session_factory() as s, s.begin():
            first = CashBoxStore(s).ensure_box(BoxRef.admin())
            again = CashBoxStore(s).ensure_box(BoxRef.admin())
            assert first.id == again.id


class TestSequences:
    def test_sequence_starts_at_one_and_increments(self, session):
        sequences = SequenceService(session)
        assert sequences.current_value(SequenceService.MOVEMENT) is None
        assert [sequences.next_value(SequenceService.MOVEMENT) for _ in range(3)] == [1, 2, 3]
        assert sequences.current_value(SequenceService.MOVEMENT) == 3
        # Counters are independent
        assert sequences.next_value(SequenceService.LOAN_CODE) == 1
        assert session.query(SequenceCounter).count() == 2
