"""Movement selector tests: filters, keyset paging and typed details."""

from datetime import timedelta
from decimal import Decimal

import pytest

from treasury_kernel.domain.movement_details import FeeCollectionDetails, ProjectIncomeDetails
from treasury_kernel.domain.values import BoxRef, FeeSpec
from treasury_kernel.models.movement import EndpointKind, MovementType
from treasury_kernel.selectors.movement_selector import MAX_PAGE_SIZE, MovementFilter, MovementSelector


@pytest.fixture
def selector(session):
    return MovementSelector(session)


@pytest.fixture
def history(ledger, fund, project_a, project_b, deterministic_clock):
    """Six movements spread over three days."""
    fund(project_a, "1000")
    deterministic_clock.advance_days(1)
    ledger.collect_fee(project_a, Decimal("1000"), "ARS", FeeSpec.percent(Decimal("10")))
    ledger.transfer_between_boxes(
        BoxRef.project(project_a), BoxRef.project(project_b), Decimal("100"), "ARS"
    )
    deterministic_clock.advance_days(1)
    fund(project_b, "5", "USD")
    ledger.record_admin_expense(Decimal("30"), "ARS", "Stationery")


class TestQueries:
    def test_all_newest_first(self, selector, history):
        movements = list(selector.query())
        assert len(movements) == 7
        assert [m.seq for m in movements] == sorted((m.seq for m in movements), reverse=True)
        assert selector.count() == 7

    def test_details_are_typed(self, selector, history):
        fee, = selector.query(MovementFilter(movement_types=(MovementType.FEE_COLLECTION,)))
        assert isinstance(fee.details, FeeCollectionDetails)
        assert fee.details.base_amount == Decimal("1000")
        assert fee.destination_kind is EndpointKind.ADMIN

    def test_filter_by_box(self, selector, history):
        admin = list(selector.query(MovementFilter(box=BoxRef.admin())))
        assert [m.movement_type for m in admin] == [
            MovementType.ADMIN_EXPENSE,
            MovementType.FEE_COLLECTION,
        ]

    def test_filter_by_project_includes_mirrors(self, selector, history, project_b):
        types = {m.movement_type for m in selector.query(MovementFilter(project_id=project_b))}
        assert types == {
            MovementType.PROJECT_INCOME,
            MovementType.MASTER_DUPLICATION,
            MovementType.TRANSFER,
        }

    def test_filter_by_date_range(self, selector, history, deterministic_clock):
        today = deterministic_clock.now()
        day_two = list(selector.query(MovementFilter(
            start=today - timedelta(days=1), end=today,
        )))
        assert {m.movement_type for m in day_two} == {
            MovementType.FEE_COLLECTION,
            MovementType.TRANSFER,
        }

    def test_filter_by_operation(self, selector, ledger, fund, project_a):
        receipt = fund(project_a, "1")
        movements = selector.operation_movements(receipt.operation_id)
        assert [m.leg_index for m in movements] == [0, 1]
        assert isinstance(movements[0].details, ProjectIncomeDetails)
        assert selector.count(MovementFilter(operation_id=receipt.operation_id)) == 2

    def test_no_match(self, selector, ledger):
        assert list(selector.query()) == []
        assert selector.page().has_more is False


class TestPaging:
    def test_pages_cover_everything_once(self, selector, history):
        seen = []
        page = selector.page(limit=3)
        seen.extend(page.items)
        while page.has_more:
            page = selector.page(limit=3, before_seq=page.next_before_seq)
            seen.extend(page.items)
        assert len(seen) == 7
        assert len({m.id for m in seen}) == 7

    def test_small_pages_match_single_query(self, selector, history):
        assert [m.id for m in selector.query(page_size=2)] == [
            m.id for m in selector.query(page_size=MAX_PAGE_SIZE)
        ]

    @pytest.mark.parametrize("limit", [0, MAX_PAGE_SIZE + 1])
    def test_limit_bounds(self, selector, limit):
        with pytest.raises(ValueError):
            selector.page(limit=limit)

    def test_get_movement(self, selector, ledger, fund, project_a):
        receipt = fund(project_a, "1")
        movement = selector.get_movement(receipt.movement_ids[0])
        assert movement.movement_type is MovementType.PROJECT_INCOME
        assert movement.source_box_id is None
