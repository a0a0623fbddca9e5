"""Balance selector tests."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from treasury_kernel.domain.values import BoxRef, FeeSpec
from treasury_kernel.exceptions import BoxNotFoundError
from treasury_kernel.models.cash_box import OwnerKind
from treasury_kernel.selectors.balance_selector import BalanceSelector, BoxBalance


@pytest.fixture
def selector(session):
    return BalanceSelector(session)


class TestBalances:
    def test_get_balance(self, selector, fund, project_a):
        fund(project_a, "120.50")
        fund(project_a, "3", "USD")
        balance = selector.get_balance(OwnerKind.PROJECT, project_a)
        assert balance == BoxBalance(Decimal("120.50"), Decimal("3"))
        assert balance.get("USD") == Decimal("3")

    def test_unknown_box(self, selector, ledger):
        with pytest.raises(BoxNotFoundError):
            selector.get_balance("project", uuid4())

    def test_reads_are_stable(self, selector, fund, project_a):
        fund(project_a, "10")
        assert selector.get_box(BoxRef.master()) == selector.get_box(BoxRef.master())

    def test_box_summary_counters(self, selector, ledger, fund, project_a):
        fund(project_a, "100")
        ledger.record_project_expense(project_a, Decimal("40"), "ARS", "Tools")
        summary = selector.get_box(BoxRef.project(project_a))
        assert summary.owner_kind is OwnerKind.PROJECT
        assert summary.owner_ref == project_a
        assert summary.lifetime_received.ars == Decimal("100")
        assert summary.lifetime_paid.ars == Decimal("40")
        assert summary.balance.ars == Decimal("60")
        assert summary.last_movement_at is not None


class TestListings:
    def test_list_boxes_by_kind(self, selector, ledger, project_a, project_b):
        projects = selector.list_boxes(OwnerKind.PROJECT)
        assert {b.owner_ref for b in projects} == {project_a, project_b}
        assert len(selector.list_boxes()) == 4

    def test_retired_boxes_hidden_by_default(self, selector, ledger, project_b):
        ledger.boxes.retire_project_box(project_b)
        assert project_b not in {b.owner_ref for b in selector.list_boxes("project")}
        retired = [
            b for b in selector.list_boxes("project", include_retired=True)
            if b.owner_ref == project_b
        ]
        assert retired[0].is_active is False

    def test_financial_summary(self, selector, ledger, fund, project_a, project_b):
        fund(project_a, "1000")
        fund(project_b, "10", "USD")
        ledger.transfer_between_boxes(BoxRef.master(), BoxRef.admin(), Decimal("200"), "ARS")

        summary = selector.financial_summary()
        assert summary.master == BoxBalance(Decimal("800"), Decimal("10"))
        assert summary.admin == BoxBalance(Decimal("200"), Decimal("0"))
        assert summary.projects_total == BoxBalance(Decimal("1000"), Decimal("10"))
        assert summary.project_count == 2


class TestMasterByProject:
    def test_breakdown_follows_mirrors(self, selector, ledger, fund, project_a, project_b):
        fund(project_a, "1000")
        fund(project_b, "500")
        ledger.record_project_expense(project_a, Decimal("250"), "ARS", "Cement")

        shares = {s.project_id: s.balance for s in selector.master_by_project()}
        assert shares[project_a].ars == Decimal("750")
        assert shares[project_b].ars == Decimal("500")

    def test_reversed_payment_drops_out(self, selector, ledger, fund, project_a, project_b):
        payment = fund(project_a, "1000")
        fund(project_b, "1")
        ledger.reverse_operation(payment.operation_id)

        shares = {s.project_id for s in selector.master_by_project()}
        assert shares == {project_b}


class TestFeesByProject:
    def test_totals_per_project(self, selector, ledger, fund, project_a, project_b):
        fund(project_a, "1000")
        fund(project_b, "2000")
        fund(project_b, "100", "USD")
        ledger.collect_fee(project_a, Decimal("1000"), "ARS", FeeSpec.percent(Decimal("10")))
        ledger.collect_fee(project_b, Decimal("2000"), "ARS", FeeSpec.fixed_amount(Decimal("50")))
        ledger.collect_fee(project_b, Decimal("2000"), "ARS", FeeSpec.fixed_amount(Decimal("70")))
        ledger.collect_fee(project_b, Decimal("100"), "USD", FeeSpec.fixed_amount(Decimal("5")))

        fees = {f.project_id: f for f in selector.fees_by_project()}
        assert fees[project_a].total == BoxBalance(Decimal("100"), Decimal("0"))
        assert fees[project_a].collection_count == 1
        assert fees[project_b].total == BoxBalance(Decimal("120"), Decimal("5"))
        assert fees[project_b].collection_count == 3

    def test_reversed_collections_are_netted(self, selector, ledger, fund, project_a, project_b):
        fund(project_a, "1000")
        fund(project_b, "1000")
        only_fee = ledger.collect_fee(
            project_a, Decimal("1000"), "ARS", FeeSpec.fixed_amount(Decimal("40"))
        )
        ledger.collect_fee(project_b, Decimal("1000"), "ARS", FeeSpec.fixed_amount(Decimal("30")))
        second = ledger.collect_fee(
            project_b, Decimal("1000"), "ARS", FeeSpec.fixed_amount(Decimal("20"))
        )
        ledger.reverse_operation(only_fee.operation_id)
        ledger.reverse_operation(second.operation_id)

        fees = selector.fees_by_project()
        assert [f.project_id for f in fees] == [project_b]
        assert fees[0].total.ars == Decimal("30")
        assert fees[0].collection_count == 1

    def test_other_reversals_ignored(self, selector, ledger, fund, project_a):
        payment = fund(project_a, "1000")
        fund(project_a, "100")
        ledger.collect_fee(project_a, Decimal("100"), "ARS", FeeSpec.fixed_amount(Decimal("10")))
        ledger.reverse_operation(payment.operation_id)

        fee, = selector.fees_by_project()
        assert fee.total.ars == Decimal("10")

    def test_empty(self, selector, ledger):
        assert selector.fees_by_project() == []


class TestMonthlyStats:
    def test_project_box_month(
        self, selector, ledger, fund, project_a, deterministic_clock
    ):
        fund(project_a, "1000")
        ledger.collect_fee(project_a, Decimal("1000"), "ARS", FeeSpec.percent(Decimal("10")))
        deterministic_clock.set_time(datetime(2024, 4, 2, 9, 0, tzinfo=timezone.utc))
        fund(project_a, "500")
        ledger.record_project_expense(project_a, Decimal("200"), "ARS", "Bricks")

        march = selector.monthly_stats(BoxRef.project(project_a), 2024, 3)
        assert march.received == BoxBalance(Decimal("1000"), Decimal("0"))
        assert march.paid == BoxBalance(Decimal("100"), Decimal("0"))
        assert march.net.ars == Decimal("900")
        # The master duplication names the project but only moves the master
        assert march.movement_count == 2
        assert march.net_by_type["project_income"].ars == Decimal("1000")
        assert march.net_by_type["fee_collection"].ars == Decimal("-100")
        assert march.project_count == 1

        april = selector.monthly_stats(BoxRef.project(project_a), 2024, 4)
        assert april.received.ars == Decimal("500")
        assert april.paid.ars == Decimal("200")
        assert april.movement_count == 2
        assert set(april.net_by_type) == {"project_income", "project_expense"}

    def test_admin_box_counts_fee_projects(self, selector, ledger, fund, project_a, project_b):
        fund(project_a, "1000")
        fund(project_b, "1000")
        for project_id in (project_a, project_b):
            ledger.collect_fee(project_id, Decimal("1000"), "ARS", FeeSpec.fixed_amount(Decimal("15")))
        ledger.record_admin_expense(Decimal("5"), "ARS", "Stationery")

        stats = selector.monthly_stats(BoxRef.admin(), 2024, 3)
        assert stats.received.ars == Decimal("30")
        assert stats.paid.ars == Decimal("5")
        assert stats.net.ars == Decimal("25")
        assert stats.movement_count == 3
        assert stats.project_count == 2

    def test_exchange_counts_in_both_currencies(self, selector, ledger, fund, project_a):
        fund(project_a, "1000")
        ledger.convert_currency(BoxRef.master(), "ARS", Decimal("1000"), "USD")

        stats = selector.monthly_stats(BoxRef.master(), 2024, 3)
        assert stats.received == BoxBalance(Decimal("1000"), Decimal("1.00"))
        assert stats.paid == BoxBalance(Decimal("1000"), Decimal("0"))
        assert stats.net_by_type["currency_exchange"] == BoxBalance(Decimal("-1000"), Decimal("1.00"))
        assert stats.net_by_type["master_duplication"] == BoxBalance(Decimal("1000"), Decimal("0"))

    def test_december_ends_at_new_year(self, selector, fund, project_a, deterministic_clock):
        deterministic_clock.set_time(datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc))
        fund(project_a, "10")
        deterministic_clock.set_time(datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc))
        fund(project_a, "20")

        december = selector.monthly_stats(BoxRef.project(project_a), 2024, 12)
        january = selector.monthly_stats(BoxRef.project(project_a), 2025, 1)
        assert december.received.ars == Decimal("10")
        assert january.received.ars == Decimal("20")

    def test_quiet_month(self, selector, ledger, project_a):
        stats = selector.monthly_stats(BoxRef.project(project_a), 2023, 7)
        assert stats.movement_count == 0
        assert stats.received == BoxBalance()
        assert stats.net_by_type == {}

    @pytest.mark.parametrize("month", [0, 13])
    def test_month_out_of_range(self, selector, ledger, project_a, month):
        with pytest.raises(ValueError):
            selector.monthly_stats(BoxRef.project(project_a), 2024, month)

    def test_unknown_box(self, selector, ledger):
        with pytest.raises(BoxNotFoundError):
            selector.monthly_stats(BoxRef.project(uuid4()), 2024, 3)
