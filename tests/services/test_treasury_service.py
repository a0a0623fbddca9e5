"""
TreasuryService tests.

Tests cover:
- OperationResult success/failure mapping per error kind
- One transaction per request (rejected requests change nothing)
- Idempotent replays and key reuse across operation kinds
- Loan workflow through the service, including read-time overdue status
- Administrator fees accrued, collected and cancelled through the service
- Read API: balances, summaries, movement paging, audit
- Structured log events with bound context
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from treasury_kernel.domain.dtos import (
    AdminFeeReceipt,
    BoxReceipt,
    LedgerReceipt,
    LoanReceipt,
    RecordProjectPayment,
)
from treasury_kernel.domain.values import BoxRef, FeeSpec
from treasury_kernel.exceptions import ErrorKind
from treasury_kernel.models.cash_box import OwnerKind
from treasury_kernel.models.loan import LoanStatus
from treasury_kernel.models.movement import MovementType
from treasury_kernel.selectors.movement_selector import MovementFilter


def _ok(result):
    assert result.ok, f"{result.error_kind}: {result.message}"
    return result.data


class TestResults:
    def test_success_carries_receipt(self, service, project_a, test_actor_id):
        result = service.record_project_payment(
            project_id=project_a, amount=Decimal("1500"), currency="ARS", actor_id=test_actor_id
        )

        receipt = _ok(result)
        assert isinstance(receipt, LedgerReceipt)
        assert result.replayed is False
        assert service.get_balance(OwnerKind.PROJECT, project_a).ars == Decimal("1500")
        assert service.get_balance("master").ars == Decimal("1500")

    def test_execute_accepts_request_objects(self, service, project_a):
        request = RecordProjectPayment(project_id=project_a, amount=Decimal("10"), currency="USD")
        assert service.execute(request).ok

    def test_unknown_request_type(self, service):
        with pytest.raises(TypeError):
            service.execute(object())

    def test_insufficient_funds(self, funded_service, project_a):
        result = funded_service.collect_fee(
            project_id=project_a,
            amount=Decimal("20000"),
            currency="ARS",
            fee_spec=FeeSpec.fixed_amount(Decimal("10000.01")),
        )

        assert not result.ok
        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert result.retryable is False
        assert result.error_details["available"] == Decimal("10000")
        assert result.error_details["currency"] == "ARS"
        assert funded_service.get_balance("admin").ars == 0

    @pytest.mark.parametrize(
        "amount, kind",
        [
            (Decimal("0"), ErrorKind.INVALID_AMOUNT),
            (Decimal("-1"), ErrorKind.INVALID_AMOUNT),
            (1.5, ErrorKind.INVALID_AMOUNT),
        ],
    )
    def test_invalid_amount(self, service, project_a, amount, kind):
        result = service.record_project_payment(project_id=project_a, amount=amount, currency="ARS")
        assert result.error_kind is kind

    def test_unknown_project_box(self, service):
        result = service.record_project_payment(
            project_id=uuid4(), amount=Decimal("1"), currency="ARS"
        )
        assert result.error_kind is ErrorKind.UNKNOWN_ENTITY

    def test_open_box_for_unregistered_project(self, service):
        result = service.open_project_box(project_id=uuid4())
        assert result.error_kind is ErrorKind.UNKNOWN_ENTITY

    def test_rate_unavailable(self, funded_service, project_a):
        result = funded_service.convert_currency(
            box=BoxRef.project(project_a),
            from_currency="ARS",
            amount=Decimal("1000"),
            to_currency="USD",
            rate_source="mep",
        )
        assert result.error_kind is ErrorKind.RATE_UNAVAILABLE
        assert result.error_details["source"] == "mep"

    def test_invalid_state(self, funded_service, project_a):
        payment = _ok(funded_service.record_project_payment(
            project_id=project_a, amount=Decimal("1"), currency="ARS"
        ))
        assert funded_service.reverse_operation(operation_id=payment.operation_id).ok
        again = funded_service.reverse_operation(operation_id=payment.operation_id)
        assert again.error_kind is ErrorKind.INVALID_STATE


class TestAtomicity:
    def test_rejected_expense_leaves_no_trace(self, funded_service, project_a):
        _ok(funded_service.record_master_withdrawal(
            amount=Decimal("9500"), currency="ARS", description="Owner draw"
        ))
        movements_before = len(list(funded_service.query_movements()))

        result = funded_service.record_project_expense(
            project_id=project_a, amount=Decimal("600"), currency="ARS", description="Cement"
        )

        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert funded_service.get_balance(OwnerKind.PROJECT, project_a).ars == Decimal("10000")
        assert funded_service.get_balance("master").ars == Decimal("500")
        assert len(list(funded_service.query_movements())) == movements_before

    def test_rejected_loan_leaves_no_loan(self, service, project_a, project_b):
        result = service.issue_loan(
            lender_project_id=project_a,
            borrower_project_id=project_b,
            principal=Decimal("100"),
            currency="ARS",
            due_date=date(2024, 6, 15),
            installment_count=1,
        )
        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert service.list_loans() == []
        assert service.loan_statistics().total_active == 0


class TestIdempotency:
    def test_replay_returns_first_receipt(self, service, project_a):
        fields = dict(
            project_id=project_a,
            amount=Decimal("700"),
            currency="ARS",
            idempotency_key="payment-42",
        )
        first = service.record_project_payment(**fields)
        second = service.record_project_payment(**fields)

        assert first.ok and second.ok
        assert second.replayed is True
        assert second.data == first.data
        assert service.get_balance(OwnerKind.PROJECT, project_a).ars == Decimal("700")
        assert service.get_balance("master").ars == Decimal("700")

    def test_replay_of_loan_receipt(self, funded_service, project_a, project_b):
        fields = dict(
            lender_project_id=project_a,
            borrower_project_id=project_b,
            principal=Decimal("1000"),
            currency="ARS",
            due_date=date(2024, 6, 15),
            installment_count=2,
            idempotency_key="loan-1",
        )
        first = _ok(funded_service.issue_loan(**fields))
        replay = funded_service.issue_loan(**fields)

        assert isinstance(replay.data, LoanReceipt)
        assert replay.replayed
        assert replay.data.loan_id == first.loan_id
        assert len(funded_service.list_loans()) == 1
        assert funded_service.get_balance(OwnerKind.PROJECT, project_b).ars == Decimal("1000")

    def test_key_reused_for_other_operation(self, funded_service, project_a):
        _ok(funded_service.record_project_payment(
            project_id=project_a, amount=Decimal("1"), currency="ARS", idempotency_key="k-1"
        ))
        result = funded_service.record_master_withdrawal(
            amount=Decimal("1"), currency="ARS", description="x", idempotency_key="k-1"
        )
        assert result.error_kind is ErrorKind.VALIDATION_ERROR
        assert funded_service.get_balance("master").ars == Decimal("10001")

    def test_rejected_request_does_not_consume_key(self, service, project_a):
        fields = dict(
            project_id=project_a,
            amount=Decimal("100"),
            currency="ARS",
            fee_spec=FeeSpec.fixed_amount(Decimal("10")),
            idempotency_key="fee-1",
        )
        assert service.collect_fee(**fields).error_kind is ErrorKind.INSUFFICIENT_FUNDS

        _ok(service.record_project_payment(project_id=project_a, amount=Decimal("100"), currency="ARS"))
        retried = service.collect_fee(**fields)
        assert retried.ok and not retried.replayed
        assert service.get_balance("admin").ars == Decimal("10")


class TestBoxes:
    def test_open_and_retire_box(self, service, project_registry):
        project_id = uuid4()
        project_registry.add(project_id, "Quinta Pilar")

        opened = _ok(service.open_project_box(project_id=project_id))
        assert isinstance(opened, BoxReceipt)
        assert opened.is_active

        retired = _ok(service.retire_project_box(project_id=project_id))
        assert retired.box_id == opened.box_id
        assert not retired.is_active

        result = service.record_project_payment(
            project_id=project_id, amount=Decimal("1"), currency="ARS"
        )
        assert result.error_kind is ErrorKind.UNKNOWN_ENTITY
        active = {b.owner_ref for b in service.list_boxes(OwnerKind.PROJECT)}
        assert project_id not in active
        everything = {b.owner_ref for b in service.list_boxes(OwnerKind.PROJECT, include_retired=True)}
        assert project_id in everything


class TestLoansThroughService:
    def test_loan_lifecycle_and_overdue(
        self, funded_service, project_a, project_b, deterministic_clock
    ):
        loan = _ok(funded_service.issue_loan(
            lender_project_id=project_a,
            borrower_project_id=project_b,
            principal=Decimal("900"),
            currency="ARS",
            due_date=date(2024, 6, 15),
            installment_count=3,
            interest_rate=Decimal("5"),
        ))
        _ok(funded_service.activate_loan(loan_id=loan.loan_id))

        dto = funded_service.get_loan(loan.loan_id)
        assert dto.status is LoanStatus.ACTIVE
        assert dto.installments[0].amount_due == Decimal("315")

        deterministic_clock.advance_days(35)
        dto = funded_service.get_loan(loan.loan_id)
        assert dto.status is LoanStatus.OVERDUE
        assert dto.stored_status is LoanStatus.ACTIVE
        assert [i.number for i in funded_service.overdue_installments()] == [1]
        assert [found.id for found in funded_service.list_loans(status="overdue")] == [loan.loan_id]

        first = dto.installments[0]
        _ok(funded_service.assess_late_fee(installment_id=first.id, amount=Decimal("15")))
        paid = _ok(funded_service.register_installment_payment(
            installment_id=first.id, amount=Decimal("330")
        ))
        assert paid.installment_status == "paid"
        assert funded_service.get_loan(loan.loan_id).status is LoanStatus.ACTIVE

        stats = funded_service.loan_statistics()
        assert stats.total_active == 1
        assert stats.total_lent_ars == Decimal("900")
        assert stats.total_outstanding_ars == Decimal("600")

    def test_unknown_loan(self, service):
        result = service.activate_loan(loan_id=uuid4())
        assert result.error_kind is ErrorKind.UNKNOWN_ENTITY
        assert service.get_loan(uuid4()) is None


class TestAdminFeesThroughService:
    def test_accrue_then_collect(self, funded_service, project_a):
        accrued = _ok(funded_service.accrue_admin_fee(
            project_id=project_a, base_amount=Decimal("2000"), currency="ARS",
            installment_ref="C-1",
        ))
        assert isinstance(accrued, AdminFeeReceipt)
        assert funded_service.total_pending_fees() == Decimal("300")
        assert [f.id for f in funded_service.pending_admin_fees(project_a)] == [accrued.fee_id]

        collected = _ok(funded_service.collect_admin_fee(fee_id=accrued.fee_id))
        assert collected.status == "collected"
        assert funded_service.get_balance("admin").ars == Decimal("300")
        assert funded_service.get_balance(OwnerKind.PROJECT, project_a).ars == Decimal("9700")
        assert funded_service.pending_admin_fees() == []
        assert funded_service.get_admin_fee(accrued.fee_id).collection_operation_id == (
            collected.operation_id
        )

        fees = {f.project_id: f.total for f in funded_service.fees_by_project()}
        assert fees[project_a].ars == Decimal("300")
        stats = funded_service.admin_fee_stats()
        assert stats.collected_total == Decimal("300")
        assert stats.pending_count == 0
        assert funded_service.audit().is_clean

    def test_accrual_replay_and_duplicate_installment(self, service, project_a):
        fields = dict(
            project_id=project_a, base_amount=Decimal("1000"), currency="ARS",
            installment_ref="C-2", idempotency_key="fee-accrual-1",
        )
        first = _ok(service.accrue_admin_fee(**fields))
        replay = service.accrue_admin_fee(**fields)
        assert replay.replayed
        assert replay.data == first

        fields["idempotency_key"] = "fee-accrual-2"
        duplicate = _ok(service.accrue_admin_fee(**fields))
        assert duplicate.created is False
        assert duplicate.fee_id == first.fee_id
        assert len(service.pending_admin_fees()) == 1

    def test_failed_collection_keeps_fee_pending(self, service, project_a):
        accrued = _ok(service.accrue_admin_fee(
            project_id=project_a, base_amount=Decimal("1000"), currency="ARS"
        ))
        result = service.collect_admin_fee(fee_id=accrued.fee_id)
        assert result.error_kind is ErrorKind.INSUFFICIENT_FUNDS
        assert [f.id for f in service.pending_admin_fees()] == [accrued.fee_id]

    def test_cancel_then_collect_is_invalid_state(self, service, project_a):
        accrued = _ok(service.accrue_admin_fee(
            project_id=project_a, base_amount=Decimal("1000"), currency="ARS"
        ))
        _ok(service.cancel_admin_fee(fee_id=accrued.fee_id, reason="Waived"))
        result = service.collect_admin_fee(fee_id=accrued.fee_id)
        assert result.error_kind is ErrorKind.INVALID_STATE
        assert result.error_code == "INVALID_ADMIN_FEE_TRANSITION"
        assert service.admin_fee_stats().cancelled_count == 1

    def test_unknown_fee(self, service):
        result = service.cancel_admin_fee(fee_id=uuid4())
        assert result.error_kind is ErrorKind.UNKNOWN_ENTITY
        assert service.get_admin_fee(uuid4()) is None

    def test_monthly_stats(self, funded_service, project_a):
        stats = funded_service.monthly_stats(BoxRef.project(project_a), 2024, 3)
        assert stats.received.ars == Decimal("10000")
        assert stats.received.usd == Decimal("500")
        assert stats.movement_count == 2


class TestReads:
    def test_financial_summary_and_master_breakdown(self, funded_service, project_a, project_b):
        _ok(funded_service.record_project_payment(
            project_id=project_b, amount=Decimal("2000"), currency="ARS"
        ))
        _ok(funded_service.record_project_expense(
            project_id=project_b, amount=Decimal("500"), currency="ARS", description="Paint"
        ))

        summary = funded_service.financial_summary()
        assert summary.master.ars == Decimal("11500")
        assert summary.master.usd == Decimal("500")
        assert summary.projects_total.ars == Decimal("11500")
        assert summary.project_count == 2

        shares = {s.project_id: s.balance for s in funded_service.master_by_project()}
        assert shares[project_a].ars == Decimal("10000")
        assert shares[project_a].usd == Decimal("500")
        assert shares[project_b].ars == Decimal("1500")

    def test_preview_conversion(self, service):
        quote = service.preview_conversion("USD", Decimal("2"), "ARS")
        assert quote.to_amount == Decimal("2100")

    def test_query_movements_pages_newest_first(self, service, project_a, project_b):
        for n in range(1, 4):
            _ok(service.record_project_payment(
                project_id=project_a, amount=Decimal(n), currency="ARS"
            ))
        _ok(service.record_project_payment(project_id=project_b, amount=Decimal("9"), currency="ARS"))

        everything = list(service.query_movements(page_size=3))
        assert len(everything) == 8
        seqs = [m.seq for m in everything]
        assert seqs == sorted(seqs, reverse=True)

        page = service.page_movements(MovementFilter(project_id=project_a), limit=4)
        assert len(page.items) == 4
        assert page.has_more
        rest = service.page_movements(
            MovementFilter(project_id=project_a), limit=4, before_seq=page.next_before_seq
        )
        assert len(rest.items) == 2
        assert not rest.has_more

        income_only = MovementFilter(
            box=BoxRef.project(project_a), movement_types=(MovementType.PROJECT_INCOME,)
        )
        assert [m.amount for m in service.query_movements(income_only)] == [
            Decimal("3"), Decimal("2"), Decimal("1"),
        ]

    def test_query_can_stop_early(self, service, project_a):
        for _ in range(5):
            _ok(service.record_project_payment(project_id=project_a, amount=Decimal("1"), currency="ARS"))
        iterator = service.query_movements(page_size=2)
        first_two = [next(iterator), next(iterator)]
        iterator.close()
        assert first_two[0].seq > first_two[1].seq

    def test_audit_is_clean_after_mixed_activity(self, funded_service, project_a, project_b):
        _ok(funded_service.collect_fee(
            project_id=project_a, amount=Decimal("1000"), currency="ARS",
            fee_spec=FeeSpec.percent(Decimal("10")),
        ))
        _ok(funded_service.convert_currency(
            box=BoxRef.project(project_a), from_currency="USD", amount=Decimal("100"),
            to_currency="ARS",
        ))
        _ok(funded_service.transfer_between_boxes(
            from_box=BoxRef.project(project_a), to_box=BoxRef.project(project_b),
            amount=Decimal("3000"), currency="ARS",
        ))
        report = funded_service.audit()
        assert report.is_clean, report.findings


class TestLogging:
    def test_committed_operation_logs(self, service, project_a, captured_logs, test_actor_id):
        _ok(service.record_project_payment(
            project_id=project_a, amount=Decimal("5"), currency="ARS",
            actor_id=test_actor_id, idempotency_key="log-1",
        ))
        records = captured_logs()
        messages = [r["message"] for r in records]
        assert "treasury_operation_started" in messages
        assert "movement_appended" in messages

        committed = next(r for r in records if r["message"] == "treasury_operation_committed")
        assert committed["operation_kind"] == "record_project_payment"
        assert committed["idempotency_key"] == "log-1"
        assert committed["actor_id"] == str(test_actor_id)
        assert "correlation_id" in committed
        assert "duration_ms" in committed

    def test_rejected_operation_logs_warning(self, service, captured_logs):
        service.record_admin_expense(amount=Decimal("1"), currency="ARS", description="Coffee")
        rejected = [r for r in captured_logs() if r["message"] == "treasury_operation_rejected"]
        assert len(rejected) == 1
        assert rejected[0]["level"] == "WARNING"
        assert rejected[0]["error_kind"] == "insufficient_funds"
