"""
BalanceAuditor -- recomputes stored balances from the movement log.

Responsibility:
    The boxes are a materialized view of the movement log.  The auditor
    replays the log through the same effect table the ledger uses
    (domain/posting_rules.effects_of) and compares the result with what is
    stored: balances, lifetime counters, and loan outstanding balances.

Invariants checked:
    - balance_matches_log: stored balance == replayed balance, per box and
      currency.
    - lifetime_counters: balance == lifetime_received - lifetime_paid, and
      each counter matches the replayed inbound/outbound totals.
    - non_negative_balance.
    - loan_outstanding: outstanding == principal - sum(principal_paid), and
      each installment's paid_amount equals its principal, interest and
      late fee parts.

Failure modes:
    - ``audit_*`` return findings; ``verify_*`` raise InvariantViolationError
      on the first finding.  A mismatch is never silently tolerated.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from treasury_kernel.db.types import SUPPORTED_CURRENCIES
from treasury_kernel.domain.movement_details import details_from_payload
from treasury_kernel.domain.posting_rules import effects_of
from treasury_kernel.exceptions import InvariantViolationError
from treasury_kernel.invariants import LedgerInvariant
from treasury_kernel.logging_config import get_logger
from treasury_kernel.models.cash_box import CashBox
from treasury_kernel.models.loan import Loan
from treasury_kernel.models.movement import CashMovement

logger = get_logger("services.balance_auditor")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class AuditFinding:
    """One stored value that disagrees with the log."""

    invariant: LedgerInvariant
    entity_type: str
    entity_id: UUID
    currency: str
    field_name: str
    stored: Decimal
    expected: Decimal

    def to_error(self) -> InvariantViolationError:
        return InvariantViolationError(
            str(self.entity_id),
            self.currency,
            self.stored,
            self.expected,
            field_name=self.field_name,
            entity_type=self.entity_type,
        )


@dataclass
class AuditReport:
    boxes_checked: int = 0
    loans_checked: int = 0
    movements_replayed: int = 0
    findings: list[AuditFinding] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.findings


@dataclass
class _Totals:
    received: Decimal = _ZERO
    paid: Decimal = _ZERO

    @property
    def balance(self) -> Decimal:
        return self.received - self.paid


class BalanceAuditor:
    """
    Read-only verification of the ledger against its log.

    Runs inside the caller's transaction; called with the boxes of an
    operation still locked it verifies exactly what is about to commit.
    """

    def __init__(self, session: Session):
        self._session = session

    # =========================================================================
    # Boxes
    # =========================================================================

    def replay(self, box_ids: list[UUID] | None = None) -> tuple[dict[tuple[UUID, str], _Totals], int]:
        """
        Replay the movement log into per-box, per-currency totals.

        Returns:
            (totals keyed by (box_id, currency), number of movements read)
        """
        stmt = select(CashMovement).order_by(CashMovement.seq)
        wanted: set[UUID] | None = None
        if box_ids is not None:
            wanted = set(box_ids)
            stmt = stmt.where(
                or_(
                    CashMovement.source_box_id.in_(wanted),
                    CashMovement.destination_box_id.in_(wanted),
                )
            )

        totals: dict[tuple[UUID, str], _Totals] = defaultdict(_Totals)
        count = 0
        for movement in self._session.execute(stmt).scalars():
            count += 1
            deltas = effects_of(
                movement.movement_type,
                movement.source_box_id,
                movement.destination_box_id,
                movement.amount,
                movement.currency,
                details_from_payload(movement.details),
            )
            for delta in deltas:
                if wanted is not None and delta.box_id not in wanted:
                    continue
                entry = totals[(delta.box_id, delta.currency)]
                if delta.amount > 0:
                    entry.received += delta.amount
                else:
                    entry.paid -= delta.amount
        return totals, count

    def audit_boxes(self, box_ids: list[UUID] | None = None) -> AuditReport:
        stmt = select(CashBox).order_by(CashBox.id)
        if box_ids is not None:
            stmt = stmt.where(CashBox.id.in_(box_ids))
        boxes = list(self._session.execute(stmt).scalars())

        totals, count = self.replay([box.id for box in boxes] if box_ids is not None else None)
        report = AuditReport(boxes_checked=len(boxes), movements_replayed=count)

        for box in boxes:
            for currency in SUPPORTED_CURRENCIES:
                expected = totals.get((box.id, currency), _Totals())
                checks = (
                    (LedgerInvariant.BALANCE_MATCHES_LOG, "balance",
                     box.balance(currency), expected.balance),
                    (LedgerInvariant.LIFETIME_COUNTERS, "lifetime_received",
                     box.lifetime_received(currency), expected.received),
                    (LedgerInvariant.LIFETIME_COUNTERS, "lifetime_paid",
                     box.lifetime_paid(currency), expected.paid),
                    (LedgerInvariant.LIFETIME_COUNTERS, "balance",
                     box.balance(currency),
                     box.lifetime_received(currency) - box.lifetime_paid(currency)),
                )
                for invariant, field_name, stored, wanted in checks:
                    if stored != wanted:
                        report.findings.append(
                            AuditFinding(invariant, "CashBox", box.id, currency,
                                         field_name, stored, wanted)
                        )
                if box.balance(currency) < 0:
                    report.findings.append(
                        AuditFinding(LedgerInvariant.NON_NEGATIVE_BALANCE, "CashBox",
                                     box.id, currency, "balance",
                                     box.balance(currency), _ZERO)
                    )

        self._log_report("box_audit_completed", report)
        return report

    def verify_boxes(self, box_ids: list[UUID] | None = None) -> None:
        """Raise InvariantViolationError unless every checked box is clean."""
        report = self.audit_boxes(box_ids)
        if not report.is_clean:
            raise report.findings[0].to_error()

    # =========================================================================
    # Loans
    # =========================================================================

    def audit_loans(self, loan_ids: list[UUID] | None = None) -> AuditReport:
        stmt = select(Loan).order_by(Loan.id)
        if loan_ids is not None:
            stmt = stmt.where(Loan.id.in_(loan_ids))
        loans = list(self._session.execute(stmt).scalars())

        report = AuditReport(loans_checked=len(loans))
        for loan in loans:
            principal_paid = sum((i.principal_paid for i in loan.installments), _ZERO)
            expected = loan.principal - principal_paid
            if loan.outstanding_balance != expected:
                report.findings.append(
                    AuditFinding(LedgerInvariant.LOAN_OUTSTANDING, "Loan", loan.id,
                                 loan.currency, "outstanding_balance",
                                 loan.outstanding_balance, expected)
                )
            total_paid = sum((i.paid_amount for i in loan.installments), _ZERO)
            if loan.total_paid != total_paid:
                report.findings.append(
                    AuditFinding(LedgerInvariant.LOAN_OUTSTANDING, "Loan", loan.id,
                                 loan.currency, "total_paid", loan.total_paid, total_paid)
                )
            for installment in loan.installments:
                parts = (
                    installment.principal_paid
                    + installment.interest_paid
                    + installment.late_fee_paid
                )
                if installment.paid_amount != parts:
                    report.findings.append(
                        AuditFinding(LedgerInvariant.LOAN_OUTSTANDING, "LoanInstallment",
                                     installment.id, loan.currency, "paid_amount",
                                     installment.paid_amount, parts)
                    )

        self._log_report("loan_audit_completed", report)
        return report

    def verify_loans(self, loan_ids: list[UUID] | None = None) -> None:
        report = self.audit_loans(loan_ids)
        if not report.is_clean:
            raise report.findings[0].to_error()

    def run_full_audit(self) -> AuditReport:
        boxes = self.audit_boxes()
        loans = self.audit_loans()
        return AuditReport(
            boxes_checked=boxes.boxes_checked,
            loans_checked=loans.loans_checked,
            movements_replayed=boxes.movements_replayed,
            findings=boxes.findings + loans.findings,
        )

    def _log_report(self, event: str, report: AuditReport) -> None:
        extra = {
            "boxes_checked": report.boxes_checked,
            "loans_checked": report.loans_checked,
            "movements_replayed": report.movements_replayed,
            "finding_count": len(report.findings),
        }
        if report.is_clean:
            logger.debug(event, extra=extra)
            return
        for finding in report.findings:
            logger.error(
                "invariant_violation_detected",
                extra={
                    "invariant": finding.invariant.value,
                    "entity_type": finding.entity_type,
                    "entity_id": str(finding.entity_id),
                    "currency": finding.currency,
                    "field": finding.field_name,
                    "stored": finding.stored,
                    "expected": finding.expected,
                },
            )
        logger.warning(event, extra=extra)
