"""
Loan schedule arithmetic -- pure functions, no I/O.

    build_schedule      even installments, due monthly backward from the
                        final due date; the last absorbs the rounding
                        remainder so the principal is repaid to the cent.
    allocate_payment    splits a payment into late fee, interest and
                        principal, in that order.
    effective_status    derives ``overdue`` at read time.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_DOWN, Decimal

from treasury_kernel.db.types import MONEY_DECIMAL_PLACES, round_money
from treasury_kernel.models.loan import InstallmentStatus, LoanStatus

_ZERO = Decimal("0")

OPEN_INSTALLMENT_STATUSES = frozenset({InstallmentStatus.PENDING, InstallmentStatus.PARTIAL})


@dataclass(frozen=True)
class ScheduledInstallment:
    number: int
    amount: Decimal
    interest_amount: Decimal
    due_date: date


@dataclass(frozen=True)
class PaymentAllocation:
    late_fee: Decimal
    interest: Decimal
    principal: Decimal

    @property
    def total(self) -> Decimal:
        return self.late_fee + self.interest + self.principal


def months_before(day: date, months: int) -> date:
    """``day`` shifted back by whole months, clamped to the month's last day."""
    index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


def minimum_principal(installment_count: int, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """Smallest principal that gives every installment at least one minor unit."""
    return installment_count * Decimal(1).scaleb(-decimal_places)


def build_schedule(
    principal: Decimal,
    installment_count: int,
    due_date: date,
    interest_rate: Decimal = _ZERO,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> list[ScheduledInstallment]:
    """
    Split ``principal`` into ``installment_count`` installments.

    Installment ``i`` (1-based) is due ``installment_count - i`` months
    before ``due_date``; the last one is due on ``due_date``.  Interest is
    simple: ``interest_rate`` percent of each installment's principal.

    Raises:
        ValueError: Fewer than one installment, or a principal too small to
            give every installment at least one minor unit.
    """
    if installment_count < 1:
        raise ValueError("installment_count must be at least 1")
    if principal < minimum_principal(installment_count, decimal_places):
        raise ValueError(
            f"principal {principal} cannot give {installment_count} installments a cent each"
        )

    # Rounded down so the remainder left for the last installment is never
    # smaller than the others
    base = round_money(principal / installment_count, decimal_places, ROUND_DOWN)
    schedule = []
    allocated = _ZERO
    for number in range(1, installment_count + 1):
        if number == installment_count:
            amount = principal - allocated
        else:
            amount = base
        allocated += amount
        schedule.append(
            ScheduledInstallment(
                number=number,
                amount=amount,
                interest_amount=round_money(amount * interest_rate / Decimal("100"), decimal_places),
                due_date=months_before(due_date, installment_count - number),
            )
        )
    return schedule


def outstanding_components(
    amount: Decimal,
    interest_amount: Decimal,
    late_fee_amount: Decimal,
    principal_paid: Decimal,
    interest_paid: Decimal,
    late_fee_paid: Decimal,
) -> PaymentAllocation:
    """What is still owed on an installment, per component."""
    return PaymentAllocation(
        late_fee=late_fee_amount - late_fee_paid,
        interest=interest_amount - interest_paid,
        principal=amount - principal_paid,
    )


def allocate_payment(payment: Decimal, owed: PaymentAllocation) -> PaymentAllocation:
    """
    Split ``payment`` across late fee, interest and principal.

    Raises:
        ValueError: The payment is more than what is owed.
    """
    if payment > owed.total:
        raise ValueError(f"payment {payment} exceeds amount owed {owed.total}")
    late_fee = min(payment, owed.late_fee)
    rest = payment - late_fee
    interest = min(rest, owed.interest)
    return PaymentAllocation(late_fee=late_fee, interest=interest, principal=rest - interest)


def installment_is_overdue(status: str, due_date: date, today: date) -> bool:
    return InstallmentStatus(status) in OPEN_INSTALLMENT_STATUSES and due_date < today


def effective_status(
    status: str,
    due_date: date,
    installment_states: list[tuple[str, date]],
    today: date,
) -> LoanStatus:
    """
    Status as seen on ``today``.

    An active loan is overdue when its final due date has passed, or any
    installment past its own due date is still open.  Stored status is
    returned unchanged otherwise.
    """
    stored = LoanStatus(status)
    if stored is not LoanStatus.ACTIVE:
        return stored
    if due_date < today:
        return LoanStatus.OVERDUE
    if any(installment_is_overdue(s, d, today) for s, d in installment_states):
        return LoanStatus.OVERDUE
    return stored
