"""
Posting rules -- the declarative definition of what every operation does.

Two tables drive the ledger:

MOVEMENT_EFFECTS
    Per movement type, whether the source box is debited and whether the
    destination box is credited.  Mirror movements (master_duplication)
    name the project as source for the audit trail but only credit the
    master.  The same table is used to apply an operation and to recompute
    balances from the log, so the two cannot drift apart.

OPERATION_RULES
    Per operation kind, the ordered legs (movement type, source role,
    destination role) one call produces.  validate_rules() runs at import
    and rejects any rule set where money enters a project box from outside
    without a master duplication leg, or leaves one without a master
    expense mirror leg.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from treasury_kernel.domain.movement_details import (
    CurrencyExchangeDetails,
    MovementDetails,
    ReversalDetails,
)
from treasury_kernel.models.movement import MovementType


class OperationKind(str, Enum):
    """Atomic ledger operations."""

    PROJECT_PAYMENT = "project_payment"
    FEE_COLLECTION = "fee_collection"
    ADMIN_EXPENSE = "admin_expense"
    MASTER_WITHDRAWAL = "master_withdrawal"
    PROJECT_EXPENSE = "project_expense"
    CURRENCY_EXCHANGE = "currency_exchange"
    TRANSFER = "transfer"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_CANCELLATION_REFUND = "loan_cancellation_refund"
    REVERSAL = "reversal"


class TransferKind(str, Enum):
    """Box-to-box transfer flavours accepted by transfer_between_boxes."""

    TRANSFER = "transfer"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_CANCELLATION_REFUND = "loan_cancellation_refund"

    @property
    def operation_kind(self) -> OperationKind:
        return OperationKind(self.value)


class BoxRole(str, Enum):
    """Placeholder for a box (or the outside world) in a leg rule."""

    PROJECT = "project"
    MASTER = "master"
    ADMIN = "admin"
    EXTERNAL = "external"
    # Resolved per call
    SUBJECT = "subject"
    FROM = "from"
    TO = "to"


@dataclass(frozen=True)
class MovementEffect:
    debits_source: bool
    credits_destination: bool


@dataclass(frozen=True)
class LegRule:
    movement_type: MovementType
    source: BoxRole
    destination: BoxRole


@dataclass(frozen=True)
class BoxDelta:
    """Signed change to one currency balance of one box."""

    box_id: UUID
    currency: str
    amount: Decimal


MOVEMENT_EFFECTS: dict[MovementType, MovementEffect] = {
    MovementType.PROJECT_INCOME: MovementEffect(debits_source=False, credits_destination=True),
    MovementType.MASTER_DUPLICATION: MovementEffect(debits_source=False, credits_destination=True),
    MovementType.FEE_COLLECTION: MovementEffect(debits_source=True, credits_destination=True),
    MovementType.ADMIN_EXPENSE: MovementEffect(debits_source=True, credits_destination=False),
    MovementType.MASTER_WITHDRAWAL: MovementEffect(debits_source=True, credits_destination=False),
    MovementType.CURRENCY_EXCHANGE: MovementEffect(debits_source=True, credits_destination=True),
    MovementType.TRANSFER: MovementEffect(debits_source=True, credits_destination=True),
    MovementType.LOAN_DISBURSEMENT: MovementEffect(debits_source=True, credits_destination=True),
    MovementType.LOAN_REPAYMENT: MovementEffect(debits_source=True, credits_destination=True),
    MovementType.LOAN_CANCELLATION_REFUND: MovementEffect(debits_source=True, credits_destination=True),
    MovementType.PROJECT_EXPENSE: MovementEffect(debits_source=True, credits_destination=False),
    MovementType.MASTER_EXPENSE_MIRROR: MovementEffect(debits_source=True, credits_destination=False),
}


OPERATION_RULES: dict[OperationKind, tuple[LegRule, ...]] = {
    OperationKind.PROJECT_PAYMENT: (
        LegRule(MovementType.PROJECT_INCOME, BoxRole.EXTERNAL, BoxRole.PROJECT),
        LegRule(MovementType.MASTER_DUPLICATION, BoxRole.PROJECT, BoxRole.MASTER),
    ),
    OperationKind.FEE_COLLECTION: (
        LegRule(MovementType.FEE_COLLECTION, BoxRole.PROJECT, BoxRole.ADMIN),
    ),
    OperationKind.ADMIN_EXPENSE: (
        LegRule(MovementType.ADMIN_EXPENSE, BoxRole.ADMIN, BoxRole.EXTERNAL),
    ),
    OperationKind.MASTER_WITHDRAWAL: (
        LegRule(MovementType.MASTER_WITHDRAWAL, BoxRole.MASTER, BoxRole.EXTERNAL),
    ),
    OperationKind.PROJECT_EXPENSE: (
        LegRule(MovementType.PROJECT_EXPENSE, BoxRole.PROJECT, BoxRole.EXTERNAL),
        LegRule(MovementType.MASTER_EXPENSE_MIRROR, BoxRole.MASTER, BoxRole.EXTERNAL),
    ),
    OperationKind.CURRENCY_EXCHANGE: (
        LegRule(MovementType.CURRENCY_EXCHANGE, BoxRole.SUBJECT, BoxRole.SUBJECT),
    ),
    OperationKind.TRANSFER: (
        LegRule(MovementType.TRANSFER, BoxRole.FROM, BoxRole.TO),
    ),
    OperationKind.LOAN_DISBURSEMENT: (
        LegRule(MovementType.LOAN_DISBURSEMENT, BoxRole.FROM, BoxRole.TO),
    ),
    OperationKind.LOAN_REPAYMENT: (
        LegRule(MovementType.LOAN_REPAYMENT, BoxRole.FROM, BoxRole.TO),
    ),
    OperationKind.LOAN_CANCELLATION_REFUND: (
        LegRule(MovementType.LOAN_CANCELLATION_REFUND, BoxRole.FROM, BoxRole.TO),
    ),
}


def effect_for(movement_type: MovementType, details: MovementDetails) -> MovementEffect:
    """
    Debit/credit behaviour of a movement.

    A reversal inverts the reversed movement: it debits its source (the
    original destination) only if the original credited it, and credits
    its destination (the original source) only if the original debited it.
    """
    movement_type = MovementType(movement_type)
    if movement_type is MovementType.REVERSAL:
        if not isinstance(details, ReversalDetails):
            raise ValueError("reversal movement requires ReversalDetails")
        original = MOVEMENT_EFFECTS[MovementType(details.reversed_type)]
        return MovementEffect(
            debits_source=original.credits_destination,
            credits_destination=original.debits_source,
        )
    return MOVEMENT_EFFECTS[movement_type]


def effects_of(
    movement_type: MovementType,
    source_box_id: UUID | None,
    destination_box_id: UUID | None,
    amount: Decimal,
    currency: str,
    details: MovementDetails,
) -> list[BoxDelta]:
    """
    Balance deltas implied by one movement.

    Currency exchanges (and their reversals) credit in a different currency
    than they debit; the credited side comes from the details.
    """
    effect = effect_for(movement_type, details)
    deltas: list[BoxDelta] = []

    if effect.debits_source and source_box_id is not None:
        deltas.append(BoxDelta(source_box_id, currency, -amount))

    if effect.credits_destination and destination_box_id is not None:
        credit_currency, credit_amount = currency, amount
        if isinstance(details, CurrencyExchangeDetails):
            credit_currency, credit_amount = details.to_currency, details.to_amount
        elif isinstance(details, ReversalDetails) and details.credit_currency is not None:
            credit_currency, credit_amount = details.credit_currency, details.credit_amount
        deltas.append(BoxDelta(destination_box_id, credit_currency, credit_amount))

    return deltas


def validate_rules(
    rules: dict[OperationKind, tuple[LegRule, ...]],
    effects: dict[MovementType, MovementEffect] = MOVEMENT_EFFECTS,
) -> None:
    """
    Check a rule table against the master mirror rule.

    Raises:
        ValueError: A rule credits a project from outside without a master
            duplication leg, debits a project to the outside without a
            master expense mirror leg, or names an unknown movement type.
    """
    for kind, legs in rules.items():
        if not legs:
            raise ValueError(f"{kind.value}: operation has no legs")
        for leg in legs:
            if leg.movement_type not in effects:
                raise ValueError(f"{kind.value}: no effect declared for {leg.movement_type.value}")
            effect = effects[leg.movement_type]
            inbound = (
                leg.source is BoxRole.EXTERNAL
                and leg.destination is BoxRole.PROJECT
                and effect.credits_destination
            )
            outbound = (
                leg.source is BoxRole.PROJECT
                and leg.destination is BoxRole.EXTERNAL
                and effect.debits_source
            )
            if inbound and not _has_leg(legs, MovementType.MASTER_DUPLICATION, BoxRole.MASTER):
                raise ValueError(
                    f"{kind.value}: project income requires a master_duplication leg"
                )
            if outbound and not _has_leg(legs, MovementType.MASTER_EXPENSE_MIRROR, BoxRole.MASTER):
                raise ValueError(
                    f"{kind.value}: project expense requires a master_expense_mirror leg"
                )


def _has_leg(legs: tuple[LegRule, ...], movement_type: MovementType, role: BoxRole) -> bool:
    return any(
        leg.movement_type is movement_type and role in (leg.source, leg.destination)
        for leg in legs
    )


validate_rules(OPERATION_RULES)
