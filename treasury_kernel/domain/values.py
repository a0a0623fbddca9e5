"""
Value objects shared by the engines and the service facade.

BoxRef names a box by its owner; FeeSpec is the exactly-one-of
percentage/fixed fee rule; validate_amount is the single entry check for
every amount that reaches the ledger.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Self
from uuid import UUID

from treasury_kernel.db.types import MONEY_DECIMAL_PLACES, round_money
from treasury_kernel.exceptions import InvalidAmountError, InvalidFeeSpecError
from treasury_kernel.models.cash_box import OwnerKind, owner_key_for


def validate_amount(
    amount: object,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> Decimal:
    """
    Validate an incoming amount and round it to the ledger's precision.

    Accepts Decimal, int or a numeric string.  Floats are rejected: they
    cannot carry an exact cent value.

    Raises:
        InvalidAmountError: If the amount is not numeric, not finite, or not
            positive after rounding.
    """
    if isinstance(amount, bool) or isinstance(amount, float):
        raise InvalidAmountError(amount, "amount must be a Decimal, not a float")
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, (int, str)):
        try:
            value = Decimal(amount)
        except InvalidOperation:
            raise InvalidAmountError(amount, "amount is not a number") from None
    else:
        raise InvalidAmountError(amount, "amount must be a Decimal")

    if not value.is_finite():
        raise InvalidAmountError(amount, "amount must be finite")

    rounded = round_money(value, decimal_places)
    if rounded <= 0:
        raise InvalidAmountError(amount, "amount must be positive")
    return rounded


@dataclass(frozen=True)
class BoxRef:
    """Reference to a cash box by owner."""

    owner_kind: OwnerKind
    owner_ref: UUID | None = None

    def __post_init__(self):
        object.__setattr__(self, "owner_kind", OwnerKind(self.owner_kind))
        # Raises ValueError on a malformed reference
        owner_key_for(self.owner_kind, self.owner_ref)

    @classmethod
    def master(cls) -> Self:
        return cls(OwnerKind.MASTER)

    @classmethod
    def admin(cls) -> Self:
        return cls(OwnerKind.ADMIN)

    @classmethod
    def project(cls, project_id: UUID) -> Self:
        return cls(OwnerKind.PROJECT, project_id)

    @property
    def owner_key(self) -> str:
        return owner_key_for(self.owner_kind, self.owner_ref)

    def __str__(self) -> str:
        return self.owner_key


@dataclass(frozen=True)
class FeeSpec:
    """
    How an administrator fee is computed.

    Exactly one of ``percentage`` (0 < p <= 100) or ``fixed`` (> 0).
    """

    percentage: Decimal | None = None
    fixed: Decimal | None = None

    @classmethod
    def percent(cls, percentage: Decimal) -> Self:
        return cls(percentage=percentage)

    @classmethod
    def fixed_amount(cls, amount: Decimal) -> Self:
        return cls(fixed=amount)

    def validate(self) -> None:
        if (self.percentage is None) == (self.fixed is None):
            raise InvalidFeeSpecError(
                "exactly one of percentage or fixed must be given"
            )
        if self.percentage is not None:
            if not isinstance(self.percentage, Decimal) or not self.percentage.is_finite():
                raise InvalidFeeSpecError("percentage must be a finite Decimal")
            if not (Decimal("0") < self.percentage <= Decimal("100")):
                raise InvalidFeeSpecError("percentage must be in (0, 100]")

    @property
    def basis(self) -> str:
        return "percentage" if self.percentage is not None else "fixed"

    def compute(self, base_amount: Decimal, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
        """
        Fee for ``base_amount``.

        Percentage fees are rounded half-up; fixed fees go through
        validate_amount like any other amount.
        """
        self.validate()
        if self.percentage is not None:
            fee = round_money(base_amount * self.percentage / Decimal("100"), decimal_places)
            if fee <= 0:
                raise InvalidAmountError(fee, "computed fee rounds to zero")
            return fee
        return validate_amount(self.fixed, decimal_places)
