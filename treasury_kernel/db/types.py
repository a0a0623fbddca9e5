"""
Module: treasury_kernel.db.types
Responsibility: Column types and the rounding/currency helpers
    shared by every model and service.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/ and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Boxes hold exactly two currencies, ARS and USD.  validate_currency()
      rejects anything else.
    - round_money() is the only sanctioned rounding function for amounts
      that reach a box (half-up, two places by default).
    - CRITICAL: no floats.  MoneyAmount stores Decimal exactly on every
      backend (Numeric on PostgreSQL, canonical text on SQLite, whose
      NUMERIC affinity would otherwise coerce to binary floating point).
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.types import TypeDecorator

from treasury_kernel.exceptions import UnsupportedCurrencyError


class MoneyAmount(TypeDecorator):
    """
    Exact decimal column.

    Guarantees:
        - PostgreSQL: Numeric(38, scale), returned as Decimal.
        - SQLite: String(64) holding str(Decimal), returned as Decimal.
        - Never round-trips through float.
    """

    impl = Numeric(38, 9)
    cache_ok = True

    def __init__(self, scale: int = 9):
        super().__init__()
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(38, self.scale, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC; naive values read back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


MONEY_DECIMAL_PLACES = 2
RATE_DECIMAL_PLACES = 18
DEFAULT_ROUNDING = ROUND_HALF_UP

ARS = "ARS"
USD = "USD"
SUPPORTED_CURRENCIES: tuple[str, ...] = (ARS, USD)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of places.

    This is the only sanctioned rounding function for amounts that reach a
    box.  Half-up, matching how the back office rounds fees and conversions.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def validate_currency(currency: str) -> str:
    """
    Validate and normalize a box currency.

    Returns:
        The uppercase, trimmed code (``"ARS"`` or ``"USD"``).

    Raises:
        UnsupportedCurrencyError: For anything else.
    """
    if not currency or not isinstance(currency, str):
        raise UnsupportedCurrencyError(currency)

    normalized = currency.upper().strip()
    if normalized not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrencyError(currency)
    return normalized


def is_supported_currency(currency: str) -> bool:
    try:
        validate_currency(currency)
        return True
    except UnsupportedCurrencyError:
        return False


def utc_datetime(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
