"""Database layer - engine, base classes and column types."""

from treasury_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from treasury_kernel.db.engine import create_tables, get_engine, get_session
from treasury_kernel.db.types import MoneyAmount, UTCDateTime, round_money, validate_currency

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "MoneyAmount",
    "UTCDateTime",
    "round_money",
    "validate_currency",
]
