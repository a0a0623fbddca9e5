"""
Module: treasury_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, the type annotation map for consistent
    column types, and the TrackedBase mixin for audit timestamps.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel; MUST NOT import from models/, services/, selectors/ or domain/.

Invariants enforced:
    - UUID primary keys on every model.
    - Decimal maps to MoneyAmount, which is exact on every backend.  NEVER use
      float for monetary amounts.
    - datetime maps to UTCDateTime, so values read back are always aware.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from treasury_kernel.db.types import MoneyAmount, UTCDateTime


class UUIDString(TypeDecorator):
    """UUID type stored as String(36) for cross-database portability."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class Base(DeclarativeBase):
    """
    Declarative base for all treasury models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - Decimal maps to MoneyAmount (Numeric(38, 9) on PostgreSQL, exact
          text on SQLite).
        - datetime maps to UTCDateTime.
        - int maps to BigInteger.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: MoneyAmount(),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with audit timestamp and actor tracking.

    Timestamps come from the injected Clock of the writing service rather
    than from the database server, so deterministic clocks in tests yield
    deterministic rows.  The actor is optional: system operations (bootstrap,
    scheduled checks run by an operator script) have no acting user.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    created_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    def touch(self, at: datetime, actor_id: PyUUID | None = None) -> None:
        """Stamp an update."""
        self.updated_at = at
        if actor_id is not None:
            self.updated_by_id = actor_id


# Re-export UUID for convenience
UUID = PyUUID
