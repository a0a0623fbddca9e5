"""
BaseService -- abstract base for kernel write services.

Services receive a SQLAlchemy ``Session`` and persist through
``session.flush()``, never ``session.commit()``.  The caller
(TreasuryService, a script, or a test) owns the transaction, so an
operation spanning several services commits or rolls back as one unit.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from treasury_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Read-only queries belong in ``treasury_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
