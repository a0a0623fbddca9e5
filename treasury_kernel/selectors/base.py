"""
Module: treasury_kernel.selectors.base
Responsibility: Abstract base class for read-only selectors.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain/.  Selectors NEVER create, modify, or delete data.

Invariants enforced:
    - Read-only access: no session.add(), delete(), commit() or flush().
    - DTO return convention: selectors return frozen dataclasses, not ORM
      instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from treasury_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """Abstract base class for all selectors."""

    def __init__(self, session: Session):
        self.session = session
