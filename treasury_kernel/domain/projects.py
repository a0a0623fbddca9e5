"""Project registry -- the kernel's read-only view of projects.

Projects are managed by the surrounding back office.  The loan engine only
needs to know that a project exists and which currency it is run in.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable
from uuid import UUID

from treasury_kernel.db.types import validate_currency
from treasury_kernel.exceptions import ProjectNotFoundError


@dataclass(frozen=True)
class ProjectInfo:
    id: UUID
    name: str
    currency: str


@runtime_checkable
class ProjectRegistry(Protocol):
    """Lookup of projects by id."""

    def get_project(self, project_id: UUID) -> ProjectInfo:
        """Return the project.

        Raises:
            ProjectNotFoundError: No such project.
        """
        ...


class InMemoryProjectRegistry:
    """Registry backed by a dict.  Used by tests and scripts."""

    def __init__(self, projects: list[ProjectInfo] | None = None):
        self._projects: dict[UUID, ProjectInfo] = {p.id: p for p in projects or []}
        self._lock = threading.Lock()

    def add(self, project_id: UUID, name: str, currency: str = "ARS") -> ProjectInfo:
        info = ProjectInfo(id=project_id, name=name, currency=validate_currency(currency))
        with self._lock:
            self._projects[project_id] = info
        return info

    def remove(self, project_id: UUID) -> None:
        with self._lock:
            self._projects.pop(project_id, None)

    def get_project(self, project_id: UUID) -> ProjectInfo:
        with self._lock:
            info = self._projects.get(project_id)
        if info is None:
            raise ProjectNotFoundError(str(project_id))
        return info
