"""
Project store collaborator.

The engine reads a project's current phase and asks the store to move it.
The store owns the phase; the engine never writes it directly.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from .phase_model import ProjectPhase, ProjectSnapshot

logger = logging.getLogger("project_store")


class ProjectStore(ABC):

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[ProjectSnapshot]:
        """Return the project, or None when it does not exist."""

    @abstractmethod
    async def update_phase(self, project_id: str, phase: ProjectPhase) -> None:
        """Move the project to a new phase. Raises on failure."""


class InMemoryProjectStore(ProjectStore):
    """Dict-backed store used by the demo app and tests."""

    def __init__(self, projects: Iterable[ProjectSnapshot] = ()):
        self._projects: Dict[str, ProjectSnapshot] = {p.project_id: p for p in projects}
        self._lock = asyncio.Lock()

    def add_project(self, project: ProjectSnapshot) -> None:
        self._projects[project.project_id] = project

    def list_projects(self) -> List[ProjectSnapshot]:
        return list(self._projects.values())

    async def get_project(self, project_id: str) -> Optional[ProjectSnapshot]:
        project = self._projects.get(project_id)
        if project is None:
            return None
        return ProjectSnapshot(
            project_id=project.project_id,
            phase=project.phase,
            title=project.title,
            metadata=dict(project.metadata),
        )

    async def update_phase(self, project_id: str, phase: ProjectPhase) -> None:
        async with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise KeyError(f"Project '{project_id}' not found")
            old_phase = project.phase
            project.phase = phase
        logger.info(f"Project {project_id}: {old_phase.value} -> {phase.value}")
