"""
Project data model and storage interface.

A project is the conversation workspace: it owns every branch and timeline
node, transitively. Deleting a project is a cascade the controller performs
through the branch and node repositories before removing the project record.

Concrete implementations: 'InMemoryProjectDatabase'.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class Project(BaseModel):
    """A conversation workspace with free-form settings and context blobs."""

    id: str
    name: str
    description: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: int
    created_by: str


class ProjectDatabase(ABC):
    """Abstract repository for 'Project' records."""

    @abstractmethod
    async def create_project(self, project: Project) -> Project:
        pass

    @abstractmethod
    async def get_project_by_id(self, project_id: str) -> Project | None:
        pass

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        pass
