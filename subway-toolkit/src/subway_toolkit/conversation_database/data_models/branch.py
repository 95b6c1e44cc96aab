"""
Branch data model, layout record and storage interface.

Branches form a tree: every branch except the project's root branch has one
parent branch and one branch-point node (the node in the parent's path at
which it forks). The layout engine writes a 'BranchLayout' onto each branch so
renderers can read coordinates without recomputing them; 'color' is written
once at creation and never changes afterwards.

Concrete implementations: 'InMemoryBranchDatabase'.
"""

from abc import ABC, abstractmethod
from enum import StrEnum

from pydantic import BaseModel


class Direction(StrEnum):
    """Side of the parent line a branch is drawn on. 'AUTO' is only a creation hint."""

    LEFT = "left"
    RIGHT = "right"
    AUTO = "auto"


class BranchLayout(BaseModel):
    """
    Computed subway-map placement of one branch.

    Attributes:
        x: Horizontal coordinate of the branch line.
        y: Vertical offset at which the branch leaves its parent line.
        direction: Resolved side, never 'AUTO'.
        sibling_index: Ordinal among branches sharing the same parent branch.
        level: Tree depth the placement was computed for.
    """

    x: float
    y: float
    direction: Direction
    sibling_index: int
    level: int


class Branch(BaseModel):
    """A named, colored line of conversation."""

    id: str
    project_id: str
    name: str
    parent_branch_id: str | None = None
    branch_point_node_id: str | None = None
    color: str | None = None
    depth: int = 0
    direction_hint: Direction = Direction.AUTO
    layout: BranchLayout | None = None
    is_active: bool = True
    created_at: int
    created_by: str

    @property
    def is_root(self) -> bool:
        return self.parent_branch_id is None


class BranchDatabase(ABC):
    """Abstract repository for 'Branch' records."""

    @abstractmethod
    async def create_branch(self, branch: Branch) -> Branch:
        pass

    @abstractmethod
    async def get_branches_by_project_id(self, project_id: str) -> list[Branch]:
        pass

    @abstractmethod
    async def get_branch_by_id(self, branch_id: str) -> Branch | None:
        pass

    @abstractmethod
    async def update_branch_layout(self, branch_id: str, layout: BranchLayout) -> Branch:
        pass

    @abstractmethod
    async def delete_branch(self, branch_id: str) -> bool:
        pass
