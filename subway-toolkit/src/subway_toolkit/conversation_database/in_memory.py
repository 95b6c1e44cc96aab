"""
In-memory repositories.

Dictionary-backed implementations of the three storage interfaces. They are
the reference backend for tests, demos and single-process deployments; every
record is deep-copied on the way in and out so callers can never mutate stored
state by holding on to a returned model.
"""

from subway_toolkit.conversation_database.data_models.branch import Branch, BranchDatabase, BranchLayout
from subway_toolkit.conversation_database.data_models.node import (
    AssistantMessageNode,
    NodeDatabase,
    TimelineNode,
    UserMessageNode,
)
from subway_toolkit.conversation_database.data_models.project import Project, ProjectDatabase
from subway_toolkit.errors import BranchNotFoundError, InvalidRequestError, NodeNotFoundError
from subway_toolkit.utils.time import get_current_timestamp


class InMemoryProjectDatabase(ProjectDatabase):
    def __init__(self) -> None:
        self.projects: dict[str, Project] = {}

    async def create_project(self, project: Project) -> Project:
        self.projects[project.id] = project.model_copy(deep=True)
        return project.model_copy(deep=True)

    async def get_project_by_id(self, project_id: str) -> Project | None:
        project = self.projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def delete_project(self, project_id: str) -> bool:
        return self.projects.pop(project_id, None) is not None


class InMemoryBranchDatabase(BranchDatabase):
    def __init__(self) -> None:
        self.branches: dict[str, Branch] = {}

    async def create_branch(self, branch: Branch) -> Branch:
        self.branches[branch.id] = branch.model_copy(deep=True)
        return branch.model_copy(deep=True)

    async def get_branches_by_project_id(self, project_id: str) -> list[Branch]:
        return [b.model_copy(deep=True) for b in self.branches.values() if b.project_id == project_id]

    async def get_branch_by_id(self, branch_id: str) -> Branch | None:
        branch = self.branches.get(branch_id)
        return branch.model_copy(deep=True) if branch else None

    async def update_branch_layout(self, branch_id: str, layout: BranchLayout) -> Branch:
        branch = self.branches.get(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
        updated = branch.model_copy(update={"layout": layout.model_copy()}, deep=True)
        self.branches[branch_id] = updated
        return updated.model_copy(deep=True)

    async def delete_branch(self, branch_id: str) -> bool:
        return self.branches.pop(branch_id, None) is not None


class InMemoryNodeDatabase(NodeDatabase):
    def __init__(self) -> None:
        self.nodes: dict[str, TimelineNode] = {}

    async def create_node(self, node: TimelineNode) -> TimelineNode:
        self.nodes[node.id] = node.model_copy(deep=True)
        return node.model_copy(deep=True)

    async def get_nodes_by_project_id(self, project_id: str) -> list[TimelineNode]:
        return [n.model_copy(deep=True) for n in self.nodes.values() if n.project_id == project_id]

    async def get_node_by_id(self, node_id: str) -> TimelineNode | None:
        node = self.nodes.get(node_id)
        return node.model_copy(deep=True) if node else None

    async def update_node_text(self, node_id: str, text: str) -> TimelineNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        if not isinstance(node, (UserMessageNode, AssistantMessageNode)):
            raise InvalidRequestError(f"Node {node_id!r} of type {node.type!r} carries no text")
        updated = node.model_copy(update={"text": text, "updated_at": get_current_timestamp()}, deep=True)
        self.nodes[node_id] = updated
        return updated.model_copy(deep=True)

    async def delete_node(self, node_id: str) -> bool:
        return self.nodes.pop(node_id, None) is not None
