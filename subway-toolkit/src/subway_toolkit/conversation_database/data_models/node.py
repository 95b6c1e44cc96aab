"""
Timeline node data models and storage interface.

A timeline node is one entry in a branch's linear history. Node kinds form a
closed tagged union discriminated on 'type'; each variant carries only the
fields it needs. 'TimelineNode' is the annotated union to use in signatures
and 'timeline_node_adapter' validates raw records (e.g. rows from a database
driver) into the right variant.

Concrete implementations: 'InMemoryNodeDatabase'.
"""

from abc import ABC, abstractmethod
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from subway_toolkit.llms.base import Roles


class _BaseNode(BaseModel):
    """
    Fields shared by every node variant.

    'position' is unique and strictly increasing within a branch; together with
    'created_at' it defines display order. 'parent_id' is None only for the
    project root.
    """

    id: str
    project_id: str
    branch_id: str
    parent_id: str | None = None
    position: int
    created_at: int
    created_by: str
    updated_at: int | None = None


class RootNode(_BaseNode):
    """The single entry point of a project."""

    type: Literal["root"] = "root"


class BranchRootNode(_BaseNode):
    """Synthetic first node of a non-root branch; its parent is the fork point."""

    type: Literal["branch-root"] = "branch-root"


class BranchPointNode(_BaseNode):
    """Marker for 'one or more child branches diverge here'. No content."""

    type: Literal["branch-point"] = "branch-point"


class UserMessageNode(_BaseNode):
    type: Literal["user-message"] = "user-message"
    text: str
    role: Roles = Roles.USER


class AssistantMessageNode(_BaseNode):
    """
    An assistant reply.

    'is_streaming' is only ever True on the synthetic node the controller
    overlays while a reply is in flight; durable records keep the default.
    """

    type: Literal["assistant-message"] = "assistant-message"
    text: str
    role: Roles = Roles.ASSISTANT
    is_streaming: bool = False


MessageNode = UserMessageNode | AssistantMessageNode

TimelineNode = Annotated[
    RootNode | BranchRootNode | BranchPointNode | UserMessageNode | AssistantMessageNode,
    Field(discriminator="type"),
]

timeline_node_adapter: TypeAdapter[TimelineNode] = TypeAdapter(TimelineNode)


class NodeDatabase(ABC):
    """Abstract repository for timeline nodes."""

    @abstractmethod
    async def create_node(self, node: TimelineNode) -> TimelineNode:
        pass

    @abstractmethod
    async def get_nodes_by_project_id(self, project_id: str) -> list[TimelineNode]:
        pass

    @abstractmethod
    async def get_node_by_id(self, node_id: str) -> TimelineNode | None:
        pass

    @abstractmethod
    async def update_node_text(self, node_id: str, text: str) -> TimelineNode:
        """Replace the text of a message node (e.g. finalised after streaming)."""
        pass

    @abstractmethod
    async def delete_node(self, node_id: str) -> bool:
        pass
