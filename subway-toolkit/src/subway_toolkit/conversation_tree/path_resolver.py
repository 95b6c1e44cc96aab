"""
Branch path resolution.

A branch only stores its own nodes. What a viewer sees for that branch is its
ancestors' history up to the fork point followed by the branch's own nodes:

    root branch R:  root, U1, A1, U3, A3
    branch B (forked from R at A1):  [branch-root], U2, A2
    path(B) = root, U1, A1, U2, A2

The resolver walks the ancestry chain upward first (detecting cycles and
missing parents on the way), then stitches prefixes downward from the root.
A fork node that is absent from the parent's resolved path is a data-integrity
fault and is raised, never papered over by returning a shorter path.
"""

from typing import assert_never

from subway_toolkit.conversation_database.data_models.branch import Branch
from subway_toolkit.conversation_database.data_models.node import (
    AssistantMessageNode,
    BranchPointNode,
    BranchRootNode,
    RootNode,
    TimelineNode,
    UserMessageNode,
)
from subway_toolkit.conversation_tree.snapshot import TreeSnapshot
from subway_toolkit.errors import BranchCycleError, BranchPointNotFoundError, OrphanBranchError
from subway_toolkit.llms.base import LLMMessage, Roles


class BranchPathResolver:
    """Resolves display paths against one immutable 'TreeSnapshot'."""

    def __init__(self, snapshot: TreeSnapshot) -> None:
        self.snapshot = snapshot

    def ancestry(self, branch_id: str) -> list[Branch]:
        """
        Return the chain '[branch, parent, grandparent, ..., root]'.

        Raises:
            BranchNotFoundError: 'branch_id' is unknown.
            OrphanBranchError: an ancestor references a parent that does not exist.
            BranchCycleError: a branch id repeats while walking upward.
        """
        chain: list[Branch] = []
        seen: set[str] = set()
        current = self.snapshot.require_branch(branch_id)
        while True:
            if current.id in seen:
                raise BranchCycleError([b.id for b in chain] + [current.id])
            seen.add(current.id)
            chain.append(current)
            if current.parent_branch_id is None:
                return chain
            parent = self.snapshot.get_branch(current.parent_branch_id)
            if parent is None:
                raise OrphanBranchError(current.id, current.parent_branch_id)
            current = parent

    def resolve(self, target_branch_id: str | None) -> list[TimelineNode]:
        """Ordered nodes to display for 'target_branch_id' ('None' means the root branch)."""
        if target_branch_id is None:
            root = self.snapshot.root_branch
            if root is None:
                return []
            target_branch_id = root.id

        chain = self.ancestry(target_branch_id)
        path: list[TimelineNode] = list(self.snapshot.own_nodes(chain[-1].id))
        for branch in reversed(chain[:-1]):
            cut = next((i for i, node in enumerate(path) if node.id == branch.branch_point_node_id), None)
            if cut is None:
                raise BranchPointNotFoundError(branch.id, branch.branch_point_node_id, branch.parent_branch_id or "")
            path = path[: cut + 1] + list(self.snapshot.own_nodes(branch.id))
        return path


def to_llm_history(path: list[TimelineNode]) -> list[LLMMessage]:
    """Project a display path onto the user/assistant turns an LLM should see."""
    history: list[LLMMessage] = []
    for node in path:
        match node:
            case UserMessageNode():
                history.append(LLMMessage(role=Roles.USER, content=node.text))
            case AssistantMessageNode():
                if not node.is_streaming:
                    history.append(LLMMessage(role=Roles.ASSISTANT, content=node.text))
            case RootNode() | BranchRootNode() | BranchPointNode():
                continue
            case _:
                assert_never(node)
    return history
