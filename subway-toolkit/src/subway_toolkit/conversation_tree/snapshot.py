"""
Node/branch store.

'TreeSnapshot' is an immutable, fully indexed view of every branch and node
of one project at one point in time. All algorithms (path resolution, colors,
layout) read a snapshot and never mutate it.

'ConversationStore' owns the current snapshot and is its only writer:
'refresh' fetches branches and nodes concurrently and swaps in a new snapshot
only once both reads succeeded, so readers never observe a half-updated tree.
A failed refresh leaves the previous snapshot in place.
"""

import asyncio
from collections import defaultdict
from collections.abc import Iterable

from loguru import logger

from subway_toolkit.conversation_database.data_models.branch import Branch, BranchDatabase
from subway_toolkit.conversation_database.data_models.node import (
    BranchRootNode,
    NodeDatabase,
    RootNode,
    TimelineNode,
)
from subway_toolkit.errors import BranchNotFoundError, NodeNotFoundError, TransportError


def node_order_key(node: TimelineNode) -> tuple[int, int, str]:
    """Display order: creation time, then position, then id as the final tiebreak."""
    return node.created_at, node.position, node.id


def branch_order_key(branch: Branch) -> tuple[int, str]:
    return branch.created_at, branch.id


class TreeSnapshot:
    """
    Read-only view of one project's branches and nodes.

    Indexes are built once at construction. Every sequence returned is a
    tuple ordered by an explicit sort key, never by dict or set iteration
    order of the inputs.
    """

    def __init__(self, project_id: str, branches: Iterable[Branch], nodes: Iterable[TimelineNode]) -> None:
        self.project_id = project_id
        ordered_branches = sorted(branches, key=branch_order_key)
        ordered_nodes = sorted(nodes, key=node_order_key)

        self._branches: dict[str, Branch] = {b.id: b for b in ordered_branches}
        self._nodes: dict[str, TimelineNode] = {n.id: n for n in ordered_nodes}

        nodes_by_branch: dict[str, list[TimelineNode]] = defaultdict(list)
        child_nodes: dict[str, list[TimelineNode]] = defaultdict(list)
        for node in ordered_nodes:
            nodes_by_branch[node.branch_id].append(node)
            if node.parent_id is not None:
                child_nodes[node.parent_id].append(node)

        child_branches: dict[str, list[Branch]] = defaultdict(list)
        forked_at: dict[str, list[Branch]] = defaultdict(list)
        for branch in ordered_branches:
            if branch.parent_branch_id is not None:
                child_branches[branch.parent_branch_id].append(branch)
            if branch.branch_point_node_id is not None:
                forked_at[branch.branch_point_node_id].append(branch)

        self._nodes_by_branch = {k: tuple(v) for k, v in nodes_by_branch.items()}
        self._child_nodes = {k: tuple(v) for k, v in child_nodes.items()}
        self._child_branches = {k: tuple(v) for k, v in child_branches.items()}
        self._forked_at = {k: tuple(v) for k, v in forked_at.items()}

    @classmethod
    def empty(cls, project_id: str) -> "TreeSnapshot":
        return cls(project_id, [], [])

    @property
    def branches(self) -> tuple[Branch, ...]:
        return tuple(self._branches.values())

    @property
    def nodes(self) -> tuple[TimelineNode, ...]:
        return tuple(self._nodes.values())

    def get_branch(self, branch_id: str) -> Branch | None:
        return self._branches.get(branch_id)

    def require_branch(self, branch_id: str) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
        return branch

    def get_node(self, node_id: str) -> TimelineNode | None:
        return self._nodes.get(node_id)

    def require_node(self, node_id: str) -> TimelineNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    @property
    def root_branch(self) -> Branch | None:
        """The parentless branch; depth 0 is preferred if corrupted data holds several."""
        roots = [b for b in self._branches.values() if b.is_root]
        if not roots:
            return None
        return min(roots, key=lambda b: (b.depth != 0, b.created_at, b.id))

    @property
    def root_node(self) -> RootNode | None:
        return next((n for n in self._nodes.values() if isinstance(n, RootNode)), None)

    def branch_nodes(self, branch_id: str) -> tuple[TimelineNode, ...]:
        """Every node stored on the branch, its 'branch-root' included."""
        return self._nodes_by_branch.get(branch_id, ())

    def own_nodes(self, branch_id: str) -> tuple[TimelineNode, ...]:
        """The branch's own displayable sequence: stored nodes minus the 'branch-root'."""
        return tuple(n for n in self.branch_nodes(branch_id) if not isinstance(n, BranchRootNode))

    def latest_node(self, branch_id: str) -> TimelineNode | None:
        """Most recently appended own node, by position then creation time."""
        candidates = self.own_nodes(branch_id)
        if not candidates:
            return None
        return max(candidates, key=lambda n: (n.position, n.created_at, n.id))

    def next_position(self, branch_id: str) -> int:
        return max((n.position for n in self.branch_nodes(branch_id)), default=0) + 1

    def child_nodes(self, node_id: str) -> tuple[TimelineNode, ...]:
        return self._child_nodes.get(node_id, ())

    def child_branches(self, branch_id: str) -> tuple[Branch, ...]:
        """Direct children of a branch, oldest first."""
        return self._child_branches.get(branch_id, ())

    def sibling_index(self, branch: Branch) -> int:
        """Ordinal of 'branch' among branches with the same parent, by creation time then id."""
        if branch.parent_branch_id is None:
            return 0
        siblings = self.child_branches(branch.parent_branch_id)
        return next((i for i, b in enumerate(siblings) if b.id == branch.id), len(siblings))

    def branches_forked_at(self, node_id: str) -> tuple[Branch, ...]:
        return self._forked_at.get(node_id, ())

    def shape_signature(self) -> tuple[tuple[str, str | None, str | None, str], ...]:
        """Everything the layout depends on structurally; equal signatures mean an unchanged tree."""
        return tuple(
            (b.id, b.parent_branch_id, b.branch_point_node_id, str(b.direction_hint)) for b in self._branches.values()
        )


class ConversationStore:
    """
    Single-writer holder of the current 'TreeSnapshot' for one project.

    Attributes:
        project_id: The project whose tree this store mirrors.
        version: Incremented on every successful replacement.
    """

    def __init__(self, project_id: str, branch_db: BranchDatabase, node_db: NodeDatabase) -> None:
        self.project_id = project_id
        self.branch_db = branch_db
        self.node_db = node_db
        self.version = 0
        self._snapshot = TreeSnapshot.empty(project_id)

    @property
    def snapshot(self) -> TreeSnapshot:
        return self._snapshot

    def replace(self, snapshot: TreeSnapshot) -> None:
        self._snapshot = snapshot
        self.version += 1

    async def refresh(self) -> TreeSnapshot:
        """Re-read the whole project and atomically swap the snapshot."""
        try:
            branches, nodes = await asyncio.gather(
                self.branch_db.get_branches_by_project_id(self.project_id),
                self.node_db.get_nodes_by_project_id(self.project_id),
            )
        except Exception as exc:
            logger.warning(f"Refresh of project {self.project_id} failed, keeping snapshot v{self.version}: {exc}")
            raise TransportError("refresh", exc) from exc

        snapshot = TreeSnapshot(self.project_id, branches, nodes)
        self.replace(snapshot)
        logger.debug(f"Snapshot v{self.version} of project {self.project_id}: {len(branches)} branches, {len(nodes)} nodes")
        return snapshot
