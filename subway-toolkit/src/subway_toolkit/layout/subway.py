"""
Subway layout engine.

Places every branch of a project as a vertical "line" on a 2-D map:

    - The root branch sits at 'center_x', direction right.
    - Children are visited breadth-first (parents always before children),
      siblings ordered by creation time then id.
    - A child's direction is its creation hint, or alternates by sibling
      ordinal when the hint is 'auto' (first right, second left, ...).
    - A child's x is its parent's x shifted towards its direction by a
      depth-decayed base spacing plus one 'sibling_spacing' per earlier
      sibling on the same side. Two siblings on the same side therefore never
      share an x coordinate.
    - A child's y is the vertical offset of its fork node; its own nodes
      follow at one 'station_spacing' each.

Branches that cannot be reached from the root (missing parent, cycle) get a
deterministic depth-parity placement instead of an error, so a corrupted
branch never blocks rendering of the rest of the map.

The engine is pure: same snapshot in, identical layouts out.
"""

import math
from collections import deque

from loguru import logger
from pydantic import BaseModel, ConfigDict

from subway_toolkit.conversation_database.data_models.branch import Branch, BranchLayout, Direction
from subway_toolkit.conversation_database.data_models.node import BranchRootNode
from subway_toolkit.conversation_tree.snapshot import TreeSnapshot


class LayoutConfig(BaseModel):
    """
    Spacing constants of the subway map, in renderer pixels.

    Attributes:
        center_x: x of the root branch line.
        origin_y: y of position 0 on the root branch.
        branch_spacing: Horizontal distance between a depth-1 branch and its parent.
        depth_decay: Factor applied to 'branch_spacing' per additional depth level.
        sibling_spacing: Extra horizontal distance per earlier same-side sibling.
        station_spacing: Vertical distance between consecutive nodes of a line.
    """

    model_config = ConfigDict(frozen=True)

    center_x: float = 400.0
    origin_y: float = 150.0
    branch_spacing: float = 250.0
    depth_decay: float = 0.75
    sibling_spacing: float = 120.0
    station_spacing: float = 100.0


class NodeOffset(BaseModel):
    """Map coordinates of a single timeline node."""

    x: float
    y: float


def resolve_directions(children: tuple[Branch, ...]) -> list[Direction]:
    """Explicit hints win; 'auto' siblings alternate right/left by ordinal."""
    directions: list[Direction] = []
    for index, child in enumerate(children):
        if child.direction_hint in (Direction.LEFT, Direction.RIGHT):
            directions.append(child.direction_hint)
        else:
            directions.append(Direction.RIGHT if index % 2 == 0 else Direction.LEFT)
    return directions


class SubwayLayoutEngine:
    def __init__(self, config: LayoutConfig | None = None) -> None:
        self.config = config or LayoutConfig()

    def compute_layout(self, snapshot: TreeSnapshot) -> dict[str, BranchLayout]:
        layouts, _ = self._place(snapshot)
        return layouts

    def compute_node_offsets(self, snapshot: TreeSnapshot) -> dict[str, NodeOffset]:
        layouts, node_y = self._place(snapshot)
        return {
            node.id: NodeOffset(x=layouts[node.branch_id].x, y=node_y[node.id])
            for node in snapshot.nodes
            if node.branch_id in layouts and node.id in node_y
        }

    def _place(self, snapshot: TreeSnapshot) -> tuple[dict[str, BranchLayout], dict[str, float]]:
        cfg = self.config
        layouts: dict[str, BranchLayout] = {}
        node_y: dict[str, float] = {}

        root = snapshot.root_branch
        if root is not None:
            layouts[root.id] = BranchLayout(
                x=cfg.center_x, y=cfg.origin_y, direction=Direction.RIGHT, sibling_index=0, level=0
            )
            for node in snapshot.branch_nodes(root.id):
                node_y[node.id] = cfg.origin_y + node.position * cfg.station_spacing

            queue: deque[Branch] = deque([root])
            while queue:
                parent = queue.popleft()
                parent_layout = layouts[parent.id]
                children = snapshot.child_branches(parent.id)
                lanes = {Direction.LEFT: 0, Direction.RIGHT: 0}
                for index, (child, direction) in enumerate(zip(children, resolve_directions(children))):
                    if child.id in layouts:
                        continue
                    lane = lanes[direction]
                    lanes[direction] += 1
                    level = parent_layout.level + 1
                    offset = cfg.branch_spacing * cfg.depth_decay ** (level - 1) + lane * cfg.sibling_spacing
                    sign = -1.0 if direction == Direction.LEFT else 1.0
                    start_y = self._fork_y(snapshot, child, parent_layout, node_y)
                    layouts[child.id] = BranchLayout(
                        x=parent_layout.x + sign * offset,
                        y=start_y,
                        direction=direction,
                        sibling_index=index,
                        level=level,
                    )
                    self._stack_nodes(snapshot, child.id, start_y, node_y)
                    queue.append(child)

        for branch in sorted(snapshot.branches, key=lambda b: (b.depth, b.created_at, b.id)):
            if branch.id in layouts:
                continue
            logger.warning(f"Branch {branch.id} is not reachable from the root branch, using fallback placement")
            layouts[branch.id] = self._fallback(snapshot, branch)
            self._stack_nodes(snapshot, branch.id, layouts[branch.id].y, node_y)

        return layouts, node_y

    def _fork_y(
        self, snapshot: TreeSnapshot, branch: Branch, parent_layout: BranchLayout, node_y: dict[str, float]
    ) -> float:
        fork_id = branch.branch_point_node_id
        if fork_id is not None and fork_id in node_y:
            return node_y[fork_id]
        fork = snapshot.get_node(fork_id) if fork_id is not None else None
        if fork is not None:
            return self.config.origin_y + fork.position * self.config.station_spacing
        logger.warning(f"Fork node {fork_id!r} of branch {branch.id} is missing, starting at its parent's offset")
        return parent_layout.y

    def _stack_nodes(self, snapshot: TreeSnapshot, branch_id: str, start_y: float, node_y: dict[str, float]) -> None:
        step = self.config.station_spacing
        index = 0
        for node in snapshot.branch_nodes(branch_id):
            if isinstance(node, BranchRootNode):
                node_y[node.id] = start_y
                continue
            index += 1
            node_y[node.id] = start_y + index * step

    def _fallback(self, snapshot: TreeSnapshot, branch: Branch) -> BranchLayout:
        cfg = self.config
        depth = max(branch.depth, 0)
        if depth == 0:
            x, direction = cfg.center_x, Direction.RIGHT
        elif depth % 2 == 1:
            x, direction = cfg.center_x + math.ceil(depth / 2) * cfg.branch_spacing, Direction.RIGHT
        else:
            x, direction = cfg.center_x - (depth // 2) * cfg.branch_spacing, Direction.LEFT
        return BranchLayout(
            x=x, y=cfg.origin_y, direction=direction, sibling_index=snapshot.sibling_index(branch), level=depth
        )
