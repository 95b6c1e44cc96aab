"""
Branch color allocation.

The root branch always gets the first palette color. Every other branch gets
'palette[1 + sibling_index % (len(palette) - 1)]', where 'sibling_index' is
its ordinal among the branches sharing its parent, oldest first. Siblings are
therefore visually distinct (until the palette wraps) and no child is ever
painted in the root's color. A color, once persisted on a branch, is returned
unchanged forever.
"""

from loguru import logger

from subway_toolkit.conversation_tree.snapshot import TreeSnapshot

BRANCH_COLORS: tuple[str, ...] = (
    "#3b82f6",  # blue-500, main line
    "#ef4444",  # red-500
    "#10b981",  # emerald-500
    "#8b5cf6",  # violet-500
    "#f59e0b",  # amber-500
    "#06b6d4",  # cyan-500
    "#ec4899",  # pink-500
    "#84cc16",  # lime-500
    "#6366f1",  # indigo-500
    "#14b8a6",  # teal-500
    "#f97316",  # orange-500
    "#a855f7",  # purple-500
)

MAIN_BRANCH_COLOR = BRANCH_COLORS[0]


class BranchColorAllocator:
    """
    Derives display colors from a snapshot.

    Attributes:
        palette: Ordered hues; index 0 is reserved for the root branch.
    """

    def __init__(self, snapshot: TreeSnapshot, palette: tuple[str, ...] = BRANCH_COLORS) -> None:
        if len(palette) < 2:
            raise ValueError("A palette needs the root color plus at least one branch color")
        self.snapshot = snapshot
        self.palette = palette

    def _child_color(self, index: int) -> str:
        return self.palette[1 + index % (len(self.palette) - 1)]

    def color_for(self, branch_id: str) -> str:
        branch = self.snapshot.require_branch(branch_id)
        if branch.color:
            return branch.color
        if branch.parent_branch_id is None:
            return self.palette[0]
        color = self._child_color(self.snapshot.sibling_index(branch))
        logger.debug(f"Derived color {color} for uncolored branch {branch_id}")
        return color

    def color_for_new_branch(self, parent_branch_id: str | None) -> str:
        """
        Color for a branch about to be created under 'parent_branch_id'.

        Starts at the next sibling ordinal and skips colors still held by a
        live sibling, so a color freed by a deleted branch is reused before a
        live one is repeated.
        """
        if parent_branch_id is None:
            return self.palette[0]
        siblings = self.snapshot.child_branches(parent_branch_id)
        taken = {self.color_for(sibling.id) for sibling in siblings}
        for offset in range(len(self.palette) - 1):
            color = self._child_color(len(siblings) + offset)
            if color not in taken:
                return color
        return self._child_color(len(siblings))
