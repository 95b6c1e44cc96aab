"""
Subway map layout for the conversational tree.

Colors, branch positions and the layout cache are available directly:

    from subway_toolkit.layout import (
        BranchColorAllocator, SubwayLayoutEngine, LayoutConfig, LayoutCache,
    )
"""

from subway_toolkit.layout.cache import LayoutCache, LayoutStatus
from subway_toolkit.layout.colors import BRANCH_COLORS, MAIN_BRANCH_COLOR, BranchColorAllocator
from subway_toolkit.layout.subway import LayoutConfig, NodeOffset, SubwayLayoutEngine, resolve_directions

__all__ = [
    "BRANCH_COLORS",
    "MAIN_BRANCH_COLOR",
    "BranchColorAllocator",
    "LayoutCache",
    "LayoutConfig",
    "LayoutStatus",
    "NodeOffset",
    "SubwayLayoutEngine",
    "resolve_directions",
]
