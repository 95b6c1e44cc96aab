"""
Eventually-consistent cache of branch layouts.

Each branch moves through 'unlaid -> computed -> stale -> computed'. A tree
mutation (a different shape signature) turns every computed entry stale, but
stale entries remain readable so renderers are never blocked while a
recomputation is in flight. Results are merged entry by entry: a recompute
overwrites only the branches it covers and leaves the rest alone.
"""

from enum import StrEnum

from subway_toolkit.conversation_database.data_models.branch import BranchLayout
from subway_toolkit.conversation_tree.snapshot import TreeSnapshot


class LayoutStatus(StrEnum):
    UNLAID = "unlaid"
    COMPUTED = "computed"
    STALE = "stale"


class LayoutCache:
    def __init__(self) -> None:
        self._layouts: dict[str, BranchLayout] = {}
        self._status: dict[str, LayoutStatus] = {}
        self.signature: tuple | None = None

    def get(self, branch_id: str) -> BranchLayout | None:
        return self._layouts.get(branch_id)

    def status(self, branch_id: str) -> LayoutStatus:
        return self._status.get(branch_id, LayoutStatus.UNLAID)

    def as_dict(self) -> dict[str, BranchLayout]:
        return dict(self._layouts)

    def observe(self, snapshot: TreeSnapshot) -> None:
        """
        Align the cache with a freshly loaded snapshot.

        Persisted layouts seed missing entries. On the very first observation a
        fully persisted tree is trusted as computed; afterwards any change of
        shape marks every entry stale.
        """
        known = {branch.id for branch in snapshot.branches}
        for branch_id in [b for b in self._layouts if b not in known]:
            del self._layouts[branch_id]
            del self._status[branch_id]

        for branch in snapshot.branches:
            if branch.id not in self._layouts and branch.layout is not None:
                self._layouts[branch.id] = branch.layout
                self._status[branch.id] = LayoutStatus.COMPUTED

        signature = snapshot.shape_signature()
        if self.signature is None and known and known <= self._layouts.keys():
            self.signature = signature
        elif self.signature != signature:
            for branch_id in self._status:
                self._status[branch_id] = LayoutStatus.STALE

    def needs_recompute(self, snapshot: TreeSnapshot) -> bool:
        if self.signature != snapshot.shape_signature():
            return True
        return any(self.status(branch.id) != LayoutStatus.COMPUTED for branch in snapshot.branches)

    def merge(self, layouts: dict[str, BranchLayout], signature: tuple) -> None:
        for branch_id, layout in layouts.items():
            self._layouts[branch_id] = layout
            self._status[branch_id] = LayoutStatus.COMPUTED
        self.signature = signature
