from conftest import PROJECT_ID, branch
from subway_toolkit.conversation_database.data_models.branch import BranchLayout, Direction
from subway_toolkit.conversation_tree.snapshot import TreeSnapshot
from subway_toolkit.layout.cache import LayoutCache, LayoutStatus
from subway_toolkit.layout.subway import SubwayLayoutEngine


def test_unlaid_until_merged(twin_fork_snapshot):
    cache = LayoutCache()
    cache.observe(twin_fork_snapshot)

    assert cache.status("B1") == LayoutStatus.UNLAID
    assert cache.needs_recompute(twin_fork_snapshot)

    cache.merge(SubwayLayoutEngine().compute_layout(twin_fork_snapshot), twin_fork_snapshot.shape_signature())

    assert cache.status("B1") == LayoutStatus.COMPUTED
    assert not cache.needs_recompute(twin_fork_snapshot)


def test_shape_change_marks_entries_stale_but_readable(twin_fork_snapshot):
    cache = LayoutCache()
    cache.observe(twin_fork_snapshot)
    cache.merge(SubwayLayoutEngine().compute_layout(twin_fork_snapshot), twin_fork_snapshot.shape_signature())
    previous = cache.get("B1")

    grown = TreeSnapshot(
        PROJECT_ID, [*twin_fork_snapshot.branches, branch("B3", parent="R", fork="A1", created_at=30)], twin_fork_snapshot.nodes
    )
    cache.observe(grown)

    assert cache.status("B1") == LayoutStatus.STALE
    assert cache.get("B1") == previous
    assert cache.status("B3") == LayoutStatus.UNLAID
    assert cache.needs_recompute(grown)


def test_merge_only_overwrites_covered_branches():
    cache = LayoutCache()
    first = BranchLayout(x=1, y=1, direction=Direction.RIGHT, sibling_index=0, level=0)
    second = BranchLayout(x=2, y=2, direction=Direction.LEFT, sibling_index=0, level=1)
    cache.merge({"R": first, "B": second}, ())

    cache.merge({"B": first}, ())

    assert cache.as_dict() == {"R": first, "B": first}


def test_seeded_from_persisted_layouts():
    layout = BranchLayout(x=400, y=150, direction=Direction.RIGHT, sibling_index=0, level=0)
    persisted = branch("R").model_copy(update={"layout": layout})
    snapshot = TreeSnapshot(PROJECT_ID, [persisted], [])
    cache = LayoutCache()

    cache.observe(snapshot)

    assert cache.get("R") == layout
    assert cache.status("R") == LayoutStatus.COMPUTED
    assert not cache.needs_recompute(snapshot)


def test_deleted_branches_are_pruned(twin_fork_snapshot):
    cache = LayoutCache()
    cache.merge(SubwayLayoutEngine().compute_layout(twin_fork_snapshot), twin_fork_snapshot.shape_signature())

    shrunk = TreeSnapshot(
        PROJECT_ID, [b for b in twin_fork_snapshot.branches if b.id != "B2"], twin_fork_snapshot.nodes
    )
    cache.observe(shrunk)

    assert "B2" not in cache.as_dict()
    assert cache.status("B2") == LayoutStatus.UNLAID
