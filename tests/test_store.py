import pytest

from conftest import PROJECT_ID, assistant, branch, branch_root, root, user
from subway_toolkit.conversation_database.in_memory import InMemoryBranchDatabase, InMemoryNodeDatabase
from subway_toolkit.conversation_tree.snapshot import ConversationStore, TreeSnapshot
from subway_toolkit.errors import NodeNotFoundError, TransportError


class FailingNodeDatabase(InMemoryNodeDatabase):
    async def get_nodes_by_project_id(self, project_id):
        raise ConnectionError("database unreachable")


@pytest.mark.asyncio
async def test_refresh_swaps_snapshot():
    branch_db, node_db = InMemoryBranchDatabase(), InMemoryNodeDatabase()
    await branch_db.create_branch(branch("R"))
    await node_db.create_node(root("root", "R"))
    store = ConversationStore(PROJECT_ID, branch_db, node_db)

    snapshot = await store.refresh()

    assert store.snapshot is snapshot
    assert store.version == 1
    assert snapshot.root_branch.id == "R"
    assert snapshot.root_node.id == "root"


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot():
    branch_db, node_db = InMemoryBranchDatabase(), FailingNodeDatabase()
    await branch_db.create_branch(branch("R"))
    store = ConversationStore(PROJECT_ID, branch_db, node_db)
    before = store.snapshot

    with pytest.raises(TransportError):
        await store.refresh()

    assert store.snapshot is before
    assert store.version == 0


def test_latest_node_and_next_position(left_fork_snapshot):
    assert left_fork_snapshot.latest_node("B").id == "A2"
    assert left_fork_snapshot.next_position("B") == 3
    assert [n.id for n in left_fork_snapshot.branch_nodes("B")] == ["BR", "U2", "A2"]
    assert [n.id for n in left_fork_snapshot.own_nodes("B")] == ["U2", "A2"]


def test_empty_branch_has_no_latest_node(twin_fork_snapshot):
    assert twin_fork_snapshot.latest_node("B1") is None
    assert twin_fork_snapshot.next_position("B1") == 1


def test_child_indexes(twin_fork_snapshot):
    assert [b.id for b in twin_fork_snapshot.child_branches("R")] == ["B1", "B2"]
    assert [n.id for n in twin_fork_snapshot.child_nodes("A1")] == ["B1R", "B2R"]
    assert [b.id for b in twin_fork_snapshot.branches_forked_at("A1")] == ["B1", "B2"]
    assert twin_fork_snapshot.sibling_index(twin_fork_snapshot.require_branch("B2")) == 1


def test_require_node_raises_for_unknown_id(twin_fork_snapshot):
    with pytest.raises(NodeNotFoundError):
        twin_fork_snapshot.require_node("nope")


def test_shape_signature_ignores_messages():
    branches = [branch("R"), branch("B", parent="R", fork="A1", created_at=1)]
    small = TreeSnapshot(PROJECT_ID, branches, [user("U1", "R", None, 1)])
    large = TreeSnapshot(
        PROJECT_ID,
        branches,
        [user("U1", "R", None, 1), assistant("A1", "R", "U1", 2), branch_root("BR", "B", "A1", created_at=1)],
    )

    assert small.shape_signature() == large.shape_signature()
    assert small.shape_signature() != TreeSnapshot(PROJECT_ID, branches[:1], []).shape_signature()
