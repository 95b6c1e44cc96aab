from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from subway_toolkit.conversation_database.controller import SubwayController
from subway_toolkit.conversation_database.data_models.branch import Branch, Direction
from subway_toolkit.conversation_database.data_models.node import (
    AssistantMessageNode,
    BranchPointNode,
    BranchRootNode,
    RootNode,
    UserMessageNode,
)
from subway_toolkit.conversation_database.in_memory import (
    InMemoryBranchDatabase,
    InMemoryNodeDatabase,
    InMemoryProjectDatabase,
)
from subway_toolkit.conversation_tree.snapshot import TreeSnapshot
from subway_toolkit.llms.base import LLM, LLMMessage, Roles

PROJECT_ID = "p1"


class FakeLLM(LLM):
    """Streams the given chunks; raises after 'fail_after' chunks if set."""

    def __init__(self, chunks: list[str] | None = None, fail_after: int | None = None):
        self.chunks = chunks if chunks is not None else ["Hello", ", ", "world"]
        self.fail_after = fail_after
        self.conversations: list[list[LLMMessage]] = []
        self.closed = False

    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        self.conversations.append(list(conversation))
        return LLMMessage(role=Roles.ASSISTANT, content="".join(self.chunks))

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        self.conversations.append(list(conversation))
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index >= self.fail_after:
                    raise ConnectionError("model connection dropped")
                yield LLMMessage(role=Roles.ASSISTANT, content=chunk)
        finally:
            self.closed = True


def branch(
    branch_id: str,
    parent: str | None = None,
    fork: str | None = None,
    created_at: int = 0,
    direction: Direction = Direction.AUTO,
    depth: int | None = None,
    color: str | None = None,
) -> Branch:
    return Branch(
        id=branch_id,
        project_id=PROJECT_ID,
        name=branch_id,
        parent_branch_id=parent,
        branch_point_node_id=fork,
        color=color,
        depth=depth if depth is not None else (0 if parent is None else 1),
        direction_hint=direction,
        created_at=created_at,
        created_by="tester",
    )


def _fields(node_id: str, branch_id: str, parent: str | None, position: int, created_at: int | None) -> dict:
    return dict(
        id=node_id,
        project_id=PROJECT_ID,
        branch_id=branch_id,
        parent_id=parent,
        position=position,
        created_at=created_at if created_at is not None else position,
        created_by="tester",
    )


def root(node_id: str, branch_id: str, created_at: int | None = None) -> RootNode:
    return RootNode(**_fields(node_id, branch_id, None, 0, created_at))


def branch_root(node_id: str, branch_id: str, fork: str, created_at: int | None = None) -> BranchRootNode:
    return BranchRootNode(**_fields(node_id, branch_id, fork, 0, created_at))


def branch_point(node_id: str, branch_id: str, parent: str, position: int, created_at: int | None = None) -> BranchPointNode:
    return BranchPointNode(**_fields(node_id, branch_id, parent, position, created_at))


def user(node_id: str, branch_id: str, parent: str | None, position: int, created_at: int | None = None) -> UserMessageNode:
    return UserMessageNode(text=node_id, **_fields(node_id, branch_id, parent, position, created_at))


def assistant(
    node_id: str, branch_id: str, parent: str | None, position: int, created_at: int | None = None
) -> AssistantMessageNode:
    return AssistantMessageNode(text=node_id, **_fields(node_id, branch_id, parent, position, created_at))


@pytest.fixture
def left_fork_snapshot() -> TreeSnapshot:
    """R: U1, A1, U3, A3. B forks left at A1 with U2, A2."""
    return TreeSnapshot(
        PROJECT_ID,
        [branch("R", created_at=0), branch("B", parent="R", fork="A1", created_at=10, direction=Direction.LEFT)],
        [
            user("U1", "R", None, 1),
            assistant("A1", "R", "U1", 2),
            user("U3", "R", "A1", 3),
            assistant("A3", "R", "U3", 4),
            branch_root("BR", "B", "A1", created_at=10),
            user("U2", "B", "A1", 1, created_at=11),
            assistant("A2", "B", "U2", 2, created_at=12),
        ],
    )


@pytest.fixture
def twin_fork_snapshot() -> TreeSnapshot:
    """R: root, U1, A1. B1 and B2 both fork at A1 without a direction hint."""
    return TreeSnapshot(
        PROJECT_ID,
        [
            branch("R", created_at=0),
            branch("B1", parent="R", fork="A1", created_at=10),
            branch("B2", parent="R", fork="A1", created_at=20),
        ],
        [
            root("root", "R"),
            user("U1", "R", "root", 1),
            assistant("A1", "R", "U1", 2),
            branch_root("B1R", "B1", "A1", created_at=10),
            branch_root("B2R", "B2", "A1", created_at=20),
        ],
    )


@pytest.fixture
def databases() -> tuple[InMemoryProjectDatabase, InMemoryBranchDatabase, InMemoryNodeDatabase]:
    return InMemoryProjectDatabase(), InMemoryBranchDatabase(), InMemoryNodeDatabase()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest_asyncio.fixture
async def controller(databases, llm) -> SubwayController:
    project_db, branch_db, node_db = databases
    return await SubwayController.create_project("Test project", project_db, branch_db, node_db, llm)
