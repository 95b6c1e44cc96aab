"""
Subway toolkit controller (Facade).

'SubwayController' is the single entry point for the application logic of one
project. It coordinates the three pluggable repositories, the LLM, the
'ConversationStore' snapshot, the layout engine and cache, and the streaming
reconciler:

    'create_project'      - initialize a project: main line, root node, welcome message.
    'create_branch'       - fork a new branch at a node, then re-layout.
    'send_message_stream' - async generator of 'StreamingUpdate's for one user turn;
                            the final update carries the durable assistant reply.
    'send_message'        - non-streaming variant, returns the final update.
    'get_display_path'    - resolved path of a branch with any in-flight reply overlaid.
    'recalculate_layout'  - compute, persist and merge branch layouts.

Validation faults ('InvalidRequestError') are raised before any write.
Repository failures are reported inside an 'OperationResult' and leave the
previous snapshot in place.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import aclosing
from textwrap import dedent
from typing import Any, Generic, TypeVar

from loguru import logger
from pydantic import BaseModel

from subway_toolkit.conversation_database.data_models.branch import Branch, BranchDatabase, BranchLayout, Direction
from subway_toolkit.conversation_database.data_models.node import (
    AssistantMessageNode,
    BranchRootNode,
    MessageNode,
    NodeDatabase,
    RootNode,
    TimelineNode,
    UserMessageNode,
)
from subway_toolkit.conversation_database.data_models.project import Project, ProjectDatabase
from subway_toolkit.conversation_tree.path_resolver import BranchPathResolver, to_llm_history
from subway_toolkit.conversation_tree.snapshot import ConversationStore, TreeSnapshot
from subway_toolkit.errors import (
    BranchNotDeletableError,
    BranchNotFoundError,
    FaultKind,
    InvalidRequestError,
    MissingParentError,
    NodeNotDeletableError,
    SubwayError,
    TransportError,
)
from subway_toolkit.layout.cache import LayoutCache, LayoutStatus
from subway_toolkit.layout.colors import BRANCH_COLORS, BranchColorAllocator
from subway_toolkit.layout.subway import SubwayLayoutEngine
from subway_toolkit.llms.base import LLM, LLMMessage, Roles
from subway_toolkit.streaming.reconciliation import (
    StreamingPhase,
    StreamingReconciler,
    StreamingSession,
    TurnState,
)
from subway_toolkit.utils.database import generate_uid
from subway_toolkit.utils.time import get_current_timestamp

T = TypeVar("T")

MAIN_BRANCH_NAME = "Main Line"
ASSISTANT_AUTHOR = "assistant"
WELCOME_MESSAGE = dedent("""
    Welcome to your new project! Every reply can become a station where a new
    line branches off. Ask a question to get started.
""").strip()


class OperationResult(BaseModel, Generic[T]):
    """Outcome of an awaited controller operation that may hit the repositories."""

    value: T | None = None
    error: str | None = None
    fault: FaultKind | None = None

    @property
    def ok(self) -> bool:
        return self.fault is None

    @classmethod
    def failure(cls, exc: SubwayError) -> "OperationResult[T]":
        return cls(error=str(exc), fault=exc.kind)


class BranchInput(BaseModel):
    branch_point_node_id: str
    name: str | None = None
    direction: Direction = Direction.AUTO


class MessageInput(BaseModel):
    content: str
    branch_id: str | None = None


class StreamingUpdate(BaseModel):
    """
    One event of a user turn.

    'content' is the full reply text accumulated so far (not a delta), or the
    error text once 'state' is 'error'. The final update of a successful turn
    has state 'reconciled' and carries 'assistant_message_id'. 'fault' tags a
    failed turn, or a repository refresh that failed while the turn went on.
    """

    session_id: str
    branch_id: str
    phase: StreamingPhase
    state: TurnState
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    content: str = ""
    error: str | None = None
    fault: FaultKind | None = None

    def encode(self, charset: str = "utf-8") -> bytes:
        return json.dumps(self.model_dump(mode="json")).encode(charset)


class SubwayController:
    def __init__(
        self,
        project_id: str,
        project_db: ProjectDatabase,
        branch_db: BranchDatabase,
        node_db: NodeDatabase,
        llm: LLM,
        layout_engine: SubwayLayoutEngine | None = None,
        palette: tuple[str, ...] = BRANCH_COLORS,
        user_id: str = "user",
    ):
        self.project_id = project_id
        self.project_db = project_db
        self.branch_db = branch_db
        self.node_db = node_db
        self.llm = llm
        self.layout_engine = layout_engine or SubwayLayoutEngine()
        self.palette = palette
        self.user_id = user_id
        self.store = ConversationStore(project_id, branch_db, node_db)
        self.layout_cache = LayoutCache()
        self.reconciler = StreamingReconciler()
        self.current_branch_id: str | None = None

    @classmethod
    async def create_project(
        cls,
        name: str,
        project_db: ProjectDatabase,
        branch_db: BranchDatabase,
        node_db: NodeDatabase,
        llm: LLM,
        description: str | None = None,
        created_by: str = "user",
        welcome_message: str = WELCOME_MESSAGE,
        **kwargs: Any,
    ) -> "SubwayController":
        """
        Create a project with its main line, root node and welcome message.

        Raises:
            TransportError: a repository write failed. The partially created
                project is not rolled back.
        """
        now = get_current_timestamp()
        project = Project(id=generate_uid(), name=name, description=description, created_at=now, created_by=created_by)
        main = Branch(
            id=generate_uid(),
            project_id=project.id,
            name=MAIN_BRANCH_NAME,
            color=BRANCH_COLORS[0],
            depth=0,
            created_at=now,
            created_by=created_by,
        )
        root = RootNode(
            id=generate_uid(), project_id=project.id, branch_id=main.id, position=0, created_at=now, created_by=created_by
        )
        welcome = AssistantMessageNode(
            id=generate_uid(),
            project_id=project.id,
            branch_id=main.id,
            parent_id=root.id,
            position=1,
            created_at=now,
            created_by=ASSISTANT_AUTHOR,
            text=welcome_message,
        )
        try:
            await project_db.create_project(project)
            await branch_db.create_branch(main)
            await node_db.create_node(root)
            await node_db.create_node(welcome)
        except Exception as exc:
            raise TransportError("create project", exc) from exc
        logger.info(f"Created project {project.id} ({name!r}) with main branch {main.id}")

        controller = cls(project.id, project_db, branch_db, node_db, llm, user_id=created_by, **kwargs)
        result = await controller.refresh()
        if result.ok:
            result = await controller.recalculate_layout(force=True)
        if not result.ok:
            raise TransportError("initialize project", result.error)
        controller.current_branch_id = main.id
        return controller

    @classmethod
    async def load(
        cls,
        project_id: str,
        project_db: ProjectDatabase,
        branch_db: BranchDatabase,
        node_db: NodeDatabase,
        llm: LLM,
        **kwargs: Any,
    ) -> "SubwayController":
        project = await project_db.get_project_by_id(project_id)
        if project is None:
            raise InvalidRequestError(f"Project {project_id!r} not found")
        controller = cls(project_id, project_db, branch_db, node_db, llm, **kwargs)
        result = await controller.refresh()
        if not result.ok:
            raise TransportError("load project", result.error)
        return controller

    @property
    def snapshot(self) -> TreeSnapshot:
        return self.store.snapshot

    def resolver(self) -> BranchPathResolver:
        return BranchPathResolver(self.store.snapshot)

    async def refresh(self) -> OperationResult[int]:
        try:
            snapshot = await self.store.refresh()
        except TransportError as exc:
            return OperationResult[int].failure(exc)
        self.layout_cache.observe(snapshot)
        return OperationResult[int](value=self.store.version)

    def _branch_key(self, branch_id: str | None) -> str:
        """Concrete branch id for a selection; 'None' selects the root branch."""
        if branch_id is not None:
            return self.snapshot.require_branch(branch_id).id
        root = self.snapshot.root_branch
        if root is None:
            raise BranchNotFoundError(None)
        return root.id

    def switch_branch(self, branch_id: str | None) -> None:
        """Select the branch to view and send on. In-flight replies keep streaming into their own branch."""
        if branch_id is not None:
            self.snapshot.require_branch(branch_id)
        self.current_branch_id = branch_id

    # Renderer surface

    def get_display_path(self, branch_id: str | None = None) -> list[TimelineNode]:
        """Resolved path of 'branch_id' (root branch if None) plus its in-flight reply, if any."""
        path = self.resolver().resolve(branch_id)
        if not path and self.snapshot.root_branch is None:
            return path
        return self.reconciler.overlay(path, self._branch_key(branch_id))

    @property
    def displayed_nodes(self) -> list[TimelineNode]:
        return self.get_display_path(self.current_branch_id)

    def get_layout(self) -> dict[str, BranchLayout]:
        return self.layout_cache.as_dict()

    def layout_status(self, branch_id: str) -> LayoutStatus:
        return self.layout_cache.status(branch_id)

    def color_for(self, branch_id: str) -> str:
        return BranchColorAllocator(self.snapshot, self.palette).color_for(branch_id)

    def streaming_phase(self, branch_id: str | None = None) -> StreamingPhase:
        return self.reconciler.phase(self._branch_key(branch_id))

    def streaming_session(self, branch_id: str | None = None) -> StreamingSession | None:
        return self.reconciler.session_for(self._branch_key(branch_id))

    # Layout

    async def recalculate_layout(self, force: bool = False) -> OperationResult[dict[str, BranchLayout]]:
        """
        Recompute every branch layout, persist the changed ones concurrently and
        merge them into the cache. Skipped unless forced when the tree shape is
        unchanged since the last computation.
        """
        snapshot = self.snapshot
        if not force and not self.layout_cache.needs_recompute(snapshot):
            return OperationResult[dict[str, BranchLayout]](value=self.layout_cache.as_dict())

        layouts = self.layout_engine.compute_layout(snapshot)
        changed = {
            branch_id: layout
            for branch_id, layout in layouts.items()
            if snapshot.require_branch(branch_id).layout != layout
        }
        try:
            await asyncio.gather(
                *(self.branch_db.update_branch_layout(branch_id, layout) for branch_id, layout in changed.items())
            )
        except Exception as exc:
            logger.warning(f"Persisting layouts of project {self.project_id} failed: {exc}")
            return OperationResult[dict[str, BranchLayout]].failure(TransportError("persist layout", exc))

        self.layout_cache.merge(layouts, snapshot.shape_signature())
        logger.debug(f"Laid out {len(layouts)} branches, persisted {len(changed)}")
        return OperationResult[dict[str, BranchLayout]](value=self.layout_cache.as_dict())

    # Tree mutations

    async def create_branch(
        self,
        parent_branch_id: str | None,
        branch_point_node_id: str,
        direction: Direction = Direction.AUTO,
        name: str | None = None,
    ) -> OperationResult[Branch]:
        """
        Fork a new branch at 'branch_point_node_id' and create its 'branch-root'.

        'parent_branch_id' defaults to the branch that stores the fork node and
        must match it when given.

        Raises:
            NodeNotFoundError: the fork node is unknown.
            InvalidRequestError: the fork node is a 'branch-root' or lives on another branch.
        """
        snapshot = self.snapshot
        fork = snapshot.require_node(branch_point_node_id)
        if isinstance(fork, BranchRootNode):
            raise InvalidRequestError("A branch cannot fork at another branch's root")
        if parent_branch_id is not None and parent_branch_id != fork.branch_id:
            raise InvalidRequestError(f"Node {fork.id!r} does not belong to branch {parent_branch_id!r}")
        parent = snapshot.require_branch(fork.branch_id)

        now = get_current_timestamp()
        branch_id = generate_uid()
        depth = parent.depth + 1
        branch = Branch(
            id=branch_id,
            project_id=self.project_id,
            name=name or f"Branch {depth}-{branch_id[:4]}",
            parent_branch_id=parent.id,
            branch_point_node_id=fork.id,
            color=BranchColorAllocator(snapshot, self.palette).color_for_new_branch(parent.id),
            depth=depth,
            direction_hint=direction,
            created_at=now,
            created_by=self.user_id,
        )
        branch_root = BranchRootNode(
            id=generate_uid(),
            project_id=self.project_id,
            branch_id=branch_id,
            parent_id=fork.id,
            position=0,
            created_at=now,
            created_by=self.user_id,
        )
        try:
            branch = await self.branch_db.create_branch(branch)
            await self.node_db.create_node(branch_root)
        except Exception as exc:
            logger.warning(f"Creating branch at node {fork.id} failed: {exc}")
            return OperationResult[Branch].failure(TransportError("create branch", exc))
        logger.info(f"Created branch {branch.id} ({branch.name!r}) forking from {parent.id} at {fork.id}")

        refreshed = await self.refresh()
        if not refreshed.ok:
            return OperationResult[Branch](value=branch, error=refreshed.error, fault=refreshed.fault)
        layout = await self.recalculate_layout()
        if not layout.ok:
            return OperationResult[Branch](value=branch, error=layout.error, fault=layout.fault)
        return OperationResult[Branch](value=branch)

    def parent_for_new_message(self, branch_id: str | None = None) -> TimelineNode:
        """
        Node a new message on 'branch_id' attaches to: the branch's latest own
        node, or its fork node when the branch holds nothing but its 'branch-root'.

        Raises:
            BranchNotFoundError: the branch is unknown (or there is no root branch).
            MissingParentError: neither a latest node nor a fork node exists.
        """
        key = self._branch_key(branch_id)
        latest = self.snapshot.latest_node(key)
        if latest is not None:
            return latest
        branch = self.snapshot.require_branch(key)
        if branch.branch_point_node_id is not None:
            fork = self.snapshot.get_node(branch.branch_point_node_id)
            if fork is not None:
                return fork
        raise MissingParentError(f"Branch {key!r} has no node a new message could attach to")

    async def _persist_message(self, branch_id: str, parent: TimelineNode, role: Roles, text: str) -> MessageNode:
        position = self.snapshot.next_position(branch_id)
        if parent.branch_id == branch_id:
            position = max(position, parent.position + 1)
        fields = dict(
            id=generate_uid(),
            project_id=self.project_id,
            branch_id=branch_id,
            parent_id=parent.id,
            position=position,
            created_at=get_current_timestamp(),
            text=text,
        )
        node: MessageNode
        match role:
            case Roles.USER:
                node = UserMessageNode(created_by=self.user_id, **fields)
            case Roles.ASSISTANT:
                node = AssistantMessageNode(created_by=ASSISTANT_AUTHOR, **fields)
            case _:
                raise InvalidRequestError(f"Messages with role {role!r} are not stored on the timeline")
        try:
            return await self.node_db.create_node(node)
        except Exception as exc:
            raise TransportError("create message node", exc) from exc

    async def create_message_node(
        self, branch_id: str, parent_id: str, role: Roles, text: str
    ) -> OperationResult[MessageNode]:
        """Append a durable message to 'branch_id' under 'parent_id'."""
        branch = self.snapshot.require_branch(branch_id)
        parent = self.snapshot.get_node(parent_id)
        if parent is None:
            raise MissingParentError(f"Parent node {parent_id!r} not found")
        if parent.branch_id != branch.id and parent.id != branch.branch_point_node_id:
            raise MissingParentError(f"Node {parent_id!r} is neither on branch {branch_id!r} nor its fork node")
        try:
            node = await self._persist_message(branch.id, parent, role, text)
        except TransportError as exc:
            return OperationResult[MessageNode].failure(exc)
        refreshed = await self.refresh()
        return OperationResult[MessageNode](value=node, error=refreshed.error, fault=refreshed.fault)

    async def edit_message(self, node_id: str, text: str) -> OperationResult[MessageNode]:
        node = self.snapshot.require_node(node_id)
        if not isinstance(node, (UserMessageNode, AssistantMessageNode)):
            raise InvalidRequestError(f"Node {node_id!r} of type {node.type!r} has no text")
        try:
            updated = await self.node_db.update_node_text(node_id, text)
        except Exception as exc:
            return OperationResult[MessageNode].failure(TransportError("edit message", exc))
        refreshed = await self.refresh()
        return OperationResult[MessageNode](value=updated, error=refreshed.error, fault=refreshed.fault)

    async def delete_node(self, node_id: str) -> OperationResult[bool]:
        """Delete a leaf message. Nodes with children or forks, and structural nodes, are kept."""
        node = self.snapshot.require_node(node_id)
        if isinstance(node, (RootNode, BranchRootNode)):
            raise NodeNotDeletableError(f"Node {node_id!r} of type {node.type!r} cannot be deleted on its own")
        if self.snapshot.child_nodes(node_id) or self.snapshot.branches_forked_at(node_id):
            raise NodeNotDeletableError(f"Node {node_id!r} has descendants")
        try:
            deleted = await self.node_db.delete_node(node_id)
        except Exception as exc:
            return OperationResult[bool].failure(TransportError("delete node", exc))
        refreshed = await self.refresh()
        return OperationResult[bool](value=deleted, error=refreshed.error, fault=refreshed.fault)

    async def delete_branch(self, branch_id: str) -> OperationResult[bool]:
        """Delete a childless, non-root branch together with its nodes."""
        branch = self.snapshot.require_branch(branch_id)
        if branch.is_root:
            raise BranchNotDeletableError("The main branch cannot be deleted")
        if self.snapshot.child_branches(branch_id):
            raise BranchNotDeletableError(f"Branch {branch_id!r} has child branches")
        self.reconciler.abort(branch_id)
        try:
            await asyncio.gather(*(self.node_db.delete_node(node.id) for node in self.snapshot.branch_nodes(branch_id)))
            deleted = await self.branch_db.delete_branch(branch_id)
        except Exception as exc:
            return OperationResult[bool].failure(TransportError("delete branch", exc))
        if self.current_branch_id == branch_id:
            self.current_branch_id = branch.parent_branch_id
        logger.info(f"Deleted branch {branch_id}")
        refreshed = await self.refresh()
        if not refreshed.ok:
            return OperationResult[bool](value=deleted, error=refreshed.error, fault=refreshed.fault)
        await self.recalculate_layout()
        return OperationResult[bool](value=deleted)

    async def delete_project(self) -> OperationResult[bool]:
        for branch_id in [b.id for b in self.snapshot.branches]:
            self.reconciler.abort(branch_id)
        try:
            await asyncio.gather(*(self.node_db.delete_node(node.id) for node in self.snapshot.nodes))
            await asyncio.gather(*(self.branch_db.delete_branch(branch.id) for branch in self.snapshot.branches))
            deleted = await self.project_db.delete_project(self.project_id)
        except Exception as exc:
            return OperationResult[bool].failure(TransportError("delete project", exc))
        self.store.replace(TreeSnapshot.empty(self.project_id))
        self.layout_cache = LayoutCache()
        self.current_branch_id = None
        logger.info(f"Deleted project {self.project_id}")
        return OperationResult[bool](value=deleted)

    # Streaming

    def _update(
        self, session: StreamingSession, refreshed: OperationResult[int] | None = None, **extra: Any
    ) -> StreamingUpdate:
        """Snapshot of 'session'; a failed 'refreshed' result is reported as the update's fault."""
        update = StreamingUpdate(
            session_id=session.id,
            branch_id=session.branch_id,
            phase=session.phase,
            state=session.state,
            user_message_id=session.user_message_id,
            content=session.buffer,
            error=session.error,
            **extra,
        )
        if refreshed is not None and not refreshed.ok:
            update.error = update.error or refreshed.error
            update.fault = refreshed.fault
        elif update.fault is None and session.state == TurnState.ERROR:
            update.fault = FaultKind.STREAMING
        return update

    async def send_message(self, text: str, branch_id: str | None = None) -> StreamingUpdate | None:
        last_update = None
        async for update in self.send_message_stream(text, branch_id):
            last_update = update
        return last_update

    async def send_message_stream(
        self, text: str, branch_id: str | None = None
    ) -> AsyncGenerator[StreamingUpdate, None]:
        """
        Run one user turn on 'branch_id' (the current selection if None).

        Persists the user message, streams the reply into a transient session
        and finally persists the reply. Whitespace-only text yields nothing.
        If the consumer closes the generator or its task is cancelled, the
        session is aborted; a user message already persisted is kept.

        Raises:
            BranchNotFoundError, MissingParentError: before anything is written.
            StreamingInProgressError: a reply is already streaming on the branch.
        """
        text = text.strip()
        if not text:
            return

        key = self._branch_key(branch_id if branch_id is not None else self.current_branch_id)
        parent = self.parent_for_new_message(key)
        history = to_llm_history(self.resolver().resolve(key))
        session = self.reconciler.begin(self.project_id, key, parent.id)
        try:
            yield self._update(session)

            try:
                user_message = await self._persist_message(key, parent, Roles.USER, text)
            except TransportError as exc:
                self.reconciler.fail(session, str(exc), display_text="")
                yield self._update(session, fault=FaultKind.TRANSPORT)
                self.reconciler.discard(key)
                return
            self.reconciler.user_message_persisted(session, user_message.id, user_message)
            refreshed = await self.refresh()
            if session.cancelled:
                return
            yield self._update(session, refreshed)

            history.append(LLMMessage(role=Roles.USER, content=text))
            try:
                async with aclosing(self.llm.generate_stream(history)) as stream:
                    async for chunk in stream:
                        if not self.reconciler.append(session, chunk.content):
                            break
                        yield self._update(session, refreshed)
            except Exception as exc:
                self.reconciler.fail(session, str(exc))
                yield self._update(session)
                return

            if session.cancelled:
                logger.debug(f"Session {session.id} was aborted, dropping its reply")
                return
            if not session.buffer.strip():
                self.reconciler.fail(session, "The model returned an empty reply")
                yield self._update(session)
                return

            try:
                assistant_message = await self._persist_message(key, user_message, Roles.ASSISTANT, session.buffer)
            except TransportError as exc:
                self.reconciler.fail(session, str(exc))
                yield self._update(session, fault=FaultKind.TRANSPORT)
                return
            self.reconciler.complete(session)
            refreshed = await self.refresh()
            yield self._update(session, refreshed, assistant_message_id=assistant_message.id)
        finally:
            if self.reconciler.session_for(key) is session and session.phase != StreamingPhase.IDLE:
                logger.info(f"Consumer of session {session.id} went away, aborting it")
                self.reconciler.abort(key)

    def abort_stream(self, branch_id: str | None = None) -> bool:
        """Stop consuming the reply streaming on 'branch_id' and forget it."""
        return self.reconciler.abort(self._branch_key(branch_id)) is not None
