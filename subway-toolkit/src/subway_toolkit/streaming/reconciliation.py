"""
Streaming reconciliation.

While an assistant reply streams in, its text lives only in a transient
'StreamingSession' keyed by branch. Viewers see it as a synthetic
'AssistantMessageNode' (with 'is_streaming=True') appended to the durable path;
the durable store is never written with partial text.

Per branch, the phase moves 'idle -> user_message_persisting ->
streaming_assistant_reply -> idle'. Per turn, the state moves 'pending ->
streaming -> reconciled | error' (or 'aborted' when the caller cancels).
Because sessions are keyed by the branch they were started on, a session can
only ever write into its own branch's buffer, whatever branch the viewer has
switched to in the meantime.
"""

from enum import StrEnum

from loguru import logger
from pydantic import BaseModel

from subway_toolkit.conversation_database.data_models.node import AssistantMessageNode, TimelineNode, UserMessageNode
from subway_toolkit.errors import StreamingInProgressError
from subway_toolkit.utils.database import generate_uid
from subway_toolkit.utils.time import get_current_timestamp

STREAMING_ERROR_TEXT = "I'm sorry, I encountered an issue while processing your message. Please try again."


class StreamingPhase(StrEnum):
    IDLE = "idle"
    USER_MESSAGE_PERSISTING = "user_message_persisting"
    STREAMING_ASSISTANT_REPLY = "streaming_assistant_reply"


class TurnState(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    RECONCILED = "reconciled"
    ERROR = "error"
    ABORTED = "aborted"


class StreamingSession(BaseModel):
    """
    One user turn plus its in-flight assistant reply.

    Attributes:
        branch_id: Branch the turn was sent on; the only buffer it may write to.
        parent_node_id: Node the user message attaches to.
        user_message_id: Set once the user message is durable.
        user_message: The durable user message, shown by the overlay while the
            resolved path still predates it.
        buffer: Accumulated reply text, or the error text after a failure.
        started_at: Timestamp reused for the synthetic node so repeated
            overlays of the same session are identical.
    """

    id: str
    project_id: str
    branch_id: str
    parent_node_id: str
    phase: StreamingPhase = StreamingPhase.USER_MESSAGE_PERSISTING
    state: TurnState = TurnState.PENDING
    user_message_id: str | None = None
    user_message: UserMessageNode | None = None
    buffer: str = ""
    error: str | None = None
    started_at: int
    cancelled: bool = False

    @property
    def synthetic_node_id(self) -> str:
        return f"streaming-{self.id}"


class StreamingReconciler:
    """Tracks at most one session per branch and overlays it on resolved paths."""

    def __init__(self) -> None:
        self._sessions: dict[str, StreamingSession] = {}

    def session_for(self, branch_id: str) -> StreamingSession | None:
        return self._sessions.get(branch_id)

    def phase(self, branch_id: str) -> StreamingPhase:
        session = self._sessions.get(branch_id)
        return session.phase if session else StreamingPhase.IDLE

    def _is_current(self, session: StreamingSession) -> bool:
        return self._sessions.get(session.branch_id) is session and not session.cancelled

    def begin(self, project_id: str, branch_id: str, parent_node_id: str) -> StreamingSession:
        """Open a session; a failed session left on the branch is replaced, an active one is not."""
        existing = self._sessions.get(branch_id)
        if existing is not None and existing.phase != StreamingPhase.IDLE:
            raise StreamingInProgressError(branch_id)
        session = StreamingSession(
            id=generate_uid(),
            project_id=project_id,
            branch_id=branch_id,
            parent_node_id=parent_node_id,
            started_at=get_current_timestamp(),
        )
        self._sessions[branch_id] = session
        return session

    def user_message_persisted(
        self, session: StreamingSession, user_message_id: str, user_message: UserMessageNode | None = None
    ) -> None:
        session.user_message_id = user_message_id
        session.user_message = user_message
        if session.cancelled:
            return
        session.phase = StreamingPhase.STREAMING_ASSISTANT_REPLY
        session.state = TurnState.STREAMING

    def append(self, session: StreamingSession, delta: str) -> bool:
        """Add a streamed delta. Returns False, ignoring the delta, if the session was aborted or replaced."""
        if not self._is_current(session):
            return False
        session.buffer += delta
        return True

    def complete(self, session: StreamingSession) -> None:
        """The durable reply exists; drop the transient copy."""
        session.phase = StreamingPhase.IDLE
        session.state = TurnState.RECONCILED
        if self._sessions.get(session.branch_id) is session:
            del self._sessions[session.branch_id]

    def fail(self, session: StreamingSession, error: str, display_text: str = STREAMING_ERROR_TEXT) -> None:
        """Keep the session visible with 'display_text' in place of the partial reply."""
        session.phase = StreamingPhase.IDLE
        session.state = TurnState.ERROR
        session.error = error
        session.buffer = display_text
        logger.warning(f"Streaming on branch {session.branch_id} failed: {error}")

    def abort(self, branch_id: str) -> StreamingSession | None:
        session = self._sessions.pop(branch_id, None)
        if session is not None:
            session.cancelled = True
            session.phase = StreamingPhase.IDLE
            session.state = TurnState.ABORTED
            logger.info(f"Aborted streaming session {session.id} on branch {branch_id}")
        return session

    def discard(self, branch_id: str) -> None:
        self._sessions.pop(branch_id, None)

    def overlay(self, path: list[TimelineNode], branch_id: str) -> list[TimelineNode]:
        """
        Append the synthetic reply node of 'branch_id' if its user message is on 'path'.

        A path that ends at the user message's parent gets the stored user
        message as well, so a turn stays visible over a stale snapshot.
        """
        session = self._sessions.get(branch_id)
        if session is None or session.state not in (TurnState.STREAMING, TurnState.ERROR):
            return path
        user_message = next((node for node in path if node.id == session.user_message_id), None)
        stale = user_message is None and session.user_message is not None
        if stale and path and path[-1].id == session.parent_node_id:
            user_message = session.user_message
            path = [*path, user_message]
        if user_message is None:
            return path
        synthetic = AssistantMessageNode(
            id=session.synthetic_node_id,
            project_id=session.project_id,
            branch_id=user_message.branch_id,
            parent_id=user_message.id,
            position=user_message.position + 1,
            created_at=session.started_at,
            created_by="assistant",
            text=session.buffer,
            is_streaming=session.state == TurnState.STREAMING,
        )
        return [*path, synthetic]
