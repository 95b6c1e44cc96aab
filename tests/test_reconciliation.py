import pytest

from conftest import PROJECT_ID, user
from subway_toolkit.errors import StreamingInProgressError
from subway_toolkit.streaming.reconciliation import StreamingPhase, StreamingReconciler, TurnState


def test_one_active_session_per_branch():
    reconciler = StreamingReconciler()
    reconciler.begin(PROJECT_ID, "R", "A1")

    with pytest.raises(StreamingInProgressError):
        reconciler.begin(PROJECT_ID, "R", "A1")
    assert reconciler.begin(PROJECT_ID, "B", "A1").branch_id == "B"


def test_late_chunks_of_aborted_session_are_ignored():
    reconciler = StreamingReconciler()
    session = reconciler.begin(PROJECT_ID, "R", "A1")
    reconciler.user_message_persisted(session, "U1")
    reconciler.append(session, "partial")

    reconciler.abort("R")

    assert reconciler.append(session, " late") is False
    assert session.buffer == "partial"
    assert session.state == TurnState.ABORTED
    assert reconciler.phase("R") == StreamingPhase.IDLE


def test_overlay_requires_the_user_message_on_the_path():
    reconciler = StreamingReconciler()
    session = reconciler.begin(PROJECT_ID, "R", "A1")
    message = user("U1", "R", "A1", 3)

    assert reconciler.overlay([message], "R") == [message]

    reconciler.user_message_persisted(session, "U1")
    reconciler.append(session, "Hel")
    overlaid = reconciler.overlay([message], "R")
    elsewhere = reconciler.overlay([user("X", "B", None, 1)], "R")

    assert [n.id for n in overlaid] == ["U1", session.synthetic_node_id]
    assert overlaid[-1].position == 4
    assert overlaid[-1].text == "Hel"
    assert overlaid[-1].is_streaming
    assert len(elsewhere) == 1
    assert reconciler.overlay([message], "B") == [message]


def test_completed_session_leaves_no_overlay():
    reconciler = StreamingReconciler()
    session = reconciler.begin(PROJECT_ID, "R", "A1")
    reconciler.user_message_persisted(session, "U1")
    reconciler.append(session, "done")

    reconciler.complete(session)

    assert reconciler.session_for("R") is None
    assert reconciler.overlay([user("U1", "R", "A1", 3)], "R")[-1].id == "U1"
