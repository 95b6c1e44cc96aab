from subway_toolkit.streaming.reconciliation import (
    STREAMING_ERROR_TEXT,
    StreamingPhase,
    StreamingReconciler,
    StreamingSession,
    TurnState,
)

__all__ = [
    "STREAMING_ERROR_TEXT",
    "StreamingPhase",
    "StreamingReconciler",
    "StreamingSession",
    "TurnState",
]
