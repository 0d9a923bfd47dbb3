"""Recognition sessions: speech source contract, session state machine, liveness, autosave."""
from .autosave import SegmentAutosaver
from .base import TRANSIENT_ERRORS, SpeechResult, SpeechResultBatch, SpeechSource, SpeechSourceError
from .liveness import LivenessMonitor
from .session import (
    FinalTranscript,
    MeetingEndedError,
    RecognitionSession,
    SessionInfo,
    SessionState,
    SessionTerminalError,
)

__all__ = [
    "FinalTranscript",
    "LivenessMonitor",
    "MeetingEndedError",
    "RecognitionSession",
    "SegmentAutosaver",
    "SessionInfo",
    "SessionState",
    "SessionTerminalError",
    "SpeechResult",
    "SpeechResultBatch",
    "SpeechSource",
    "SpeechSourceError",
    "TRANSIENT_ERRORS",
]
