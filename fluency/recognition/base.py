"""
SpeechSource: abstract interface for a streaming speech-to-text engine.

The source is an opaque asynchronous resource. Whoever owns it forwards its events
(start, result, soundstart, soundend, error, end) to the RecognitionSession; the
session only ever calls start() and stop() on it. Events have no ordering guarantee
against the session's own restart timers: an "end" can arrive while a retry is
pending, and "end" usually follows "error".
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# Errors worth retrying with a counted budget; the browser reports "not-allowed"
# for what the rest of the pipeline calls "permission-denied".
TRANSIENT_ERRORS = frozenset({"aborted", "permission-denied", "not-allowed"})


@dataclass
class SpeechResult:
    """One recognition hypothesis; final results never change again."""

    transcript: str
    is_final: bool = False


@dataclass
class SpeechResultBatch:
    """One result callback: results before result_index were delivered earlier."""

    result_index: int = 0
    results: list[SpeechResult] = field(default_factory=list)

    def new_results(self) -> list[SpeechResult]:
        return self.results[max(0, self.result_index) :]

    @classmethod
    def from_dict(cls, data: dict) -> "SpeechResultBatch":
        """Build from {"resultIndex": n, "results": [{"transcript": str, "isFinal": bool}]}."""
        results = [
            SpeechResult(
                transcript=str(r.get("transcript", "")),
                is_final=bool(r.get("isFinal", r.get("is_final", False))),
            )
            for r in data.get("results") or []
            if isinstance(r, dict)
        ]
        index = data.get("resultIndex", data.get("result_index", 0))
        return cls(result_index=int(index or 0), results=results)


class SpeechSourceError(Exception):
    """Source refused to start or stop (e.g. already running)."""


class SpeechSource(ABC):
    """Streaming recognizer. start()/stop() must return quickly; events come later."""

    @abstractmethod
    def start(self) -> None:
        """Begin (or resume) recognition. May raise SpeechSourceError."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop recognition and release the underlying resource."""
        ...
