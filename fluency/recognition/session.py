"""
RecognitionSession: one continuous recording of a meeting.

Drives a SpeechSource through the lifecycle

    IDLE -> STARTING -> LISTENING <-> RETRYING -> STOPPING -> ENDED
                                                   ENDED -> STARTING (fresh start())

and accumulates final utterances into an annotated transcript
("[S:1.5s] hello [E:2.0s] ..."), offsets relative to the session start.

Engine events arrive asynchronously and in no guaranteed order relative to the
session's own restart timer. Every event maps to exactly one legal transition;
anything else is logged and ignored. The final transcript is reported at most once
per session id, whichever of stop(), end-of-engine or the retry cap gets there first.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from fluency.config import Settings, get_settings
from fluency.recognition.base import TRANSIENT_ERRORS, SpeechResultBatch, SpeechSource
from fluency.recognition.liveness import LivenessMonitor
from fluency.schemas.records import SegmentSnapshot
from fluency.services.language import LanguageDetector
from fluency.transcript.markers import count_words, format_utterance, last_words

logger = logging.getLogger(__name__)

DEFAULT_MEETING_ID = "unknown-meeting"

# Rough speaking rate used to back-date an utterance when no soundstart was seen
_CHARS_PER_SECOND = 5.0


class MeetingEndedError(Exception):
    """start() was called while the liveness probe reports the meeting is over."""


class SessionTerminalError(Exception):
    """Transient engine errors exceeded the retry budget; the session has ended."""

    def __init__(self, session_id: str, kind: str, retries: int) -> None:
        super().__init__(f"session {session_id} ended after {retries} retries (last error: {kind})")
        self.session_id = session_id
        self.kind = kind
        self.retries = retries


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    RETRYING = "retrying"
    STOPPING = "stopping"
    ENDED = "ended"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.STARTING}),
    SessionState.STARTING: frozenset(
        {SessionState.LISTENING, SessionState.RETRYING, SessionState.STOPPING, SessionState.ENDED}
    ),
    SessionState.LISTENING: frozenset({SessionState.RETRYING, SessionState.STOPPING, SessionState.ENDED}),
    SessionState.RETRYING: frozenset(
        {SessionState.LISTENING, SessionState.RETRYING, SessionState.STOPPING, SessionState.ENDED}
    ),
    SessionState.STOPPING: frozenset({SessionState.ENDED}),
    SessionState.ENDED: frozenset({SessionState.STARTING}),
}


def generate_session_id() -> str:
    return f"meet-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


@dataclass
class SessionInfo:
    id: str
    meeting_id: str
    start_time: float
    state: SessionState = SessionState.IDLE
    retry_count: int = 0
    language_confirmed: Optional[bool] = None


@dataclass
class FinalTranscript:
    """What a session hands over when it is done; the coordinator decides if it is kept."""

    session_id: str
    meeting_id: str
    text: str
    language_confirmed: Optional[bool]
    trigger: str


class RecognitionSession:
    """
    One RecognitionSession per meeting tab. Not thread-safe: every method must be
    called from the event loop that owns it (timers use loop.call_later).

    Callbacks may be plain functions or coroutine functions; coroutines are scheduled
    as tasks and their failures are logged, never raised into the session.
    """

    def __init__(
        self,
        source: SpeechSource,
        meeting_id: Optional[str] = None,
        liveness_probe: Optional[Callable[[], bool]] = None,
        on_final: Optional[Callable[[FinalTranscript], Any]] = None,
        on_error: Optional[Callable[[SessionTerminalError], Any]] = None,
        on_interim: Optional[Callable[[str], Any]] = None,
        on_state: Optional[Callable[[SessionState], Any]] = None,
        language_detector: Optional[LanguageDetector] = None,
        clock: Callable[[], float] = time.monotonic,
        settings: Optional[Settings] = None,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        settings = settings or get_settings()
        self._source = source
        self._meeting_id = meeting_id or DEFAULT_MEETING_ID
        self._probe = liveness_probe
        self._on_final = on_final
        self._on_error = on_error
        self._on_interim = on_interim
        self._on_state = on_state
        self._detector = language_detector
        self._clock = clock
        self._id_factory = id_factory

        self._retry_delay = settings.RETRY_DELAY_SECONDS
        self._max_retries = settings.MAX_RETRIES
        self._liveness_interval = settings.LIVENESS_POLL_SECONDS
        self._word_threshold = settings.LANGUAGE_WORD_THRESHOLD
        self._sample_words = settings.LANGUAGE_SAMPLE_WORDS

        self.info: Optional[SessionInfo] = None
        self._transcript = ""
        self._speech_start: Optional[float] = None
        self._wants_listening = False
        self._final_reported = False
        self._language_task: Optional[asyncio.Task[Optional[bool]]] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._monitor: Optional[LivenessMonitor] = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def id(self) -> Optional[str]:
        return self.info.id if self.info else None

    @property
    def state(self) -> SessionState:
        return self.info.state if self.info else SessionState.IDLE

    @property
    def retry_count(self) -> int:
        return self.info.retry_count if self.info else 0

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def meeting_id(self) -> str:
        return self._meeting_id

    def snapshot(self) -> Optional[SegmentSnapshot]:
        """Current accumulator as an incomplete-segment record (None before the first start)."""
        if self.info is None:
            return None
        return SegmentSnapshot(
            session_id=self.info.id,
            meeting_code=self._meeting_id,
            text=self._transcript,
            is_complete=self.info.state is SessionState.ENDED,
            is_english=self.info.language_confirmed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> SessionInfo:
        """Begin a new session. Raises MeetingEndedError if the meeting is not running."""
        if self._probe is not None and not self._probe():
            raise MeetingEndedError(f"meeting {self._meeting_id} is not running")
        if self.info is not None and self.info.state not in (SessionState.IDLE, SessionState.ENDED):
            logger.warning("start() ignored: session %s is %s", self.info.id, self.info.state.value)
            return self.info

        self._cancel_restart()
        self.info = SessionInfo(id=self._id_factory(), meeting_id=self._meeting_id, start_time=self._clock())
        self._transcript = ""
        self._speech_start = None
        self._final_reported = False
        self._language_task = None
        self._wants_listening = True
        self._transition(SessionState.STARTING)
        logger.info("Session %s starting (meeting %s)", self.info.id, self._meeting_id)

        if self._probe is not None and self._liveness_interval > 0:
            self._monitor = LivenessMonitor(self._probe, self._liveness_interval, self._on_meeting_dead)
            self._monitor.start()
        self._start_source()
        return self.info

    def stop(self, reason: str = "stop") -> None:
        """Report the final transcript (once), release the source and end the session."""
        if self.info is None or self.info.state in (SessionState.IDLE, SessionState.ENDED):
            logger.debug("stop(%s) ignored: no active session", reason)
            return
        self._wants_listening = False
        self._cancel_restart()
        self._stop_monitor()
        self._transition(SessionState.STOPPING)
        self._report_final(reason)
        self._release_source()
        self._transition(SessionState.ENDED)
        logger.info("Session %s stopped (%s)", self.info.id, reason)

    def confirm_language(self, is_english: bool) -> None:
        """Language decided outside the session (client-side detection, user choice)."""
        if self.info is None:
            return
        self.info.language_confirmed = bool(is_english)
        if not is_english:
            self._reject_language()

    # ------------------------------------------------------------------
    # Source events
    # ------------------------------------------------------------------

    def on_engine_start(self) -> None:
        if self.info is None:
            return
        if self.info.state in (SessionState.STARTING, SessionState.RETRYING):
            self.info.retry_count = 0
            self._transition(SessionState.LISTENING)
            logger.info("Session %s listening", self.info.id)
        else:
            logger.debug("Engine start in state %s", self.info.state.value)

    def handle_result(self, batch: SpeechResultBatch) -> None:
        if self.info is None or self.info.state in (SessionState.STOPPING, SessionState.ENDED):
            logger.debug("Result ignored: session not active")
            return
        finals: list[str] = []
        interim: list[str] = []
        for result in batch.new_results():
            (finals if result.is_final else interim).append(result.transcript)
        final_text = "".join(finals).strip()
        if final_text:
            self.on_utterance_final(final_text)
        interim_text = "".join(interim).strip()
        if interim_text:
            self._dispatch(self._on_interim, interim_text)

    def on_sound_start(self) -> None:
        if self._speech_start is None:
            self._speech_start = self._clock()

    def on_sound_end(self) -> None:
        # Utterance boundary comes with the final result; nothing to record here.
        pass

    def on_utterance_final(self, text: str) -> None:
        """Append one recognized utterance with its start/end offsets."""
        if self.info is None or not text.strip():
            return
        end = self._clock() - self.info.start_time
        if self._speech_start is not None:
            start = self._speech_start - self.info.start_time
        else:
            start = end - len(text) / _CHARS_PER_SECOND
        start = max(0.0, min(start, end))
        self._speech_start = None

        utterance = format_utterance(text, start, end)
        self._transcript = f"{self._transcript} {utterance}".strip()
        logger.debug("Session %s utterance %.1f-%.1fs: %s", self.info.id, start, end, text.strip())

        if (
            self._detector is not None
            and self._language_task is None
            and self.info.language_confirmed is None
            and count_words(self._transcript) >= self._word_threshold
        ):
            self._language_task = self._spawn(
                self._check_language(self.info, last_words(self._transcript, self._sample_words))
            )

    def on_engine_end(self) -> None:
        if self.info is None or self.info.state in (SessionState.IDLE, SessionState.STOPPING, SessionState.ENDED):
            return
        if self._restart_handle is not None:
            logger.debug("Engine end while restart pending; timer will restart")
            return
        logger.debug("Engine ended on its own; restarting session %s", self.info.id)
        self._start_source()

    def on_engine_error(self, kind: str) -> None:
        if self.info is None or not self._wants_listening:
            logger.debug("Engine error %r ignored: not listening", kind)
            return
        if kind not in TRANSIENT_ERRORS:
            logger.warning("Engine error %r; restarting in %.1fs", kind, self._retry_delay)
            self._schedule_restart()
            return
        if self.info.retry_count < self._max_retries:
            self.info.retry_count += 1
            self._transition(SessionState.RETRYING)
            logger.warning(
                "Engine error %r; retry %d/%d in %.1fs",
                kind,
                self.info.retry_count,
                self._max_retries,
                self._retry_delay,
            )
            self._schedule_restart()
            return

        logger.error("Engine error %r after %d retries; ending session %s", kind, self._max_retries, self.info.id)
        self._wants_listening = False
        self._cancel_restart()
        self._stop_monitor()
        self._report_final("retry-exhausted")
        self._release_source()
        self._transition(SessionState.ENDED)
        self._dispatch(self._on_error, SessionTerminalError(self.info.id, kind, self.info.retry_count))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, new: SessionState) -> bool:
        assert self.info is not None
        old = self.info.state
        if new not in _TRANSITIONS[old]:
            logger.warning("Illegal transition %s -> %s ignored", old.value, new.value)
            return False
        self.info.state = new
        if old is not new:
            self._dispatch(self._on_state, new)
        return True

    def _start_source(self) -> None:
        try:
            self._source.start()
        except Exception as e:
            logger.warning("Speech source start failed: %s", e)

    def _release_source(self) -> None:
        try:
            self._source.stop()
        except Exception as e:
            logger.warning("Speech source stop failed: %s", e)

    def _schedule_restart(self) -> None:
        self._cancel_restart()
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self._retry_delay, self._restart_after_delay)

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _restart_after_delay(self) -> None:
        self._restart_handle = None
        if not self._wants_listening or self.state in (SessionState.STOPPING, SessionState.ENDED):
            return
        logger.info("Restarting speech source for session %s", self.id)
        self._start_source()

    def _stop_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None

    def _on_meeting_dead(self) -> None:
        if self.state is SessionState.LISTENING:
            logger.info("Meeting %s ended; stopping session %s", self._meeting_id, self.id)
            self.stop(reason="meeting-ended")

    def _reject_language(self) -> None:
        logger.warning("Session %s is not English; it will not be saved", self.id)
        if self.state not in (SessionState.IDLE, SessionState.STOPPING, SessionState.ENDED):
            self.stop(reason="non-english")

    async def _check_language(self, info: SessionInfo, sample: str) -> Optional[bool]:
        assert self._detector is not None
        try:
            result = bool(await self._detector.is_english(sample))
        except Exception:
            logger.exception("Language detection failed for session %s", info.id)
            return None
        if info.language_confirmed is not None:
            logger.info(
                "Session %s language already decided (%s); detector said english=%s",
                info.id,
                info.language_confirmed,
                result,
            )
            return info.language_confirmed
        info.language_confirmed = result
        logger.info("Session %s language check: english=%s", info.id, result)
        if not result and self.info is info:
            self._reject_language()
        return result

    def _report_final(self, trigger: str) -> None:
        """Hand the transcript to on_final, at most once per session id."""
        assert self.info is not None
        if self._final_reported:
            logger.debug("Final for session %s already reported; %s ignored", self.info.id, trigger)
            return
        self._final_reported = True
        text = self._transcript.strip()
        if not text:
            logger.info("Session %s ended with no speech (%s)", self.info.id, trigger)
            return

        info = self.info
        pending = self._language_task
        if pending is None and info.language_confirmed is None and self._detector is not None:
            pending = self._spawn(self._check_language(info, last_words(text, self._sample_words)))
            self._language_task = pending
        if pending is not None and not pending.done():
            self._spawn(self._emit_after(pending, info, text, trigger))
        else:
            self._emit(info, text, trigger)

    async def _emit_after(self, pending: asyncio.Task[Optional[bool]], info: SessionInfo, text: str, trigger: str) -> None:
        try:
            await pending
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Language check for session %s failed", info.id)
        self._emit(info, text, trigger)

    def _emit(self, info: SessionInfo, text: str, trigger: str) -> None:
        final = FinalTranscript(
            session_id=info.id,
            meeting_id=info.meeting_id,
            text=text,
            language_confirmed=info.language_confirmed,
            trigger=trigger,
        )
        logger.info(
            "Session %s final transcript (%s, %d words, english=%s)",
            info.id,
            trigger,
            count_words(text),
            info.language_confirmed,
        )
        self._dispatch(self._on_final, final)

    def _dispatch(self, callback: Optional[Callable[[Any], Any]], arg: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(arg)
        except Exception:
            logger.exception("Session callback %r failed", callback)
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, awaitable: Any) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session task failed: %s", exc)

    async def wait_idle(self) -> None:
        """Wait for dispatched callbacks and language checks to finish (shutdown, tests)."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
