"""
SessionSocketManager: one WebSocket = one meeting tab recording its speech.

The recognizer runs in the browser. The client forwards its events as JSON and the
server drives a RecognitionSession from them:

  client -> server
    {"type": "start"}                                   engine started listening
    {"type": "result", "resultIndex": n, "results": [{"transcript": str, "isFinal": bool}]}
    {"type": "soundstart"} / {"type": "soundend"}
    {"type": "error", "error": "aborted" | "not-allowed" | "network" | ...}
    {"type": "end"}                                     engine stopped on its own
    {"type": "stop", "reason": "stop"}                  user pressed stop
    {"type": "liveness", "alive": bool}                 meeting still running?
    {"type": "language", "is_english": bool}            client-side language decision
    {"type": "begin"}                                   new session on the same socket

  server -> client
    {"type": "session", "session_id": str, "meeting_id": str}
    {"type": "restart"}  /  {"type": "stop"}            commands for the browser engine
    {"type": "interim", "text": str}
    {"type": "final", "session_id": str, "saved": bool, "trigger": str}
    {"type": "error", "error": str, "message": str}
    {"type": "notification", "event": str, ...}         via WebSocketNotifier

On disconnect the segment is saved one last time and the session is stopped, which
reports the final transcript with trigger "disconnect".
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from fluency.recognition import (
    FinalTranscript,
    MeetingEndedError,
    RecognitionSession,
    SegmentAutosaver,
    SessionTerminalError,
    SpeechResultBatch,
    SpeechSource,
)
from fluency.services.coordinator import SessionCoordinator
from fluency.services.language import LanguageDetector
from fluency.services.notifier import WebSocketNotifier

logger = logging.getLogger(__name__)


class WebSocketSpeechSource(SpeechSource):
    """Speech source living in the browser; start/stop become socket commands."""

    def __init__(self, manager: "SessionSocketManager") -> None:
        self._manager = manager

    def start(self) -> None:
        self._manager.send_soon({"type": "restart"})

    def stop(self) -> None:
        self._manager.send_soon({"type": "stop"})


class SessionSocketManager:
    def __init__(
        self,
        websocket: WebSocket,
        coordinator: SessionCoordinator,
        meeting_code: Optional[str] = None,
        language_detector: Optional[LanguageDetector] = None,
        notifier: Optional[WebSocketNotifier] = None,
    ) -> None:
        self._ws = websocket
        self._coordinator = coordinator
        self._notifier = notifier
        self._closed = False
        self._meeting_alive = True
        self._pending: set[asyncio.Task[Any]] = set()
        self._session = RecognitionSession(
            WebSocketSpeechSource(self),
            meeting_id=meeting_code,
            liveness_probe=lambda: self._meeting_alive,
            on_final=self._on_final,
            on_error=self._on_error,
            on_interim=self._on_interim,
            language_detector=language_detector,
        )
        self._autosaver = SegmentAutosaver(self._session, coordinator.save_segment)

    @property
    def session(self) -> RecognitionSession:
        return self._session

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_text(json.dumps(payload))
        except Exception:
            self._closed = True

    def send_soon(self, payload: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _on_final(self, final: FinalTranscript) -> None:
        entry = await self._coordinator.accept_final(
            final.session_id,
            final.text,
            meeting_code=final.meeting_id,
            language_confirmed=final.language_confirmed,
            trigger=final.trigger,
        )
        await self._send(
            {"type": "final", "session_id": final.session_id, "saved": entry is not None, "trigger": final.trigger}
        )

    async def _on_error(self, error: SessionTerminalError) -> None:
        await self._send({"type": "error", "session_id": error.session_id, "error": error.kind, "message": str(error)})

    async def _on_interim(self, text: str) -> None:
        await self._send({"type": "interim", "text": text})

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    async def _begin(self) -> bool:
        try:
            info = self._session.start()
        except MeetingEndedError as e:
            await self._send({"type": "error", "error": "meeting-ended", "message": str(e)})
            return False
        await self._send({"type": "session", "session_id": info.id, "meeting_id": info.meeting_id})
        self._autosaver.start()
        return True

    async def handle_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        session = self._session
        if kind == "start":
            session.on_engine_start()
        elif kind == "result":
            session.handle_result(SpeechResultBatch.from_dict(message))
        elif kind == "soundstart":
            session.on_sound_start()
        elif kind == "soundend":
            session.on_sound_end()
        elif kind == "error":
            session.on_engine_error(str(message.get("error") or "unknown"))
        elif kind == "end":
            session.on_engine_end()
        elif kind == "stop":
            session.stop(reason=str(message.get("reason") or "stop"))
        elif kind == "liveness":
            self._meeting_alive = bool(message.get("alive", True))
        elif kind == "language":
            session.confirm_language(bool(message.get("is_english")))
        elif kind == "begin":
            await self._begin()
        else:
            logger.debug("Unknown message type %r", kind)

    async def run(self) -> None:
        """Start a session, then pump client messages until the socket closes."""
        if self._notifier is not None:
            self._notifier.register(self._ws)
        try:
            if not await self._begin():
                return
            while not self._closed:
                try:
                    raw = await self._ws.receive_text()
                except (WebSocketDisconnect, RuntimeError):
                    break
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed message: %.80s", raw)
                    continue
                if isinstance(message, dict):
                    await self.handle_message(message)
        finally:
            self._closed = True
            if self._notifier is not None:
                self._notifier.unregister(self._ws)
            await self._autosaver.stop()
            self._session.stop(reason="disconnect")
            await self._session.wait_idle()
