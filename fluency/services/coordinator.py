"""
SessionCoordinator: the only place that decides whether a session's result is saved.

Completion can be reported several times for the same session and from independent
sources: an explicit stop, the meeting-ended signal, the liveness detector, a tab-close
salvage of the autosaved segment. They arrive with at-least-once delivery and in no
particular order. The coordinator collapses them into at most one TranscriptEntry and
one StatsRecord per session id.

Guards, in order:
1. Language gate: only language_confirmed is True passes (fail-closed).
2. last_processed_session_id: checked and set before the first await, so of two
   triggers racing on the event loop only the first reaches the store.
3. Store-level duplicate check (same session id, or identical text saved within the
   duplicate window) for anything that slips past the in-memory guard, e.g. after a
   restart of the process.

Lifecycle: one instance per process (created in the app lifespan). State held here is
the last processed id, per-session notification times and the in-flight stats tasks.
Stats tasks are never cancelled by later sessions; each writes under its own id.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fluency.config import get_settings
from fluency.schemas.records import SegmentSnapshot, StatsRecord, TranscriptEntry
from fluency.services.notifier import LogNotifier, Notifier
from fluency.services.worker import IsolatedWorker, WorkerTimeoutError
from fluency.stats.engine import StatsEngine
from fluency.storage.fallback import FallbackWriter
from fluency.storage.gateway import (
    LATEST_COMPLETE_KEY,
    LATEST_SESSION_KEY,
    STATS_KEY,
    TRANSCRIPTS_KEY,
    PersistenceGateway,
    segment_key,
)
from fluency.transcript.reconciler import reconcile_timestamps

logger = logging.getLogger(__name__)

DEFAULT_MEETING_ID = "unknown-meeting"


def _parse_iso(value: str) -> Optional[float]:
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class SessionCoordinator:
    def __init__(
        self,
        gateway: PersistenceGateway,
        engine: Optional[StatsEngine] = None,
        fallback: Optional[FallbackWriter] = None,
        worker: Optional[IsolatedWorker] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._gateway = gateway
        self._engine = engine or StatsEngine()
        self._fallback = fallback or FallbackWriter()
        self._worker = worker or IsolatedWorker()
        self._notifier = notifier or LogNotifier()
        self._clock = clock
        self._duplicate_window = settings.DUPLICATE_WINDOW_SECONDS
        self._notify_cooldown = settings.NOTIFY_COOLDOWN_SECONDS
        self._worker_timeout = settings.WORKER_TIMEOUT_SECONDS

        self.last_processed_session_id: Optional[str] = None
        self._notified_at: dict[str, float] = {}
        self._stats_tasks: dict[str, asyncio.Task[Optional[StatsRecord]]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        # Serializes read-modify-write of shared gateway keys
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Completion signals
    # ------------------------------------------------------------------

    async def accept_final(
        self,
        session_id: str,
        text: str,
        meeting_code: Optional[str] = None,
        language_confirmed: Optional[bool] = None,
        trigger: str = "stop",
    ) -> Optional[TranscriptEntry]:
        """
        Persist a session's final transcript at most once.

        Returns the entry when the primary store accepted it, else None (rejected,
        duplicate, or only written to the fallback file).
        """
        return await self._accept(session_id, text, meeting_code, language_confirmed, trigger, recovered=False)

    async def _accept(
        self,
        session_id: str,
        text: str,
        meeting_code: Optional[str],
        language_confirmed: Optional[bool],
        trigger: str,
        recovered: bool,
    ) -> Optional[TranscriptEntry]:
        # Everything up to the first await runs without yielding to other triggers.
        if language_confirmed is not True:
            logger.info(
                "Not saving session %s (%s): language not confirmed as English (%r)",
                session_id,
                trigger,
                language_confirmed,
            )
            return None
        if not session_id or not (text or "").strip():
            logger.info("Not saving session %r (%s): empty transcript", session_id, trigger)
            return None
        if session_id == self.last_processed_session_id:
            logger.info("Session %s already processed; ignoring %s trigger", session_id, trigger)
            self._notify(session_id, "transcriptSaved", {"session_id": session_id, "trigger": trigger})
            return None
        self.last_processed_session_id = session_id

        reconciled = reconcile_timestamps(text.strip())
        entry = TranscriptEntry(
            id=session_id,
            session_id=session_id,
            timestamp=datetime.fromtimestamp(self._clock(), timezone.utc).isoformat(),
            meeting_id=meeting_code or DEFAULT_MEETING_ID,
            text=reconciled.text,
            is_english=True,
            timestamps_fixed=reconciled.was_fixed,
            trigger=trigger,
            recovered=recovered,
        )

        try:
            saved = await self._append_entry(entry)
        except Exception as e:
            logger.error("Persisting transcript %s failed: %s", session_id, e)
            await self._fallback.write(entry)
            return None
        if not saved:
            return None

        logger.info(
            "Saved transcript %s (meeting %s, trigger %s, timestamps fixed: %s)",
            session_id,
            entry.meeting_id,
            trigger,
            entry.timestamps_fixed,
        )
        await self._mark_segment_complete(session_id)
        self._schedule_stats(entry)
        self._notify(session_id, "transcriptSaved", {"session_id": session_id, "trigger": trigger})
        return entry

    async def _append_entry(self, entry: TranscriptEntry) -> bool:
        """Append to the transcripts list unless the store already holds this result."""
        async with self._write_lock:
            stored = await self._gateway.get([TRANSCRIPTS_KEY])
            transcripts: list[dict[str, Any]] = list(stored.get(TRANSCRIPTS_KEY) or [])
            if self._is_duplicate(entry, transcripts):
                return False
            transcripts.append(entry.model_dump())
            await self._gateway.set({TRANSCRIPTS_KEY: transcripts})
        return True

    def _is_duplicate(self, entry: TranscriptEntry, transcripts: list[dict[str, Any]]) -> bool:
        now = self._clock()
        for existing in transcripts:
            if existing.get("session_id") == entry.session_id:
                logger.warning("Store already holds transcript for session %s; skipping", entry.session_id)
                return True
            if existing.get("text") == entry.text:
                saved_at = _parse_iso(existing.get("timestamp", ""))
                if saved_at is not None and now - saved_at < self._duplicate_window:
                    logger.warning(
                        "Identical transcript saved %.0fs ago as %s; skipping %s",
                        now - saved_at,
                        existing.get("session_id"),
                        entry.session_id,
                    )
                    return True
        return False

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _schedule_stats(self, entry: TranscriptEntry) -> None:
        task = asyncio.create_task(self._compute_and_store(entry))
        self._stats_tasks[entry.session_id] = task
        task.add_done_callback(lambda _t, sid=entry.session_id: self._stats_tasks.pop(sid, None))

    async def _compute_and_store(self, entry: TranscriptEntry) -> Optional[StatsRecord]:
        try:
            record = await self._worker.submit(self._engine.task_for(entry), timeout=self._worker_timeout)
        except WorkerTimeoutError:
            logger.error("Stats computation for %s timed out", entry.session_id)
            return None
        except Exception:
            logger.exception("Stats computation for %s failed", entry.session_id)
            return None
        try:
            async with self._write_lock:
                stored = await self._gateway.get([STATS_KEY])
                all_stats: dict[str, Any] = dict(stored.get(STATS_KEY) or {})
                all_stats[record.session_id] = record.model_dump()
                await self._gateway.set({STATS_KEY: all_stats})
        except Exception as e:
            logger.error("Saving stats for %s failed: %s", entry.session_id, e)
            return record
        logger.info(
            "Stats saved for %s: %d words, %.1f wpm, fluency %d",
            record.session_id,
            record.total_word_count,
            record.words_per_minute,
            record.fluency_score,
        )
        self._notify_event("statsReady", {"session_id": record.session_id, "fluency_score": record.fluency_score})
        return record

    async def get_stats(self, session_id: str) -> Optional[StatsRecord]:
        stored = await self._gateway.get([STATS_KEY])
        raw = (stored.get(STATS_KEY) or {}).get(session_id)
        return StatsRecord.model_validate(raw) if raw else None

    async def list_transcripts(self) -> list[TranscriptEntry]:
        """Saved transcripts, newest first."""
        stored = await self._gateway.get([TRANSCRIPTS_KEY])
        entries = [TranscriptEntry.model_validate(t) for t in stored.get(TRANSCRIPTS_KEY) or []]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    # ------------------------------------------------------------------
    # Incomplete segments: autosave, salvage, recovery
    # ------------------------------------------------------------------

    async def save_segment(self, snapshot: SegmentSnapshot) -> bool:
        """Store the live transcript of a session. Non-English sessions are erased instead."""
        key = segment_key(snapshot.session_id)
        try:
            if snapshot.is_english is False:
                await self._gateway.remove([key])
                logger.info("Deleted segment for non-English session %s", snapshot.session_id)
                return False
            if snapshot.session_id == self.last_processed_session_id:
                return False
            await self._gateway.set({key: snapshot.model_dump(), LATEST_SESSION_KEY: snapshot.session_id})
        except Exception as e:
            logger.warning("Segment autosave for %s failed: %s", snapshot.session_id, e)
            return False
        return True

    async def get_segment(self, session_id: str) -> Optional[SegmentSnapshot]:
        key = segment_key(session_id)
        stored = await self._gateway.get([key])
        raw = stored.get(key)
        return SegmentSnapshot.model_validate(raw) if raw else None

    async def salvage(self, session_id: str, trigger: str = "salvage") -> Optional[TranscriptEntry]:
        """Save a session from its autosaved segment (tab closed before a final arrived)."""
        snapshot = await self.get_segment(session_id)
        if snapshot is None:
            logger.info("Nothing to salvage for session %s", session_id)
            return None
        if snapshot.is_complete:
            logger.info("Segment for %s already complete; salvage skipped", session_id)
            return None
        return await self._accept(
            snapshot.session_id,
            snapshot.text,
            snapshot.meeting_code,
            snapshot.is_english,
            trigger,
            recovered=True,
        )

    async def recover(self, session_id: str) -> Optional[TranscriptEntry]:
        """Persist an unfinished session found on a later start-up."""
        return await self.salvage(session_id, trigger="recovery")

    async def unfinished_sessions(self) -> list[SegmentSnapshot]:
        """The latest session, if it never completed and still has a segment."""
        stored = await self._gateway.get([LATEST_SESSION_KEY, LATEST_COMPLETE_KEY])
        latest = stored.get(LATEST_SESSION_KEY)
        if not latest or latest == stored.get(LATEST_COMPLETE_KEY):
            return []
        snapshot = await self.get_segment(latest)
        if snapshot is None or snapshot.is_complete:
            return []
        return [snapshot]

    async def _mark_segment_complete(self, session_id: str) -> None:
        key = segment_key(session_id)
        try:
            stored = await self._gateway.get([key])
            items: dict[str, Any] = {LATEST_COMPLETE_KEY: session_id}
            if stored.get(key):
                items[key] = {**stored[key], "is_complete": True}
            await self._gateway.set(items)
        except Exception as e:
            logger.warning("Could not mark segment %s complete: %s", session_id, e)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, session_id: str, event: str, payload: dict[str, Any]) -> None:
        """One notification per session per cool-down; further triggers are suppressed."""
        now = self._clock()
        for sid, at in list(self._notified_at.items()):
            if now - at >= self._notify_cooldown:
                del self._notified_at[sid]
        last = self._notified_at.get(session_id)
        if last is not None and now - last < self._notify_cooldown:
            logger.debug("Notification for %s suppressed (%.0fs since last)", session_id, now - last)
            return
        self._notified_at[session_id] = now
        self._notify_event(event, payload)

    def _notify_event(self, event: str, payload: dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver(event, payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._notifier.notify(event, payload)
        except Exception as e:
            logger.warning("Notification %s failed: %s", event, e)

    async def drain(self) -> None:
        """Wait for in-flight stats and notifications (shutdown, tests)."""
        while True:
            pending = [t for t in (*self._stats_tasks.values(), *self._background) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
