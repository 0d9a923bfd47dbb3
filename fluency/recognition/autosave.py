"""
SegmentAutosaver: periodic snapshot of a live session so a closed tab can be salvaged.

Every AUTOSAVE_INTERVAL_SECONDS the session accumulator is written through the
coordinator, but only when it has grown since the last save. stop() performs one
last forced save.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from fluency.config import get_settings
from fluency.recognition.session import RecognitionSession
from fluency.schemas.records import SegmentSnapshot

logger = logging.getLogger(__name__)


class SegmentAutosaver:
    def __init__(
        self,
        session: RecognitionSession,
        save: Callable[[SegmentSnapshot], Awaitable[bool]],
        interval: Optional[float] = None,
    ) -> None:
        self._session = session
        self._save = save
        self._interval = interval if interval is not None else get_settings().AUTOSAVE_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task[None]] = None
        self._saved_session: Optional[str] = None
        self._saved_length = 0

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.save_if_grown(force=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.save_if_grown()

    async def save_if_grown(self, force: bool = False) -> bool:
        snapshot = self._session.snapshot()
        if snapshot is None or not snapshot.text:
            return False
        if snapshot.session_id != self._saved_session:
            self._saved_session = snapshot.session_id
            self._saved_length = 0
        if not force and len(snapshot.text) <= self._saved_length:
            return False
        try:
            saved = await self._save(snapshot)
        except Exception as e:
            logger.warning("Autosave for %s failed: %s", snapshot.session_id, e)
            return False
        if saved:
            self._saved_length = len(snapshot.text)
            logger.debug("Autosaved %d chars for session %s", self._saved_length, snapshot.session_id)
        return saved
