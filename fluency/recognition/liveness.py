"""
LivenessMonitor: fixed-interval poll of a meeting-liveness probe.

The probe is a plain callable returning whether the meeting is still running. Every
false reading is reported to on_dead; the owner decides what to do and stops the
monitor. A probe that raises is logged and counted as "unknown", never as dead.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class LivenessMonitor:
    def __init__(self, probe: Callable[[], bool], interval: float, on_dead: Callable[[], None]) -> None:
        self._probe = probe
        self._interval = interval
        self._on_dead = on_dead
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                alive = bool(self._probe())
            except Exception as e:
                logger.warning("Liveness probe failed: %s", e)
                continue
            if not alive:
                logger.info("Liveness probe reports meeting ended")
                try:
                    self._on_dead()
                except Exception:
                    logger.exception("Liveness handler failed")
