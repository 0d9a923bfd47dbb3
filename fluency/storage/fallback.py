"""
FallbackWriter: last-resort, append-only copy of transcript entries the gateway refused.

One JSON object per line in <FALLBACK_DIR>/fallback_transcripts.jsonl. Nothing is ever
rewritten; a later recovery tool can replay the file into the primary store. Failures
here are logged and swallowed: the fallback must never take the pipeline down.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Optional

from fluency.config import get_settings
from fluency.schemas.records import TranscriptEntry

logger = logging.getLogger(__name__)

FALLBACK_FILENAME = "fallback_transcripts.jsonl"


class FallbackWriter:
    def __init__(self, fallback_dir: Optional[str] = None) -> None:
        self._dir = fallback_dir or get_settings().FALLBACK_DIR
        self._path = os.path.join(self._dir, FALLBACK_FILENAME)

    @property
    def path(self) -> str:
        return self._path

    def _append_line(self, line: str) -> None:
        os.makedirs(self._dir, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()

    async def write(self, entry: TranscriptEntry) -> bool:
        """Append entry; True on success. Runs file I/O in executor."""
        line = json.dumps(entry.model_dump(), ensure_ascii=False)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._append_line, line)
        except OSError as e:
            logger.warning("Fallback write failed for %s: %s", self._path, e)
            return False
        logger.info("Transcript %s written to fallback store %s", entry.session_id, self._path)
        return True

    def read_all(self) -> list[TranscriptEntry]:
        """Entries in write order; unreadable lines are skipped."""
        entries: list[TranscriptEntry] = []
        try:
            with open(self._path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(TranscriptEntry.model_validate_json(line))
                    except ValueError as e:
                        logger.warning("Skipping malformed fallback line: %s", e)
        except FileNotFoundError:
            return []
        return entries
