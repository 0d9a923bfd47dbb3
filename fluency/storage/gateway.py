"""
Key-value persistence gateway.

Contract is deliberately small: get(keys) -> {key: value} for the keys that exist,
set({key: value}) overwrites those keys. No transactions; read-modify-write races are
the coordinator's problem. Values are plain JSON-compatible data.

Keys used by the pipeline:
- "transcripts": list of TranscriptEntry dicts (append-only)
- "transcript_stats": {session_id: StatsRecord dict}
- "transcript_segment_<session_id>": SegmentSnapshot dict of a live session
- "latest_session_id" / "latest_complete_session": last started / last finished session
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable

from fluency.config import get_settings

logger = logging.getLogger(__name__)

TRANSCRIPTS_KEY = "transcripts"
STATS_KEY = "transcript_stats"
LATEST_SESSION_KEY = "latest_session_id"
LATEST_COMPLETE_KEY = "latest_complete_session"
SEGMENT_KEY_PREFIX = "transcript_segment_"


def segment_key(session_id: str) -> str:
    return f"{SEGMENT_KEY_PREFIX}{session_id}"


class PersistenceGateway(ABC):
    """Async key-value store. Implementations must return copies, never live state."""

    @abstractmethod
    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def set(self, items: dict[str, Any]) -> None:
        ...

    async def remove(self, keys: Iterable[str]) -> None:
        """Optional; default is a no-op for stores without deletion."""
        return None


class MemoryGateway(PersistenceGateway):
    """Process-local store. Used for tests and STORE_BACKEND=memory."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def set(self, items: dict[str, Any]) -> None:
        self._data.update(copy.deepcopy(items))

    async def remove(self, keys: Iterable[str]) -> None:
        for k in keys:
            self._data.pop(k, None)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of everything stored (debugging / tests)."""
        return copy.deepcopy(self._data)


class JsonFileGateway(PersistenceGateway):
    """
    Whole store in one JSON document. Blocking file I/O runs in the default executor
    so the event loop never waits on disk. Writes go to a temp file then replace.
    """

    def __init__(self, path: str | None = None) -> None:
        self._path = path or get_settings().STORE_PATH
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def _read_all(self) -> dict[str, Any]:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            logger.warning("Store %s is not valid JSON (%s); treating as empty", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self._path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self._path)

    def _sync_get(self, keys: list[str]) -> dict[str, Any]:
        with self._lock:
            data = self._read_all()
        return {k: data[k] for k in keys if k in data}

    def _sync_set(self, items: dict[str, Any]) -> None:
        with self._lock:
            data = self._read_all()
            data.update(items)
            self._write_all(data)

    def _sync_remove(self, keys: list[str]) -> None:
        with self._lock:
            data = self._read_all()
            for k in keys:
                data.pop(k, None)
            self._write_all(data)

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._sync_get, list(keys))

    async def set(self, items: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._sync_set, copy.deepcopy(items))

    async def remove(self, keys: Iterable[str]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._sync_remove, list(keys))


def create_gateway() -> PersistenceGateway:
    """Gateway from STORE_BACKEND (json | memory)."""
    settings = get_settings()
    if settings.STORE_BACKEND == "memory":
        return MemoryGateway()
    return JsonFileGateway(settings.STORE_PATH)
