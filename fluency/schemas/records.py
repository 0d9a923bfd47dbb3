"""
Persisted records: transcript entries, per-session stats, incomplete segment snapshots.

TranscriptEntry is append-only and unique per session_id. StatsRecord is stored in a
map keyed by session_id. SegmentSnapshot is the autosaved, still-growing transcript of
a live session; it is what a tab-close salvage recovers.
"""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TranscriptEntry(BaseModel):
    """One saved session transcript (reconciled annotated text)."""

    id: str = Field(..., description="Entry id; same as session_id")
    session_id: str
    timestamp: str = Field(default_factory=utc_now_iso, description="ISO-8601 save time (UTC)")
    meeting_id: str = Field("unknown-meeting", description="Meeting code the session belonged to")
    text: str = Field(..., description="Annotated transcript after timestamp reconciliation")
    is_english: bool = True
    timestamps_fixed: bool = False
    trigger: str = Field("stop", description="Completion signal that produced this entry")
    recovered: bool = Field(False, description="True when salvaged from an incomplete segment")


class GarbageWordStats(BaseModel):
    total_garbage_words: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    top_garbage_words: dict[str, int] = Field(default_factory=dict, description="Top 3 contributors")
    garbage_percentage: int = Field(0, ge=0)


class StatsRecord(BaseModel):
    """Speech metrics for one session."""

    session_id: str
    transcript_id: str | None = None
    meeting_id: str | None = None
    unique_word_count: int = 0
    total_word_count: int = 0
    words_per_minute: float = 0.0
    meeting_length_seconds: float = 0.0
    speaking_time_seconds: float = 0.0
    meeting_length: str = Field("00h 00m 00s", description="Display form of meeting_length_seconds")
    speaking_time: str = Field("00h 00m 00s", description="Display form of speaking_time_seconds")
    garbage_word_stats: GarbageWordStats = Field(default_factory=GarbageWordStats)
    fluency_score: int = Field(1, ge=1, le=100)
    timestamps_fixed: bool = False
    computed_at: str = Field(default_factory=utc_now_iso)


class SegmentSnapshot(BaseModel):
    """Autosaved state of a live session's transcript."""

    session_id: str
    meeting_code: str = "unknown-meeting"
    timestamp: str = Field(default_factory=utc_now_iso)
    text: str = ""
    is_complete: bool = False
    is_english: bool | None = None
