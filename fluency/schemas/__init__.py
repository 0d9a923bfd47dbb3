"""Pydantic schemas for persisted records and API request/response."""
from fluency.schemas.api import AcceptResponse, FinalTranscriptRequest
from fluency.schemas.records import (
    GarbageWordStats,
    SegmentSnapshot,
    StatsRecord,
    TranscriptEntry,
)

__all__ = [
    "AcceptResponse",
    "FinalTranscriptRequest",
    "GarbageWordStats",
    "SegmentSnapshot",
    "StatsRecord",
    "TranscriptEntry",
]
