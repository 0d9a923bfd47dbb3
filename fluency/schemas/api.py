"""
Schemas for the completion-signal API.

Every trigger (explicit stop, meeting ended, liveness detector, tab-close salvage)
posts the same FinalTranscriptRequest; the coordinator decides whether it is saved.
"""
from __future__ import annotations

from pydantic import BaseModel, Field

from fluency.schemas.records import TranscriptEntry


class FinalTranscriptRequest(BaseModel):
    """Request body for POST /api/sessions/final."""

    session_id: str = Field(..., min_length=1, description="Recording session id")
    text: str = Field("", description="Annotated transcript with [S:..s]/[E:..s] markers")
    meeting_code: str | None = Field(None, description="Meeting code, e.g. abc-defg-hij")
    is_english: bool | None = Field(None, description="Language gate; only true is saved")
    trigger: str = Field("stop", description="stop | meeting-ended | liveness | salvage | ...")


class AcceptResponse(BaseModel):
    """Response for POST /api/sessions/final."""

    saved: bool = Field(..., description="True when this call persisted the transcript")
    session_id: str
    entry: TranscriptEntry | None = Field(None, description="Persisted entry when saved")

