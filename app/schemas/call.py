"""Pydantic schemas for the call control API and pipeline read models."""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field


class InitiateCallRequest(BaseModel):
    delivery_id: UUID
    delay: float = Field(default=0, ge=0)   # seconds


class RecordingOut(BaseModel):
    id: UUID
    call_log_id: UUID
    audio_url: str
    audio_durable: bool = False
    duration: int | None = None
    transcript: str | None = None
    transcript_source: str | None = None
    transcription_error: str | None = None
    intent: dict | None = None
    intent_source: str | None = None
    notified_at: datetime | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class CallLogOut(BaseModel):
    id: UUID
    delivery_id: UUID
    call_sid: str | None = None
    status: str
    duration: int | None = None
    recording_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    recording: RecordingOut | None = None

    class Config:
        from_attributes = True
