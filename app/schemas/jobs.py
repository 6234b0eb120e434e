"""Typed payloads for each pipeline job kind.

The job queue stores payloads as opaque JSON; workers parse them back
through these models. A payload that fails validation is malformed and
the job is failed permanently.
"""

from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class InitiateCallPayload(BaseModel):
    delivery_id: UUID


class ProcessRecordingPayload(BaseModel):
    """Fields of Twilio's recording-complete callback."""

    call_sid: str = Field(min_length=1)
    recording_url: str
    recording_duration: int = Field(ge=1)
    delivery_id: UUID | None = None
    recording_sid: str | None = None

    @field_validator("recording_url")
    @classmethod
    def _must_be_http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("recording_url must be an http(s) URL")
        return value


class ProcessTranscriptionPayload(BaseModel):
    """Provider transcription callback, or an admin re-process request."""

    call_sid: str | None = None
    recording_id: UUID | None = None
    delivery_id: UUID | None = None
    transcription_text: str | None = None
    reprocess: bool = False

    @model_validator(mode="after")
    def _needs_a_key(self):
        if not self.call_sid and not self.recording_id:
            raise ValueError("call_sid or recording_id is required")
        return self


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "initiate-call": InitiateCallPayload,
    "process-recording": ProcessRecordingPayload,
    "process-transcription": ProcessTranscriptionPayload,
}


def parse_payload(kind: str, payload: dict) -> BaseModel:
    """Validate a stored payload against its kind. Raises pydantic.ValidationError."""
    return PAYLOAD_MODELS[kind].model_validate(payload)
