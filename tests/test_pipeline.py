"""End-to-end tests for the pipeline coordinator against real rows."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from pydantic import ValidationError
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from app.core.errors import PermanentError, RetryableError
from app.models.call_log import CallLog
from app.models.delivery import Delivery
from app.models.recording import Recording
from app.schemas.jobs import InitiateCallPayload, ProcessRecordingPayload, ProcessTranscriptionPayload
from app.services.cache import transcription_key
from app.services.intent_parser import LEAVE_AT_DOOR
from app.services.media_store import MediaStore
from app.services.pipeline import PipelineState
from app.services.speech import SpeechService

from conftest import FakeSocket, MEDIA_PUBLIC_URL, PROVIDER_AUDIO_URL


def recording_payload(delivery, call_sid="CA1", duration=30, url=PROVIDER_AUDIO_URL):
    return ProcessRecordingPayload(
        call_sid=call_sid, recording_url=url, recording_duration=duration, delivery_id=delivery.id
    )


def enabled_speech(cache, transcript="URGENT please call back", reply="not json at all"):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/audio/transcriptions"):
            return httpx.Response(200, json={"text": transcript})
        if request.url.path.endswith("/chat/completions"):
            return httpx.Response(200, json={"choices": [{"message": {"content": reply}}]})
        return httpx.Response(200, content=b"RIFF")

    return SpeechService("sk-test", cache, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def call_log_for(db, call_sid):
    result = await db.execute(
        select(CallLog).where(CallLog.call_sid == call_sid).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def count(db, model):
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_happy_path(db, coordinator, delivery, agent, push, realtime, twilio_client):
    socket = FakeSocket()
    realtime.join(agent.room, socket)

    call_log = await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    assert call_log.call_sid == "CA1"
    assert call_log.status == "queued"

    await coordinator.apply_call_status(db, "CA1", "in-progress")
    assert (await call_log_for(db, "CA1")).status == "answered"

    await coordinator.process_recording(db, recording_payload(delivery))
    recording = await coordinator.process_transcription(
        db, ProcessTranscriptionPayload(call_sid="CA1", transcription_text="leave at the door urgent")
    )

    call_log = await call_log_for(db, "CA1")
    assert call_log.status == "completed"
    assert call_log.duration == 30

    assert recording.audio_url.startswith(MEDIA_PUBLIC_URL + "/recordings/")
    assert recording.audio_durable is True
    assert recording.transcript == "leave at the door urgent"
    assert recording.transcript_source == "provider"
    assert recording.intent["priority"] == "urgent"
    assert recording.intent["time_sensitive"] is True
    assert LEAVE_AT_DOOR in recording.intent["conditions"]

    assert push.send.await_count == 1
    assert len(socket.sent) == 1
    assert socket.sent[0]["event"] == "new-recording"

    await db.refresh(delivery)
    assert delivery.status == "in_progress"
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.DONE


@pytest.mark.asyncio
async def test_duplicate_recording_is_a_noop(db, coordinator, delivery, push, media_store):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    first = await coordinator.process_recording(db, recording_payload(delivery))
    second = await coordinator.process_recording(db, recording_payload(delivery))

    assert first.id == second.id
    assert first.audio_url == second.audio_url
    assert await count(db, Recording) == 1
    assert media_store._upload.await_count == 1
    assert push.send.await_count == 1


@pytest.mark.asyncio
async def test_recording_before_any_call_status(db, coordinator, delivery, twilio_client):
    recording = await coordinator.process_recording(db, recording_payload(delivery, call_sid="CA2"))

    call_log = await call_log_for(db, "CA2")
    assert call_log.status == "answered"
    assert call_log.delivery_id == delivery.id
    twilio_client.calls.create.assert_not_called()

    await coordinator.apply_call_status(db, "CA2", "completed", duration=45)

    call_log = await call_log_for(db, "CA2")
    assert call_log.status == "completed"
    assert call_log.duration == 45
    unchanged = await db.get(Recording, recording.id)
    await db.refresh(unchanged)
    assert unchanged.audio_url == recording.audio_url
    assert unchanged.duration == 30


@pytest.mark.asyncio
async def test_recording_for_unknown_call_without_delivery_is_permanent(db, coordinator):
    payload = ProcessRecordingPayload(call_sid="CA9", recording_url=PROVIDER_AUDIO_URL, recording_duration=5)
    with pytest.raises(PermanentError):
        await coordinator.process_recording(db, payload)


@pytest.mark.asyncio
async def test_malformed_analysis_falls_back_to_keywords(db, coordinator, delivery, cache, push):
    coordinator.speech = enabled_speech(cache)
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    recording = await coordinator.process_recording(db, recording_payload(delivery))

    assert recording.transcript == "URGENT please call back"
    assert recording.transcript_source == "speech"
    assert recording.intent_source == "fallback"
    assert recording.intent["priority"] == "urgent"
    assert recording.intent["time_sensitive"] is True
    assert push.send.await_count == 1
    payload = push.send.call_args.args[3]
    assert payload["transcript"] == "URGENT please call back"


@pytest.mark.asyncio
async def test_analysis_json_is_stored(db, coordinator, delivery, cache):
    reply = '{"sentiment": "positive", "priority": "low", "conditions": [], "instructions": ["ring twice"]}'
    coordinator.speech = enabled_speech(cache, transcript="Ring twice, thanks", reply=reply)
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    recording = await coordinator.process_recording(db, recording_payload(delivery))

    assert recording.intent_source == "analysis"
    assert recording.intent["priority"] == "low"
    assert recording.intent["instructions"] == ["ring twice"]


@pytest.mark.asyncio
async def test_media_store_disabled_keeps_provider_url(db, coordinator, delivery):
    coordinator.media = MediaStore("")
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    recording = await coordinator.process_recording(db, recording_payload(delivery))
    assert recording.audio_url == PROVIDER_AUDIO_URL
    assert recording.audio_durable is False

    recording = await coordinator.process_transcription(
        db, ProcessTranscriptionPayload(call_sid="CA1", transcription_text="please leave it at the door")
    )
    assert recording.intent is not None
    assert recording.intent["conditions"] == [LEAVE_AT_DOOR]

    again = await coordinator.process_recording(
        db, recording_payload(delivery, url="https://api.twilio.com/other-url")
    )
    assert again.audio_url == PROVIDER_AUDIO_URL


@pytest.mark.asyncio
async def test_media_retry_then_provider_url_on_last_attempt(db, coordinator, delivery, media_store):
    media_store._upload = AsyncMock(side_effect=RetryableError("storage unavailable"))
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    with pytest.raises(RetryableError):
        await coordinator.process_recording(db, recording_payload(delivery))
    assert await count(db, Recording) == 0

    recording = await coordinator.process_recording(db, recording_payload(delivery), final_attempt=True)
    assert recording.audio_url == PROVIDER_AUDIO_URL
    assert recording.audio_durable is False


@pytest.mark.asyncio
async def test_recording_at_max_length_and_zero_length():
    assert ProcessRecordingPayload(call_sid="CA1", recording_url=PROVIDER_AUDIO_URL, recording_duration=60)
    with pytest.raises(ValidationError):
        ProcessRecordingPayload(call_sid="CA1", recording_url=PROVIDER_AUDIO_URL, recording_duration=0)


@pytest.mark.asyncio
async def test_no_answer_is_terminal_and_notifies_once(db, coordinator, delivery, push):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    await coordinator.apply_call_status(db, "CA1", "no-answer")
    await coordinator.apply_call_status(db, "CA1", "no-answer")
    await coordinator.apply_call_status(db, "CA1", "ringing")

    call_log = await call_log_for(db, "CA1")
    assert call_log.status == "no-answer"
    assert await count(db, Recording) == 0
    assert push.send.await_count == 1
    assert push.send.call_args.args[1] == "Delivery Status Update"
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.FAILED


@pytest.mark.asyncio
async def test_status_only_moves_forward(db, coordinator, delivery):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    await coordinator.apply_call_status(db, "CA1", "answered")
    await coordinator.apply_call_status(db, "CA1", "ringing")
    assert (await call_log_for(db, "CA1")).status == "answered"
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.CALL_LIVE


@pytest.mark.asyncio
async def test_unknown_status_is_ignored(db, coordinator, delivery):
    assert await coordinator.apply_call_status(db, "CA1", "exploded") is None
    assert await coordinator.apply_call_status(db, "CA404", "ringing") is None


@pytest.mark.asyncio
async def test_second_initiate_skips_while_call_is_live(db, coordinator, delivery, twilio_client):
    first = await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    second = await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    assert first.id == second.id
    assert twilio_client.calls.create.call_count == 1
    active = await db.execute(
        select(func.count()).select_from(CallLog).where(CallLog.delivery_id == delivery.id)
    )
    assert active.scalar_one() == 1


@pytest.mark.asyncio
async def test_recording_for_other_call_while_one_is_live(db, coordinator, delivery):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    await coordinator.process_recording(db, recording_payload(delivery, call_sid="CA-other"))

    other = await call_log_for(db, "CA-other")
    assert other.status == "completed"
    assert (await call_log_for(db, "CA1")).status == "queued"


@pytest.mark.asyncio
async def test_initiate_unknown_delivery_is_permanent(db, coordinator):
    import uuid

    with pytest.raises(PermanentError):
        await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=uuid.uuid4()))


@pytest.mark.asyncio
async def test_failed_initiate_marks_delivery_failed(db, coordinator, delivery):
    await coordinator.on_job_failed(db, "initiate-call", {"delivery_id": str(delivery.id)}, "invalid number")
    await db.refresh(delivery)
    assert delivery.status == "failed"
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.FAILED


@pytest.mark.asyncio
async def test_first_transcript_wins(db, coordinator, delivery, cache):
    coordinator.speech = enabled_speech(cache, transcript="leave it by the back door")
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    await coordinator.process_recording(db, recording_payload(delivery))

    recording = await coordinator.process_transcription(
        db, ProcessTranscriptionPayload(call_sid="CA1", transcription_text="something else entirely")
    )
    assert recording.transcript == "leave it by the back door"
    assert recording.transcript_source == "speech"


@pytest.mark.asyncio
async def test_transcription_before_recording_is_retried(db, coordinator, delivery):
    payload = ProcessTranscriptionPayload(call_sid="CA1", transcription_text="hello")
    with pytest.raises(RetryableError):
        await coordinator.process_transcription(db, payload)
    assert await coordinator.process_transcription(db, payload, final_attempt=True) is None


@pytest.mark.asyncio
async def test_transcription_failure_still_notifies(db, coordinator, delivery, push):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    recording = await coordinator.process_recording(db, recording_payload(delivery))

    assert recording.transcript is None
    assert recording.intent is None
    assert recording.transcription_error == "AI service not available"
    assert push.send.await_count == 1
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.DONE


@pytest.mark.asyncio
async def test_reprocess_fills_missing_transcript(db, coordinator, delivery, cache, push):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    recording = await coordinator.process_recording(db, recording_payload(delivery))
    assert recording.transcript is None

    await cache.set(transcription_key(recording.id), {"kind": "TranscriptionFailed"}, 60)
    coordinator.speech = enabled_speech(cache, transcript="please leave at door")

    recording = await coordinator.process_transcription(
        db, ProcessTranscriptionPayload(recording_id=recording.id, reprocess=True)
    )
    assert recording.transcript == "please leave at door"
    assert recording.transcription_error is None
    assert recording.intent["conditions"] == [LEAVE_AT_DOOR]
    assert push.send.await_count == 1


@pytest.mark.asyncio
async def test_pipeline_state_progression(db, coordinator, delivery):
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.IDLE
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.CALL_PLACED

    import uuid
    assert await coordinator.pipeline_state(db, uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_finished_delivery_is_not_called(db, coordinator, delivery, twilio_client):
    delivery.status = "completed"
    await db.commit()
    assert await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id)) is None
    twilio_client.calls.create.assert_not_called()
    result = await db.execute(select(Delivery.status).where(Delivery.id == delivery.id))
    assert result.scalar_one() == "completed"


def flaky_speech(cache, failures=1, transcript="leave at the door"):
    """Whisper answers 503 ``failures`` times, then succeeds."""
    calls = {"whisper": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/audio/transcriptions"):
            calls["whisper"] += 1
            if calls["whisper"] <= failures:
                return httpx.Response(503)
            return httpx.Response(200, json={"text": transcript})
        if request.url.path.endswith("/chat/completions"):
            return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})
        return httpx.Response(200, content=b"RIFF")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SpeechService("sk-test", cache, http_client=client), calls


@pytest.mark.asyncio
async def test_transient_transcription_failure_is_retried(db, coordinator, delivery, cache, push):
    coordinator.speech, calls = flaky_speech(cache)
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    with pytest.raises(RetryableError):
        await coordinator.process_recording(db, recording_payload(delivery))
    assert push.send.await_count == 0
    assert await coordinator.pipeline_state(db, delivery.id) == PipelineState.AUDIO_PERSISTED

    recording = await coordinator.process_recording(db, recording_payload(delivery))
    assert calls["whisper"] == 2
    assert recording.transcript == "leave at the door"
    assert recording.transcription_error is None
    assert recording.notified_at is not None
    assert push.send.await_count == 1


@pytest.mark.asyncio
async def test_transient_transcription_failure_degrades_on_last_attempt(db, coordinator, delivery, cache, push):
    coordinator.speech, _ = flaky_speech(cache, failures=5)
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    recording = await coordinator.process_recording(db, recording_payload(delivery), final_attempt=True)

    assert recording.transcript is None
    assert "503" in recording.transcription_error
    assert push.send.await_count == 1


@pytest.mark.asyncio
async def test_slow_transcription_times_out_per_step(db, coordinator, delivery, push):
    async def slow_transcribe(audio_url, recording_id):
        await asyncio.sleep(1)

    coordinator.step_timeout = 0.05
    coordinator.speech.transcribe = slow_transcribe
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))

    with pytest.raises(RetryableError, match="timed out"):
        await coordinator.process_recording(db, recording_payload(delivery))

    recording = await coordinator.process_recording(db, recording_payload(delivery), final_attempt=True)
    assert "timed out" in recording.transcription_error
    assert recording.notified_at is not None
    assert push.send.await_count == 1


@pytest.mark.asyncio
async def test_abandoned_recording_job_still_notifies(db, coordinator, delivery, push):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    payload = recording_payload(delivery).model_dump(mode="json")

    await coordinator.on_job_failed(db, "process-recording", payload, "Job exceeded its attempts")

    call_log = await call_log_for(db, "CA1")
    result = await db.execute(
        select(Recording).where(Recording.call_log_id == call_log.id).execution_options(populate_existing=True)
    )
    recording = result.scalar_one()
    assert recording.audio_url == PROVIDER_AUDIO_URL
    assert recording.audio_durable is False
    assert recording.transcription_error == "Job exceeded its attempts"
    assert recording.notified_at is not None
    assert push.send.await_count == 1

    await coordinator.on_job_failed(db, "process-recording", payload, "again")
    assert push.send.await_count == 1


@pytest.mark.asyncio
async def test_abandoned_recording_with_transcript_gets_keyword_intent(db, coordinator, delivery, push):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    recording = await coordinator.process_recording(db, recording_payload(delivery))
    await db.execute(
        Recording.__table__.update()
        .where(Recording.id == recording.id)
        .values(transcript="URGENT leave at door", intent=None, notified_at=None)
    )
    await db.commit()

    await coordinator.on_job_failed(
        db, "process-recording", recording_payload(delivery).model_dump(mode="json"), "gave up"
    )

    result = await db.execute(
        select(Recording).where(Recording.id == recording.id).execution_options(populate_existing=True)
    )
    settled = result.scalar_one()
    assert settled.intent["priority"] == "urgent"
    assert settled.intent_source == "fallback"
    assert push.send.await_count == 2


@pytest.mark.asyncio
async def test_replayed_recording_keeps_call_status_duration(db, coordinator, delivery):
    await coordinator.initiate_call(db, InitiateCallPayload(delivery_id=delivery.id))
    await coordinator.process_recording(db, recording_payload(delivery, duration=30))
    await coordinator.apply_call_status(db, "CA1", "completed", duration=45)

    await coordinator.process_recording(db, recording_payload(delivery, duration=30))

    call_log = await call_log_for(db, "CA1")
    assert call_log.duration == 45


@pytest.mark.asyncio
async def test_database_allows_one_active_call_per_delivery(db, delivery):
    db.add(CallLog(delivery_id=delivery.id, call_sid="CA1", status="completed"))
    db.add(CallLog(delivery_id=delivery.id, call_sid="CA2", status="ringing"))
    await db.commit()

    db.add(CallLog(delivery_id=delivery.id, call_sid="CA3", status="queued"))
    with pytest.raises(IntegrityError):
        await db.commit()
    await db.rollback()
