"""Delivery-call pipeline coordinator.

Drives a delivery from a scheduled call through recording, transcript,
intent and agent notification. No state is kept between jobs: every
step re-reads the stored rows and writes through conditional updates,
so a retried or duplicated job converges on the same rows.
"""

import asyncio
import enum
import logging
from datetime import datetime
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import PermanentError, RetryableError
from app.models.agent import Agent
from app.models.call_log import CallLog, ACTIVE_CALL_STATUSES, CALL_STATUS_RANK
from app.models.customer import Customer
from app.models.delivery import Delivery
from app.models.recording import Recording
from app.schemas.jobs import InitiateCallPayload, ProcessRecordingPayload, ProcessTranscriptionPayload
from app.services.cache import ResultCache, transcription_key, analysis_key
from app.services.intent_parser import parse_fallback_intent
from app.services.media_store import MediaStore, PersistedMedia
from app.services.notification_service import NotificationService, NotificationKind
from app.services.speech import (
    SpeechService,
    Transcribed,
    TranscriptionFailed,
    Analyzed,
    AnalyzedByFallback,
    AnalysisFailed,
)
from app.services.telephony import TelephonyService, normalize_call_status

logger = logging.getLogger(__name__)

UNSUCCESSFUL_CALL_STATUSES = ("no-answer", "busy", "failed")


class PipelineState(str, enum.Enum):
    IDLE = "IDLE"
    CALL_PLACED = "CALL_PLACED"
    CALL_LIVE = "CALL_LIVE"
    RECORDING_READY = "RECORDING_READY"
    AUDIO_PERSISTED = "AUDIO_PERSISTED"
    TRANSCRIBED = "TRANSCRIBED"
    ANALYZED = "ANALYZED"
    DONE = "DONE"
    FAILED = "FAILED"


class PipelineCoordinator:
    def __init__(
        self,
        telephony: TelephonyService,
        media: MediaStore,
        speech: SpeechService,
        cache: ResultCache,
        notifications: NotificationService,
        step_timeout: float | None = None,
    ):
        self.telephony = telephony
        self.media = media
        self.speech = speech
        self.cache = cache
        self.notifications = notifications
        self.step_timeout = step_timeout if step_timeout is not None else settings.PIPELINE_STEP_TIMEOUT_SECONDS

    async def _step(self, what: str, coro):
        """Await one external call under the per-step timeout."""
        try:
            return await asyncio.wait_for(coro, timeout=self.step_timeout)
        except asyncio.TimeoutError:
            raise RetryableError(f"{what} timed out after {self.step_timeout:g}s")

    # ── Reads ──────────────────────────────────────────────────────

    async def _call_log_by_sid(self, db: AsyncSession, call_sid: str) -> CallLog | None:
        result = await db.execute(
            select(CallLog).where(CallLog.call_sid == call_sid).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _active_call_log(self, db: AsyncSession, delivery_id: UUID) -> CallLog | None:
        result = await db.execute(
            select(CallLog).where(
                and_(CallLog.delivery_id == delivery_id, CallLog.status.in_(ACTIVE_CALL_STATUSES))
            ).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _recording_for(self, db: AsyncSession, call_log_id: UUID) -> Recording | None:
        result = await db.execute(
            select(Recording).where(Recording.call_log_id == call_log_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_recording(self, db: AsyncSession, recording_id: UUID) -> Recording | None:
        result = await db.execute(
            select(Recording).where(Recording.id == recording_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_delivery(self, db: AsyncSession, delivery_id: UUID) -> Delivery | None:
        result = await db.execute(
            select(Delivery).where(Delivery.id == delivery_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ── Conditional writes ─────────────────────────────────────────

    async def _advance_status(self, db: AsyncSession, call_log_id: UUID, status: str) -> bool:
        """Move a CallLog to ``status`` only if that is a forward move."""
        lower = [s for s, rank in CALL_STATUS_RANK.items() if rank < CALL_STATUS_RANK[status]]
        result = await db.execute(
            update(CallLog)
            .where(and_(CallLog.id == call_log_id, CallLog.status.in_(lower)))
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _set_delivery_status(self, db: AsyncSession, delivery_id: UUID, status: str, *, when: str) -> bool:
        result = await db.execute(
            update(Delivery)
            .where(and_(Delivery.id == delivery_id, Delivery.status == when))
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Delivery %s: %s -> %s", delivery_id, when, status)
            return True
        return False

    async def _insert_call_log(
        self, db: AsyncSession, delivery_id: UUID, call_sid: str, status: str
    ) -> tuple[CallLog, bool]:
        """Insert a CallLog for ``call_sid``; returns (row, created).

        Losing the race to another writer for the same call sid returns
        the winner's row instead.
        """
        db.add(CallLog(delivery_id=delivery_id, call_sid=call_sid, status=status))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await self._call_log_by_sid(db, call_sid)
            if existing is not None:
                return existing, False
            raise RetryableError(
                f"Call {call_sid} conflicts with another live call for delivery {delivery_id}"
            )
        return await self._call_log_by_sid(db, call_sid), True

    async def _write_transcript(self, db: AsyncSession, recording_id: UUID, text: str, source: str) -> bool:
        """First writer wins; later transcripts for the same recording are dropped."""
        result = await db.execute(
            update(Recording)
            .where(and_(Recording.id == recording_id, Recording.transcript.is_(None)))
            .values(transcript=text, transcript_source=source, transcription_error=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    # ── initiate-call ──────────────────────────────────────────────

    async def initiate_call(self, db: AsyncSession, payload: InitiateCallPayload) -> CallLog | None:
        delivery = await self._get_delivery(db, payload.delivery_id)
        if delivery is None:
            raise PermanentError(f"Delivery {payload.delivery_id} not found")
        delivery_id = delivery.id

        if delivery.status in ("completed", "failed"):
            logger.info("Delivery %s is %s; not calling", delivery_id, delivery.status)
            return None

        existing = await self._active_call_log(db, delivery_id)
        if existing is not None:
            logger.info("Delivery %s already has live call %s; skipping", delivery_id, existing.call_sid)
            return existing

        customer = await db.get(Customer, delivery.customer_id)
        placed = await self._step(
            "Call placement", self.telephony.place_call(delivery_id, customer.phone if customer else None)
        )

        call_log = await self._call_log_by_sid(db, placed.call_id)
        if call_log is None:
            status = normalize_call_status(placed.initial_status) or "queued"
            call_log, _ = await self._insert_call_log(db, delivery_id, placed.call_id, status)

        await self._set_delivery_status(db, delivery_id, "in_progress", when="scheduled")
        await db.commit()
        logger.info("Call %s placed for delivery %s", placed.call_id, delivery_id)
        return call_log

    # ── call-status ────────────────────────────────────────────────

    async def apply_call_status(
        self,
        db: AsyncSession,
        call_sid: str,
        status: str,
        duration: int | None = None,
        delivery_id: UUID | None = None,
    ) -> CallLog | None:
        """Apply a provider status callback. Returns None when it cannot be matched."""
        new_status = normalize_call_status(status)
        if new_status is None:
            logger.warning("Ignoring unknown call status %r for call %s", status, call_sid)
            return None

        call_log = await self._call_log_by_sid(db, call_sid)
        advanced = False
        if call_log is None:
            if delivery_id is None or await self._get_delivery(db, delivery_id) is None:
                logger.warning("Status %s for unknown call %s (delivery %s)", new_status, call_sid, delivery_id)
                return None
            if new_status in ACTIVE_CALL_STATUSES and await self._active_call_log(db, delivery_id):
                logger.warning("Call %s reported %s while another call is live for delivery %s",
                               call_sid, new_status, delivery_id)
                return None
            call_log, advanced = await self._insert_call_log(db, delivery_id, call_sid, new_status)

        call_log_id = call_log.id
        owner_id = call_log.delivery_id
        advanced = await self._advance_status(db, call_log_id, new_status) or advanced

        if duration is not None:
            await db.execute(
                update(CallLog)
                .where(CallLog.id == call_log_id)
                .values(duration=duration)
                .execution_options(synchronize_session=False)
            )
        if new_status in ("ringing", "answered"):
            await self._set_delivery_status(db, owner_id, "in_progress", when="scheduled")
        await db.commit()

        if advanced:
            logger.info("Call %s -> %s", call_sid, new_status)
            if new_status in UNSUCCESSFUL_CALL_STATUSES:
                await self._notify_call_outcome(db, owner_id, call_sid, new_status)

        return await self._call_log_by_sid(db, call_sid)

    # ── process-recording ──────────────────────────────────────────

    async def process_recording(
        self, db: AsyncSession, payload: ProcessRecordingPayload, final_attempt: bool = False
    ) -> Recording:
        call_log = await self._call_log_by_sid(db, payload.call_sid)
        synthesized = False

        if call_log is None:
            # Recording arrived before any call-status for this call
            if payload.delivery_id is None:
                raise PermanentError(f"Recording for unknown call {payload.call_sid} carries no delivery_id")
            if await self._get_delivery(db, payload.delivery_id) is None:
                raise PermanentError(f"Delivery {payload.delivery_id} not found")
            status = "answered"
            if await self._active_call_log(db, payload.delivery_id) is not None:
                status = "completed"
            call_log, synthesized = await self._insert_call_log(db, payload.delivery_id, payload.call_sid, status)
            logger.info("Synthesized call %s (%s) from recording", payload.call_sid, status)

        call_log_id = call_log.id
        delivery_id = call_log.delivery_id

        await db.execute(
            update(CallLog)
            .where(CallLog.id == call_log_id)
            .values(recording_url=payload.recording_url)
            .execution_options(synchronize_session=False)
        )
        # call-status carries the authoritative call duration
        await db.execute(
            update(CallLog)
            .where(and_(CallLog.id == call_log_id, CallLog.duration.is_(None)))
            .values(duration=payload.recording_duration)
            .execution_options(synchronize_session=False)
        )
        if not synthesized:
            # The record action is the last verb of the call
            await self._advance_status(db, call_log_id, "completed")
        await self._set_delivery_status(db, delivery_id, "in_progress", when="scheduled")
        await db.commit()

        recording = await self._recording_for(db, call_log_id)
        if recording is not None:
            logger.info("Recording for call %s already stored; skipping persistence", payload.call_sid)
        else:
            media = await self._persist_media(payload, final_attempt)
            db.add(
                Recording(
                    call_log_id=call_log_id,
                    audio_url=media.url,
                    audio_durable=media.durable,
                    provider_recording_url=payload.recording_url,
                    duration=payload.recording_duration,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Recording for call %s stored concurrently", payload.call_sid)
            recording = await self._recording_for(db, call_log_id)

        recording_id = recording.id
        await self._complete_recording(db, recording_id, delivery_id, final_attempt)
        return await self._get_recording(db, recording_id)

    async def _persist_media(self, payload: ProcessRecordingPayload, final_attempt: bool) -> PersistedMedia:
        name = f"recording-{payload.call_sid}.wav"
        try:
            return await self._step("Media persistence", self.media.fetch_and_persist(payload.recording_url, name))
        except PermanentError as e:
            logger.warning("Keeping provider URL for call %s: %s", payload.call_sid, e)
        except RetryableError as e:
            if not final_attempt:
                raise
            logger.warning("Media store still failing on last attempt for call %s; keeping provider URL: %s",
                           payload.call_sid, e)
        return PersistedMedia(url=payload.recording_url, durable=False)

    async def _complete_recording(
        self, db: AsyncSession, recording_id: UUID, delivery_id: UUID, final_attempt: bool = False
    ) -> None:
        """Fill in whatever is missing on the Recording, then notify once.

        Transient speech failures raise ``RetryableError`` so the queue
        retries the job. On the last attempt they are recorded instead
        and the agent is notified with what is there.
        """
        recording = await self._get_recording(db, recording_id)

        if recording.transcript is None:
            try:
                result = await self._step("Transcription", self.speech.transcribe(recording.audio_url, recording_id))
            except RetryableError as e:
                result = TranscriptionFailed(str(recording_id), str(e), retryable=True)

            if isinstance(result, Transcribed):
                await self._write_transcript(db, recording_id, result.text, "speech")
            elif result.retryable and not final_attempt:
                raise RetryableError(f"Transcription of recording {recording_id} failed: {result.reason}")
            else:
                logger.warning("No transcript for recording %s: %s", recording_id, result.reason)
                await self._record_transcription_error(db, recording_id, result.reason)
            recording = await self._get_recording(db, recording_id)

        if recording.transcript and recording.intent is None:
            await self._analyze(db, recording_id, recording.transcript, final_attempt)

        await self._notify_recording(db, recording_id, delivery_id)

    async def _record_transcription_error(self, db: AsyncSession, recording_id: UUID, reason: str) -> None:
        await db.execute(
            update(Recording)
            .where(and_(Recording.id == recording_id, Recording.transcript.is_(None)))
            .values(transcription_error=reason[:2000])
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _analyze(self, db: AsyncSession, recording_id: UUID, text: str, final_attempt: bool = False) -> None:
        try:
            result = await self._step("Analysis", self.speech.analyze(text, recording_id))
        except RetryableError as e:
            result = AnalysisFailed(str(recording_id), str(e), retryable=True)

        if isinstance(result, Analyzed):
            intent, source = result.intent, "analysis"
        elif isinstance(result, AnalyzedByFallback):
            intent, source = result.intent, "fallback"
        elif result.retryable and not final_attempt:
            raise RetryableError(f"Analysis of recording {recording_id} failed: {result.reason}")
        else:
            logger.warning("Analysis failed for recording %s (%s); using keyword parser", recording_id, result.reason)
            intent, source = parse_fallback_intent(text), "fallback"

        await self._write_intent(db, recording_id, intent, source)

    async def _write_intent(self, db: AsyncSession, recording_id: UUID, intent, source: str) -> None:
        await db.execute(
            update(Recording)
            .where(and_(Recording.id == recording_id, Recording.intent.is_(None)))
            .values(intent=intent.model_dump(), intent_source=source)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    # ── process-transcription ──────────────────────────────────────

    async def process_transcription(
        self, db: AsyncSession, payload: ProcessTranscriptionPayload, final_attempt: bool = False
    ) -> Recording | None:
        if payload.recording_id is not None:
            recording = await self._get_recording(db, payload.recording_id)
            if recording is None:
                raise PermanentError(f"Recording {payload.recording_id} not found")
        else:
            call_log = await self._call_log_by_sid(db, payload.call_sid)
            recording = await self._recording_for(db, call_log.id) if call_log else None
            if recording is None:
                if final_attempt:
                    logger.warning("Dropping transcription for call %s: recording never stored", payload.call_sid)
                    return None
                raise RetryableError(f"Recording for call {payload.call_sid} not stored yet")

        recording_id = recording.id
        call_log = await db.get(CallLog, recording.call_log_id)
        delivery_id = call_log.delivery_id

        if payload.reprocess:
            logger.info("Reprocessing recording %s", recording_id)
            await self.cache.delete(transcription_key(recording_id), analysis_key(recording_id))
            await self._complete_recording(db, recording_id, delivery_id, final_attempt)
            return await self._get_recording(db, recording_id)

        text = (payload.transcription_text or "").strip()
        if text:
            if not await self._write_transcript(db, recording_id, text, "provider"):
                logger.info("Recording %s already has a transcript; provider text ignored", recording_id)
            recording = await self._get_recording(db, recording_id)

        if recording.transcript and recording.intent is None:
            await self._analyze(db, recording_id, recording.transcript, final_attempt)

        return await self._get_recording(db, recording_id)

    # ── Failure hooks ──────────────────────────────────────────────

    async def on_job_failed(self, db: AsyncSession, kind: str, payload: dict, error: str) -> None:
        """Called once a job is failed-permanent."""
        if kind == "process-recording":
            await self._settle_abandoned_recording(db, payload, error)
            return
        if kind != "initiate-call":
            return
        try:
            delivery_id = UUID(str(payload.get("delivery_id")))
        except ValueError:
            return
        if await self._set_delivery_status(db, delivery_id, "failed", when="scheduled"):
            logger.error("Delivery %s failed: call could not be placed (%s)", delivery_id, error[:200])
        await db.commit()

    async def _settle_abandoned_recording(self, db: AsyncSession, payload: dict, error: str) -> None:
        """Store what a given-up recording job has and notify the agent anyway."""
        try:
            job = ProcessRecordingPayload.model_validate(payload)
        except ValidationError:
            return
        call_log = await self._call_log_by_sid(db, job.call_sid)
        if call_log is None:
            logger.error("Recording for call %s abandoned before its call was stored: %s", job.call_sid, error[:200])
            return
        call_log_id = call_log.id
        delivery_id = call_log.delivery_id

        recording = await self._recording_for(db, call_log_id)
        if recording is None:
            db.add(
                Recording(
                    call_log_id=call_log_id,
                    audio_url=job.recording_url,
                    audio_durable=False,
                    provider_recording_url=job.recording_url,
                    duration=job.recording_duration,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
            recording = await self._recording_for(db, call_log_id)

        recording_id = recording.id
        transcript = recording.transcript
        if transcript is None:
            await self._record_transcription_error(db, recording_id, error)
        elif recording.intent is None:
            await self._write_intent(db, recording_id, parse_fallback_intent(transcript), "fallback")

        logger.warning("Recording %s settled after its job was abandoned: %s", recording_id, error[:200])
        await self._notify_recording(db, recording_id, delivery_id)

    # ── Notifications ──────────────────────────────────────────────

    async def _agent_for(self, db: AsyncSession, delivery: Delivery | None) -> Agent | None:
        if delivery is None or delivery.agent_id is None:
            return None
        agent = await db.get(Agent, delivery.agent_id)
        if agent is None or not agent.is_active:
            return None
        return agent

    async def _notify_recording(self, db: AsyncSession, recording_id: UUID, delivery_id: UUID) -> bool:
        claimed = await db.execute(
            update(Recording)
            .where(and_(Recording.id == recording_id, Recording.notified_at.is_(None)))
            .values(notified_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount != 1:
            logger.info("Recording %s already notified", recording_id)
            return False

        delivery = await self._get_delivery(db, delivery_id)
        agent = await self._agent_for(db, delivery)
        if agent is None:
            logger.info("Delivery %s has no active agent; recording %s not announced", delivery_id, recording_id)
            return False

        recording = await self._get_recording(db, recording_id)
        customer = await db.get(Customer, delivery.customer_id)
        payload = {
            "delivery_id": str(delivery.id),
            "recording_id": str(recording.id),
            "address": delivery.address,
            "customer": customer.name if customer else None,
            "recording_url": recording.audio_url,
            "duration": recording.duration,
            "transcript": recording.transcript,
            "intent": recording.intent,
        }
        await self.notifications.notify(db, agent, NotificationKind.NEW_RECORDING, payload)
        return True

    async def _notify_call_outcome(self, db: AsyncSession, delivery_id: UUID, call_sid: str, status: str) -> None:
        delivery = await self._get_delivery(db, delivery_id)
        agent = await self._agent_for(db, delivery)
        if agent is None:
            return
        payload = {
            "delivery_id": str(delivery.id),
            "address": delivery.address,
            "status": delivery.status,
            "call_sid": call_sid,
            "call_status": status,
        }
        await self.notifications.notify(db, agent, NotificationKind.STATUS_UPDATE, payload)

    # ── State ──────────────────────────────────────────────────────

    async def pipeline_state(self, db: AsyncSession, delivery_id: UUID) -> PipelineState | None:
        """Derive the delivery's pipeline state from its latest call leg."""
        delivery = await self._get_delivery(db, delivery_id)
        if delivery is None:
            return None

        result = await db.execute(
            select(CallLog)
            .where(CallLog.delivery_id == delivery_id)
            .order_by(CallLog.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        call_log = result.scalar_one_or_none()
        if call_log is None:
            return PipelineState.FAILED if delivery.status == "failed" else PipelineState.IDLE

        recording = await self._recording_for(db, call_log.id)
        if recording is None:
            if call_log.status in UNSUCCESSFUL_CALL_STATUSES:
                return PipelineState.FAILED
            if call_log.recording_url:
                return PipelineState.RECORDING_READY
            if call_log.status in ("queued", "initiated"):
                return PipelineState.CALL_PLACED
            return PipelineState.CALL_LIVE

        if recording.notified_at is not None:
            return PipelineState.DONE
        if recording.intent is not None:
            return PipelineState.ANALYZED
        if recording.transcript:
            return PipelineState.TRANSCRIBED
        return PipelineState.AUDIO_PERSISTED
