"""Twilio webhook handlers.

Thin HTTP layer: every request is signature-checked, then either
enqueued for the worker (recording, transcription) or applied inline
(call-status). A 2xx is only returned once the event is durable.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.twiml.voice_response import VoiceResponse

from app.core.config import settings
from app.core.database import get_db
from app.core.dependencies import PipelineServices, get_services
from app.core.errors import PipelineError
from app.schemas.jobs import ProcessRecordingPayload, ProcessTranscriptionPayload

router = APIRouter()
logger = logging.getLogger(__name__)

RECORDING_THANKS = "Thank you. Your delivery instructions have been recorded. Goodbye."


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _xml(twiml: str) -> Response:
    return Response(content=twiml, media_type="application/xml")


def signed_url(request: Request) -> str:
    """The URL Twilio signed: BASE_URL + path + query when behind a proxy."""
    if not settings.BASE_URL:
        return str(request.url)
    url = settings.BASE_URL.rstrip("/") + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


async def _verified_form(request: Request, services: PipelineServices) -> dict | None:
    form = await request.form()
    params = {key: value for key, value in form.items()}
    signature = request.headers.get("X-Twilio-Signature")
    if not services.telephony.validate_webhook(signature, signed_url(request), params):
        logger.warning("Rejected webhook with invalid signature: %s", request.url.path)
        return None
    return params


def _delivery_id(request: Request) -> str | None:
    return request.query_params.get("delivery_id") or None


@router.api_route("/voice", methods=["GET", "POST"])
async def voice_webhook(request: Request, services: PipelineServices = Depends(get_services)):
    """Answered leg: prompt the customer and record their instructions."""
    if await _verified_form(request, services) is None:
        return _error(401, "Invalid signature")

    delivery_id = _delivery_id(request)
    logger.info("Voice webhook for delivery %s", delivery_id)
    return _xml(services.telephony.voice_response(delivery_id))


@router.post("/recording")
async def recording_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    """Record action callback: enqueue process-recording and end the call."""
    params = await _verified_form(request, services)
    if params is None:
        return _error(401, "Invalid signature")

    try:
        payload = ProcessRecordingPayload.model_validate(
            {
                "call_sid": params.get("CallSid"),
                "recording_url": params.get("RecordingUrl"),
                "recording_duration": params.get("RecordingDuration"),
                "recording_sid": params.get("RecordingSid"),
                "delivery_id": _delivery_id(request),
            }
        )
    except ValidationError as e:
        logger.warning("Malformed recording webhook: %s", e.errors())
        return _error(400, "Missing or invalid recording fields")

    try:
        job = await services.queue.enqueue(db, "process-recording", payload.model_dump(mode="json"))
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Could not enqueue recording for call %s: %s", payload.call_sid, e)
        return _error(503, "Queue unavailable")

    logger.info("Recording for call %s queued as job %s", payload.call_sid, job.id)
    twiml = VoiceResponse()
    twiml.say(RECORDING_THANKS, voice="alice")
    twiml.hangup()
    return _xml(str(twiml))


@router.post("/transcription")
async def transcription_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    params = await _verified_form(request, services)
    if params is None:
        return _error(401, "Invalid signature")

    try:
        payload = ProcessTranscriptionPayload.model_validate(
            {
                "call_sid": params.get("CallSid"),
                "transcription_text": params.get("TranscriptionText"),
                "delivery_id": _delivery_id(request),
            }
        )
    except ValidationError as e:
        logger.warning("Malformed transcription webhook: %s", e.errors())
        return _error(400, "Missing or invalid transcription fields")

    try:
        job = await services.queue.enqueue(db, "process-transcription", payload.model_dump(mode="json"))
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Could not enqueue transcription for call %s: %s", payload.call_sid, e)
        return _error(503, "Queue unavailable")

    return {"success": True, "job_id": str(job.id)}


@router.post("/call-status")
async def call_status_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    params = await _verified_form(request, services)
    if params is None:
        return _error(401, "Invalid signature")

    call_sid = params.get("CallSid")
    call_status = params.get("CallStatus")
    if not call_sid or not call_status:
        return _error(400, "CallSid and CallStatus are required")

    duration = None
    if params.get("CallDuration"):
        try:
            duration = int(params["CallDuration"])
        except ValueError:
            return _error(400, "CallDuration must be an integer")

    delivery_id = None
    if _delivery_id(request):
        try:
            delivery_id = UUID(_delivery_id(request))
        except ValueError:
            return _error(400, "Invalid delivery_id")

    logger.info("Call status update: %s - %s", call_sid, call_status)
    try:
        call_log = await services.coordinator.apply_call_status(db, call_sid, call_status, duration, delivery_id)
    except (SQLAlchemyError, PipelineError) as e:
        await db.rollback()
        logger.error("Could not record status %s for call %s: %s", call_status, call_sid, e)
        return _error(503, "Database unavailable")

    return {"success": True, "status": call_log.status if call_log else None}
