"""Call control endpoints consumed by the delivery CRUD layer."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import PipelineServices, get_services
from app.models.call_log import CallLog, ACTIVE_CALL_STATUSES
from app.models.delivery import Delivery
from app.models.recording import Recording
from app.schemas.call import InitiateCallRequest, CallLogOut, RecordingOut

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@router.post("/initiate")
async def initiate_call(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    """Queue an outbound call for a delivery."""
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be JSON")
    if not isinstance(body, dict) or not body.get("delivery_id"):
        return _error(400, "delivery_id is required")

    try:
        req = InitiateCallRequest.model_validate(body)
    except ValidationError:
        return _error(400, "Invalid delivery_id or delay")

    try:
        delivery = await db.get(Delivery, req.delivery_id)
        if delivery is None:
            return _error(404, "Delivery not found")

        result = await db.execute(
            select(CallLog.id).where(
                and_(CallLog.delivery_id == req.delivery_id, CallLog.status.in_(ACTIVE_CALL_STATUSES))
            )
        )
        if result.first() is not None:
            return _error(409, "A call is already in progress for this delivery")

        job = await services.queue.enqueue(
            db, "initiate-call", {"delivery_id": str(req.delivery_id)}, delay=req.delay
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Could not queue call for delivery %s: %s", req.delivery_id, e)
        return _error(503, "Queue unavailable")

    return {"success": True, "job_id": str(job.id), "status": "queued"}


@router.get("/{delivery_id}", response_model=list[CallLogOut])
async def list_delivery_calls(delivery_id: UUID, db: AsyncSession = Depends(get_db)):
    """Call legs for a delivery, newest first, each with its recording."""
    if await db.get(Delivery, delivery_id) is None:
        raise HTTPException(status_code=404, detail="Delivery not found")

    result = await db.execute(
        select(CallLog, Recording)
        .outerjoin(Recording, Recording.call_log_id == CallLog.id)
        .where(CallLog.delivery_id == delivery_id)
        .order_by(CallLog.created_at.desc())
    )

    calls = []
    for call_log, recording in result.all():
        out = CallLogOut.model_validate(call_log)
        if recording is not None:
            out.recording = RecordingOut.model_validate(recording)
        calls.append(out)
    return calls
