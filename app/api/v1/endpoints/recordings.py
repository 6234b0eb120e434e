"""Recording read and operator re-process endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import PipelineServices, get_services, require_admin
from app.models.call_log import CallLog
from app.models.delivery import Delivery
from app.models.recording import Recording
from app.schemas.call import RecordingOut
from app.services.cache import transcription_key, analysis_key

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/delivery/{delivery_id}", response_model=list[RecordingOut])
async def list_delivery_recordings(delivery_id: UUID, db: AsyncSession = Depends(get_db)):
    """Recordings across all call legs of a delivery, newest first."""
    if await db.get(Delivery, delivery_id) is None:
        raise HTTPException(status_code=404, detail="Delivery not found")

    result = await db.execute(
        select(Recording)
        .join(CallLog, CallLog.id == Recording.call_log_id)
        .where(CallLog.delivery_id == delivery_id)
        .order_by(Recording.created_at.desc())
    )
    return result.scalars().all()


@router.get("/{recording_id}", response_model=RecordingOut)
async def get_recording(recording_id: UUID, db: AsyncSession = Depends(get_db)):
    recording = await db.get(Recording, recording_id)
    if recording is None:
        raise HTTPException(status_code=404, detail="Recording not found")
    return recording


@router.post("/{recording_id}/reprocess", dependencies=[Depends(require_admin)])
async def reprocess_recording(
    recording_id: UUID,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    """Re-enter the pipeline after audio persistence: fill in a missing transcript or intent."""
    if await db.get(Recording, recording_id) is None:
        raise HTTPException(status_code=404, detail="Recording not found")

    await services.cache.delete(transcription_key(recording_id), analysis_key(recording_id))
    try:
        job = await services.queue.enqueue(
            db, "process-transcription", {"recording_id": str(recording_id), "reprocess": True}
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Could not queue reprocess for recording %s: %s", recording_id, e)
        return JSONResponse(status_code=503, content={"success": False, "error": "Queue unavailable"})

    logger.info("Recording %s queued for reprocessing as job %s", recording_id, job.id)
    return {"success": True, "job_id": str(job.id), "status": "queued"}
