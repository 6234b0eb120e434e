"""Operator endpoints. All routes require the admin bearer token."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import PipelineServices, get_services, require_admin

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("/queue")
async def queue_stats(
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    """Job counts by disposition: waiting, active, completed, failed."""
    return await services.queue.stats(db)


@router.get("/deliveries/{delivery_id}/state")
async def delivery_pipeline_state(
    delivery_id: UUID,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    state = await services.coordinator.pipeline_state(db, delivery_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Delivery not found")
    return {"delivery_id": str(delivery_id), "state": state.value}
