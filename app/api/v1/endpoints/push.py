"""Agent web push registration.

Subscribe and unsubscribe are called by the agent-facing gateway with the
service bearer token; the browser only needs the public VAPID key.
"""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import PipelineServices, get_services, require_admin
from app.models.agent import Agent
from app.schemas.push import PushSubscribeRequest
from app.services.push import SENT

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def _set_subscription(db: AsyncSession, agent_id: UUID, subscription: dict | None) -> bool:
    result = await db.execute(
        update(Agent)
        .where(Agent.id == agent_id)
        .values(push_subscription=subscription, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


@router.get("/vapid-public-key")
async def vapid_public_key(services: PipelineServices = Depends(get_services)):
    if not services.push.vapid_public_key:
        return _error(500, "VAPID keys not configured")
    return {"publicKey": services.push.vapid_public_key}


@router.post("/agents/{agent_id}/subscribe", dependencies=[Depends(require_admin)])
async def subscribe(agent_id: UUID, request: Request, db: AsyncSession = Depends(get_db)):
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be JSON")
    if not isinstance(body, dict) or not body.get("subscription"):
        return _error(400, "Push subscription is required")
    try:
        req = PushSubscribeRequest.model_validate(body)
    except ValidationError:
        return _error(400, "Push subscription needs an endpoint and p256dh/auth keys")

    try:
        saved = await _set_subscription(db, agent_id, req.subscription.model_dump(exclude_none=True))
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Could not save push subscription for agent %s: %s", agent_id, e)
        return _error(503, "Database unavailable")
    if not saved:
        return _error(404, "Agent not found")

    logger.info("Push subscription saved for agent %s", agent_id)
    return {"success": True, "message": "Push subscription saved successfully"}


@router.post("/agents/{agent_id}/unsubscribe", dependencies=[Depends(require_admin)])
async def unsubscribe(agent_id: UUID, db: AsyncSession = Depends(get_db)):
    try:
        removed = await _set_subscription(db, agent_id, None)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Could not remove push subscription for agent %s: %s", agent_id, e)
        return _error(503, "Database unavailable")
    if not removed:
        return _error(404, "Agent not found")

    logger.info("Push subscription removed for agent %s", agent_id)
    return {"success": True, "message": "Push subscription removed successfully"}


@router.post("/agents/{agent_id}/test", dependencies=[Depends(require_admin)])
async def send_test_notification(
    agent_id: UUID,
    db: AsyncSession = Depends(get_db),
    services: PipelineServices = Depends(get_services),
):
    agent = await db.get(Agent, agent_id)
    if agent is None:
        return _error(404, "Agent not found")

    outcome = await services.push.send(
        agent.push_subscription,
        "Test Notification",
        "This is a test push notification",
        {"type": "test", "timestamp": datetime.utcnow().isoformat()},
    )
    if outcome != SENT:
        return _error(502, f"Test notification not sent: {outcome}")
    return {"success": True, "message": "Test notification sent"}
