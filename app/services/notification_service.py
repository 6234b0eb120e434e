"""Agent notification fanout: web push, SMS and the agent's socket room.

Channels are attempted independently and are best-effort: each failure
is logged and swallowed, and nothing here gates pipeline progress.
"""

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agent import Agent
from app.services import push as push_results
from app.services.push import PushService
from app.services.realtime import RealtimeHub
from app.services.telephony import TelephonyService

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    NEW_RECORDING = "new-recording"
    STATUS_UPDATE = "status-update"
    NEW_DELIVERY = "new-delivery"
    EMERGENCY = "emergency"


@dataclass
class FanoutResult:
    push: str = push_results.SKIPPED
    sms: bool = False
    socket: int = 0


def render_message(kind: NotificationKind, payload: dict) -> tuple[str, str, str]:
    """Return (title, push body, SMS body) for a notification."""
    address = payload.get("address") or "the scheduled address"

    if kind == NotificationKind.NEW_RECORDING:
        body = f"New recording available for delivery at {address}"
        sms = f"New customer recording available for delivery at {address}. Check the app for details."
        return "New Customer Recording", body, sms

    if kind == NotificationKind.STATUS_UPDATE:
        if payload.get("call_status"):
            outcome = str(payload["call_status"]).replace("-", " ")
            body = f"Customer call for delivery at {address} ended: {outcome}"
            return "Delivery Status Update", body, body
        status = str(payload.get("status") or "updated").replace("_", " ")
        body = f"Delivery at {address} is now {status}"
        return "Delivery Status Update", body, body

    if kind == NotificationKind.NEW_DELIVERY:
        body = f"New delivery assigned: {address}"
        return "New Delivery Assigned", body, body

    message = payload.get("message") or f"Urgent attention needed for delivery at {address}"
    return "Emergency", message, f"URGENT: {message}"


class NotificationService:
    def __init__(self, push: PushService, telephony: TelephonyService, realtime: RealtimeHub):
        self.push = push
        self.telephony = telephony
        self.realtime = realtime

    async def notify(self, db: AsyncSession, agent: Agent, kind: NotificationKind, payload: dict) -> FanoutResult:
        kind = NotificationKind(kind)
        title, body, sms_body = render_message(kind, payload)
        result = FanoutResult()

        try:
            result.push = await self.push.send(
                agent.push_subscription, title, body, {"type": kind.value, **payload}
            )
            if result.push == push_results.EXPIRED:
                await self._invalidate_subscription(db, agent)
        except Exception as e:
            logger.error("Push notification to agent %s failed: %s", agent.id, e)
            result.push = push_results.FAILED

        try:
            result.sms = await self.telephony.send_sms(agent.phone, sms_body)
        except Exception as e:
            logger.error("SMS to agent %s failed: %s", agent.id, e)

        try:
            result.socket = await self.realtime.emit(agent.room, kind.value, payload)
        except Exception as e:
            logger.error("Socket emit to %s failed: %s", agent.room, e)

        logger.info(
            "Notified agent %s (%s): push=%s sms=%s socket=%d",
            agent.id,
            kind.value,
            result.push,
            result.sms,
            result.socket,
        )
        return result

    async def _invalidate_subscription(self, db: AsyncSession, agent: Agent) -> None:
        logger.info("Removing invalid push subscription for agent %s", agent.id)
        try:
            await db.execute(
                update(Agent)
                .where(Agent.id == agent.id)
                .values(push_subscription=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            agent.push_subscription = None
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Could not clear push subscription for agent %s: %s", agent.id, e)
