"""Service wiring and FastAPI dependencies."""

import hmac
import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings
from app.services.cache import ResultCache
from app.services.media_store import MediaStore
from app.services.notification_service import NotificationService
from app.services.pipeline import PipelineCoordinator
from app.services.push import PushService
from app.services.queue import JobQueue
from app.services.realtime import RealtimeHub
from app.services.speech import SpeechService
from app.services.telephony import TelephonyService

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass
class PipelineServices:
    queue: JobQueue
    cache: ResultCache
    telephony: TelephonyService
    media: MediaStore
    speech: SpeechService
    push: PushService
    realtime: RealtimeHub
    notifications: NotificationService
    coordinator: PipelineCoordinator

    async def aclose(self) -> None:
        await self.realtime.close()
        await self.speech.close()
        await self.media.close()
        await self.cache.close()
        self.telephony.close()


def build_services() -> PipelineServices:
    """Construct every adapter from settings. Missing credentials disable the adapter."""
    cache = ResultCache.from_url(settings.REDIS_URL)
    telephony = TelephonyService.from_settings()
    media = MediaStore.from_settings()
    speech = SpeechService.from_settings(cache)
    push = PushService.from_settings()
    realtime = RealtimeHub.from_url(settings.REDIS_URL)
    notifications = NotificationService(push, telephony, realtime)
    coordinator = PipelineCoordinator(telephony, media, speech, cache, notifications)
    return PipelineServices(
        queue=JobQueue(),
        cache=cache,
        telephony=telephony,
        media=media,
        speech=speech,
        push=push,
        realtime=realtime,
        notifications=notifications,
        coordinator=coordinator,
    )


def get_services(request: Request) -> PipelineServices:
    return request.app.state.services


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Bearer-token check for operator endpoints."""
    if not settings.ADMIN_API_TOKEN:
        logger.warning("ADMIN_API_TOKEN not configured - rejecting admin request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin access not configured")

    if credentials is None or not hmac.compare_digest(credentials.credentials, settings.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
