from fastapi import APIRouter
from app.api.v1.endpoints import webhooks, calls, recordings, admin, realtime, push

api_router = APIRouter()
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(calls.router, prefix="/calls", tags=["calls"])
api_router.include_router(recordings.router, prefix="/recordings", tags=["recordings"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
api_router.include_router(push.router, prefix="/push", tags=["push"])
