import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.router import api_router
from app.core.config import configure_logging
from app.core.dependencies import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging()
    if not getattr(app.state, "services", None):
        app.state.services = build_services()
    app.state.services.realtime.start_relay()
    logger.info("Delivery call API started")
    yield
    await app.state.services.aclose()


app = FastAPI(
    title="Delivery Calls API",
    description="Pre-delivery customer calls: Twilio voice + recording pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "delivery-calls-api", "version": "0.1.0"}
