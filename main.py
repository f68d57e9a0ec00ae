"""
Session status API.

Read-only view of per-number session state plus the restart trigger
used by the admin UI. The runtime itself lives in worker.py.
"""
from contextlib import asynccontextmanager

import redis.asyncio as redis
import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi_limiter import FastAPILimiter

from config import get_settings, HEARTBEAT_PREFIX
from database import get_session_factory, dispose_engine
from logger_config import configure_logger
from services.store import StoreGateway
from routers import sessions

settings = get_settings()
logger = structlog.get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logger()

    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.APP_ENV)

    app.state.redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
    await FastAPILimiter.init(app.state.redis)
    app.state.store = StoreGateway(get_session_factory())
    logger.info("API ready", env=settings.APP_ENV)

    yield

    await app.state.redis.aclose()
    await dispose_engine()
    logger.info("API stopped")


app = FastAPI(title="WhatsApp Session Runtime", lifespan=lifespan)
app.include_router(sessions.router)


@app.get("/health")
async def health(request: Request):
    """Liveness of the API plus the runtimes that reported a heartbeat recently."""
    keys = await request.app.state.redis.keys(f"{HEARTBEAT_PREFIX}*")
    runtimes = sorted(key[len(HEARTBEAT_PREFIX):] for key in keys)
    return {"status": "ok", "runtimes": runtimes}
