import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from coachbook.api import bookings, coaches, health, jobs
from coachbook.config import settings
from coachbook.models.database import init_db
from coachbook.services.database_service import database_service
from coachbook.services.feed import snapshot_cache, snapshot_feed

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()

    if not settings.scheduler_api_key and not settings.scheduler_service_account:
        logger.warning(
            "Neither SCHEDULER_API_KEY nor SCHEDULER_SERVICE_ACCOUNT is configured. "
            "The /jobs/expire-pending-payments endpoint will reject API-key callers."
        )

    follower = asyncio.create_task(snapshot_cache.follow(snapshot_feed))
    if await database_service.publish_snapshot() is None:
        logger.warning("Initial schedule snapshot could not be loaded; serving an empty schedule")

    yield

    follower.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await follower


app = FastAPI(
    title="CoachBook",
    description="Coaching session booking and availability engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(coaches.router)
app.include_router(bookings.router)
app.include_router(jobs.router)
