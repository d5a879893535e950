"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from streakkeeper.config import settings
from streakkeeper.core.errors import StreakError, streak_error_handler
from streakkeeper.core.logging import configure_logging
from streakkeeper.db.database import async_session, engine, Base
from streakkeeper.db.redis import close_redis, get_redis_client
from streakkeeper.services.collaborators import ManualConnectivity
from streakkeeper.services.streak_engine import StreakEngine
from streakkeeper.storage.local_cache import LocalCache
from streakkeeper.storage.remote import RemoteStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.APP_ENV, settings.LOG_LEVEL)

    # Startup: create tables (dev only; use Alembic in production)
    async with engine.begin() as conn:
        import streakkeeper.models  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)

    app.state.engine = StreakEngine(
        RemoteStore(async_session),
        LocalCache(get_redis_client()),
        connectivity=ManualConnectivity(),
    )
    log.info("Streak engine ready (env=%s)", settings.APP_ENV)
    yield
    # Shutdown: close connections
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title="StreakKeeper API",
    description="Relationship streak engine - streaks, milestones, rewards and offline sync",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(StreakError, streak_error_handler)

# --- Routes ---
from streakkeeper.api.routes import streaks  # noqa: E402

app.include_router(streaks.router, prefix="/api/streaks", tags=["streaks"])


@app.get("/health")
async def health_check():
    return {"status": "ok"}
