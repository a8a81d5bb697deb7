"""
Calendar Sync Service - Main Application
Timeslots, bookings, external calendar sync and conflict resolution
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables FIRST before importing modules that need them
load_dotenv()

from calsync import __version__, config  # noqa: E402
from calsync.api import (  # noqa: E402
    appointments_api,
    calendar_sync_api,
    conflicts_api,
    timeslots_api,
    timezone_api,
)
from calsync.api.dependencies import get_container  # noqa: E402
from calsync.api.errors import register_error_handlers  # noqa: E402
from calsync.utils.logging_config import configure_logging  # noqa: E402

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    container = get_container()
    logger.info(f"Starting calsync {__version__} (stores={config.STORE_BACKEND}, guard={config.SYNC_GUARD_BACKEND})")
    yield
    logger.info("Shutting down calsync")
    await container.sync.aclose()
    await container.collaborators.drain()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Calendar Sync API",
        description="Multi-provider calendar sync with timeslots, buffers and conflict resolution",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(timeslots_api.router)
    app.include_router(appointments_api.router)
    app.include_router(calendar_sync_api.router)
    app.include_router(conflicts_api.router)
    app.include_router(timezone_api.router)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
