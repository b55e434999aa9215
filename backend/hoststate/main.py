"""Host state backend application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hoststate.api.routes import hosts
from hoststate.config import settings
from hoststate.db import dispose_db, init_db
from hoststate.services.scheduler import build_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler()
        await scheduler.start()
    app.state.scheduler = scheduler
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")
    yield
    if scheduler is not None:
        await scheduler.stop()
    await dispose_db()


app = FastAPI(
    title="Host State API",
    description="Host state tracking and aggregation for an osquery fleet",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(hosts.router)


@app.get("/", tags=["health"])
async def root():
    """API health check."""
    return {
        "service": "Host State API",
        "status": "running",
        "docs": "/docs",
    }
