from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from inboxflow.core.app_context import AppContext, get_app_context, set_app_context
from inboxflow.core.logging import RequestIdMiddleware, setup_logging
from inboxflow.db.base import Base
from inboxflow.db.session import get_engine
from inboxflow.router import api_router
from inboxflow.settings import get_settings
from inboxflow.wiring import build_app_context

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup/shutdown: ensure tables, run the deferred re-check worker."""
    settings = get_settings()

    try:
        Base.metadata.create_all(bind=get_engine())
        logger.info("Database tables ensured (create_all)")
    except Exception as e:
        logger.warning("Failed to create DB tables on startup: %s", e)

    ctx = get_app_context(app)
    stop = asyncio.Event()
    worker_task: asyncio.Task[None] | None = None
    if settings.run_queue_worker and ctx.worker is not None:
        worker_task = asyncio.create_task(ctx.worker.run_forever(stop))

    yield

    stop.set()
    if worker_task is not None:
        with contextlib.suppress(asyncio.CancelledError):
            await worker_task
    logger.info("Application shutting down")


def create_app(ctx: AppContext | None = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Inboxflow API",
        version="0.1.0",
        description="Groups inbound WhatsApp messages and relays them to an agent webhook",
        lifespan=lifespan,
    )
    app.add_middleware(RequestIdMiddleware)
    set_app_context(app, ctx or build_app_context(settings))

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    app.include_router(api_router)

    media_dir = Path(settings.media_storage_dir)
    media_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=media_dir), name="media")
    return app


app = create_app()
