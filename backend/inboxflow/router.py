from __future__ import annotations

from fastapi import APIRouter

from inboxflow.api.queue import router as queue_router
from inboxflow.whatsapp.router import router as whatsapp_router

api_router = APIRouter(prefix="/api")

# Mount channel/feature routers here
api_router.include_router(whatsapp_router)
api_router.include_router(queue_router)
