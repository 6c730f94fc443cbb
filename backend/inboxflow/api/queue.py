"""
Processor invocation endpoint.

``POST /api/queue/process`` runs a targeted admission check when a
``group_id`` is given and a scan over every automation-enabled account
otherwise. Deferred groups are re-checked by the queue worker.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel, Field

from inboxflow.core.app_context import get_app_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


class ProcessQueueRequest(BaseModel):
    group_id: str | None = Field(default=None, description="Group to check; omit to scan")


class ProcessQueueResponse(BaseModel):
    mode: str
    results: list[dict[str, Any]]
    processed: int
    deferred: int
    failed: int


@router.post("/process", response_model=ProcessQueueResponse)
async def process_queue(
    request: Request,
    payload: ProcessQueueRequest | None = Body(default=None),
) -> ProcessQueueResponse:
    """Invoke the group processor for one group or for every ready group."""
    ctx = get_app_context(request.app)
    group_id = payload.group_id if payload else None
    results = await ctx.admission.invoke(group_id)
    logger.info(
        "Queue invocation (%s) returned %d result(s)",
        "targeted" if group_id else "scan",
        len(results),
    )
    return ProcessQueueResponse(
        mode="targeted" if group_id else "scan",
        results=[r.to_dict() for r in results],
        processed=sum(1 for r in results if r.decision == "processed"),
        deferred=sum(1 for r in results if r.decision == "deferred"),
        failed=sum(1 for r in results if r.decision == "failed"),
    )
