"""WhatsApp Cloud API webhook handlers."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import BackgroundTasks, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from inboxflow.core.app_context import AppContext, get_app_context
from inboxflow.services.group_admission import GroupAdmission
from inboxflow.services.media_resolver import MediaJob
from inboxflow.settings import get_settings
from inboxflow.whatsapp.types.message import is_cloud_api_payload
from inboxflow.whatsapp.webhook_db_handler import EnqueuedMessage, enqueue_inbound_message
from inboxflow.whatsapp.whatsapp_api_adapter import (
    extract_inbound_messages,
    verify_signature,
    verify_webhook,
)

logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> str:
    return request.headers.get(
        "x-forwarded-for", request.client.host if request.client else "unknown"
    )


def resolve_media(ctx: AppContext, enqueued: EnqueuedMessage) -> None:
    """Background task: republish one message's media and finalize its queue row."""
    fetcher = ctx.media_fetcher_factory(enqueued.phone_number_id, enqueued.access_token)
    ctx.media_resolver.resolve(
        MediaJob(
            queued_message_id=enqueued.queued_message_id,
            user_id=enqueued.user_id,
            message_type=enqueued.message_type,
            media_id=enqueued.media_id,  # type: ignore[arg-type]
            whatsapp_message_id=enqueued.whatsapp_message_id,
            mime_type=enqueued.mime_type,
        ),
        fetcher,
    )


async def trigger_group_check(admission: GroupAdmission, group_id: str) -> None:
    """Background task: targeted processor invocation for a freshly touched group."""
    try:
        result = await admission.check_group(group_id)
    except Exception as e:
        logger.error("Processor invocation for group %s failed: %s", group_id, e)
        return
    logger.info("Processor invocation for group %s: %s", group_id, result.decision)


async def _ingest(request: Request, background_tasks: BackgroundTasks, signature: str | None) -> None:
    settings = get_settings()
    body = await request.body()
    if settings.whatsapp_app_secret and not verify_signature(
        settings.whatsapp_app_secret, body, signature
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        data = json.loads(body or b"{}")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e
    if not is_cloud_api_payload(data):
        logger.info("Ignoring non WhatsApp Business Account payload")
        return

    ctx = get_app_context(request.app)
    touched_groups: list[str] = []
    for message in extract_inbound_messages(data):
        enqueued = await asyncio.to_thread(
            enqueue_inbound_message,
            message,
            session_factory=ctx.session_factory,
            lock_stale_seconds=ctx.lock_stale_seconds,
        )
        if enqueued is None:
            continue
        if enqueued.needs_media:
            background_tasks.add_task(resolve_media, ctx, enqueued)
        if enqueued.group_id not in touched_groups:
            touched_groups.append(enqueued.group_id)

    # Media tasks are queued first; a group invoked early simply defers
    for group_id in touched_groups:
        background_tasks.add_task(trigger_group_check, ctx.admission, group_id)


async def handle_whatsapp_webhook(
    request: Request, background_tasks: BackgroundTasks, x_hub_signature: str | None
) -> Response:
    """
    Accept a Cloud API webhook delivery.

    Always answers ``200 ok`` so Meta does not redeliver; validation failures
    and unexpected errors are logged with the caller's address instead.
    """
    try:
        await _ingest(request, background_tasks, x_hub_signature)
    except HTTPException as e:
        if e.status_code == status.HTTP_403_FORBIDDEN:
            logger.warning("WhatsApp webhook invalid signature from IP %s", _client_ip(request))
        else:
            logger.warning(
                "WhatsApp webhook validation error %d from IP %s: %s",
                e.status_code,
                _client_ip(request),
                e.detail,
            )
    except Exception as e:
        logger.error(
            "Unexpected error processing WhatsApp webhook from IP %s: %s", _client_ip(request), e
        )
    return PlainTextResponse("ok")


async def handle_whatsapp_webhook_verification(
    hub_mode: str | None, hub_challenge: str | None, hub_verify_token: str | None
) -> Response:
    """Handle WhatsApp webhook verification for Cloud API."""
    settings = get_settings()
    challenge = verify_webhook(
        hub_mode, hub_verify_token, hub_challenge, settings.whatsapp_verify_token
    )
    if challenge is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(challenge, status_code=200)
