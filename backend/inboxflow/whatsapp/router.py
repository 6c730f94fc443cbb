from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Header, Query, Request, Response

from .webhook import handle_whatsapp_webhook, handle_whatsapp_webhook_verification

router = APIRouter()


@router.post("/webhooks/whatsapp")
async def whatsapp_webhook_post(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature: str | None = Header(default=None, alias="X-Hub-Signature-256"),
) -> Response:
    """Handle incoming WhatsApp Cloud API messages (POST)."""
    return await handle_whatsapp_webhook(request, background_tasks, x_hub_signature)


@router.get("/webhooks/whatsapp")
async def whatsapp_webhook_get(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
) -> Response:
    """Handle WhatsApp webhook verification (GET)."""
    return await handle_whatsapp_webhook_verification(hub_mode, hub_challenge, hub_verify_token)
