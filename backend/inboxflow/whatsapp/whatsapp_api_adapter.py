from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import requests

from inboxflow.whatsapp.adapter import DispatchError
from inboxflow.whatsapp.types.message import InboundMessage, MetaMediaInfo

logger = logging.getLogger(__name__)

_MEDIA_TYPES = ("image", "audio", "video", "document")
# Meta reports voice notes and stickers under their own types
_TYPE_ALIASES = {"voice": "audio", "sticker": "image"}
_DEFAULT_CONTENT = {
    "image": "[Image]",
    "audio": "[Audio]",
    "video": "[Video]",
}


class WhatsAppApiAdapter:
    """WhatsApp Cloud API (Graph) sender bound to one business phone number."""

    provider = "meta"

    def __init__(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        graph_base_url: str = "https://graph.facebook.com/v22.0",
        timeout_seconds: float = 10.0,
    ) -> None:
        self.phone_number_id = phone_number_id
        self._access_token = access_token
        self._graph_base_url = graph_base_url.rstrip("/")
        self._timeout = timeout_seconds

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }

    def _post_message(self, payload: dict[str, Any]) -> str | None:
        url = f"{self._graph_base_url}/{self.phone_number_id}/messages"
        body = {"messaging_product": "whatsapp", "recipient_type": "individual", **payload}
        try:
            response = requests.post(url, headers=self._headers(), json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise DispatchError(f"Meta API unreachable: {exc}", provider=self.provider) from exc

        if response.status_code >= 300:
            raise DispatchError(
                f"Meta API error: {_meta_error_message(response)}",
                provider=self.provider,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            logger.warning("Meta accepted message for %s without a JSON body", payload.get("to"))
            return None
        messages = (data.get("messages") if isinstance(data, dict) else None) or []
        message_id = messages[0].get("id") if messages else None
        logger.debug("Meta message accepted for %s: %s", payload.get("to"), message_id)
        return message_id

    def send_text(self, to_phone: str, text: str) -> str | None:
        return self._post_message({"to": to_phone, "type": "text", "text": {"body": text}})

    def send_media(
        self, to_phone: str, media_type: str, media_url: str, caption: str | None = None
    ) -> str | None:
        if media_type not in _MEDIA_TYPES:
            raise DispatchError(f"Unsupported media type: {media_type}", provider=self.provider)
        media: dict[str, Any] = {"link": media_url}
        if caption and media_type != "audio":
            media["caption"] = caption
        return self._post_message({"to": to_phone, "type": media_type, media_type: media})

    # --- Media download (used by the media resolver)

    def get_media_info(self, media_id: str) -> MetaMediaInfo:
        response = requests.get(
            f"{self._graph_base_url}/{media_id}", headers=self._headers(), timeout=self._timeout
        )
        response.raise_for_status()
        data = response.json()
        return MetaMediaInfo(
            url=data["url"],
            mime_type=data.get("mime_type"),
            file_size=data.get("file_size"),
        )

    def download_media(self, url: str) -> bytes:
        response = requests.get(
            url, headers={"Authorization": f"Bearer {self._access_token}"}, timeout=30
        )
        response.raise_for_status()
        return response.content


def _meta_error_message(response: requests.Response) -> str:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return response.text
    return error.get("message") or error.get("error_user_msg") or response.text


def verify_signature(app_secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check Meta's ``X-Hub-Signature-256`` header against the raw body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.split("=", 1)[1])


def verify_webhook(mode: str | None, token: str | None, challenge: str | None, verify_token: str) -> str | None:
    """Verify webhook challenge for WhatsApp Cloud API."""
    if mode == "subscribe" and token == verify_token and challenge is not None:
        logger.info("WhatsApp webhook verified successfully")
        return challenge
    logger.warning(
        "WhatsApp webhook verification failed: mode=%s, token_valid=%s",
        mode,
        token == verify_token,
    )
    return None


def default_content(message_type: str, caption: str | None, filename: str | None = None) -> str:
    if caption:
        return caption
    if message_type == "document":
        return f"[Document: {filename or 'file'}]"
    return _DEFAULT_CONTENT.get(message_type, "")


def extract_inbound_messages(webhook_data: dict[str, Any]) -> list[InboundMessage]:
    """Flatten a Cloud API webhook body into inbound customer messages.

    Structure::

        {"object": "whatsapp_business_account",
         "entry": [{"changes": [{"field": "messages",
                                 "value": {"metadata": {...}, "contacts": [...],
                                           "messages": [...]}}]}]}

    Status callbacks and unsupported message types are skipped.
    """
    extracted: list[InboundMessage] = []
    for entry in webhook_data.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field") != "messages":
                continue
            value = change.get("value") or {}
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            if not phone_number_id:
                continue
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
            }
            for message in value.get("messages") or []:
                parsed = _parse_message(message, phone_number_id, names)
                if parsed is not None:
                    extracted.append(parsed)
    return extracted


def _parse_message(
    message: dict[str, Any], phone_number_id: str, names: dict[str, str | None]
) -> InboundMessage | None:
    raw_type = message.get("type", "text")
    message_type = _TYPE_ALIASES.get(raw_type, raw_type)
    sender = message.get("from", "")
    message_id = message.get("id")
    if not sender or not message_id:
        return None

    media_id = mime_type = filename = None
    if message_type == "text":
        content = (message.get("text") or {}).get("body", "")
    elif message_type == "button":
        message_type = "text"
        content = (message.get("button") or {}).get("text", "")
    elif message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        message_type = "text"
        content = reply.get("title", "")
    elif message_type in _MEDIA_TYPES:
        media = message.get(raw_type) or {}
        media_id = media.get("id")
        mime_type = media.get("mime_type")
        filename = media.get("filename")
        content = default_content(message_type, media.get("caption"), filename)
    else:
        logger.info("Skipping unsupported WhatsApp message type %s (%s)", raw_type, message_id)
        return None

    return InboundMessage(
        phone_number_id=phone_number_id,
        sender_phone=sender,
        sender_name=names.get(sender),
        whatsapp_message_id=message_id,
        message_type=message_type,
        content=content,
        timestamp=message.get("timestamp"),
        media_id=media_id,
        mime_type=mime_type,
        filename=filename,
        quoted_message_id=(message.get("context") or {}).get("id"),
    )
