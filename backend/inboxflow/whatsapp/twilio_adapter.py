from __future__ import annotations

import logging

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from inboxflow.whatsapp.adapter import DispatchError

logger = logging.getLogger(__name__)


class TwilioWhatsAppAdapter:
    """Secondary outbound provider for chats without a Cloud API binding."""

    provider = "twilio"

    def __init__(self, *, account_sid: str, auth_token: str, from_number: str, client: TwilioClient | None = None) -> None:
        self._client = client or TwilioClient(account_sid, auth_token)
        self._from = _whatsapp_address(from_number)

    def send_text(self, to_phone: str, text: str) -> str | None:
        return self._create(to_phone, body=text)

    def send_media(
        self, to_phone: str, media_type: str, media_url: str, caption: str | None = None
    ) -> str | None:
        return self._create(to_phone, body=caption or "", media_url=[media_url])

    def _create(self, to_phone: str, **kwargs: object) -> str | None:
        try:
            message = self._client.messages.create(
                from_=self._from, to=_whatsapp_address(to_phone), **kwargs
            )
        except TwilioException as exc:
            raise DispatchError(
                f"Twilio error: {exc}",
                provider=self.provider,
                status_code=getattr(exc, "status", None),
            ) from exc
        logger.debug("Twilio message queued for %s: %s", to_phone, message.sid)
        return message.sid


def _whatsapp_address(phone: str) -> str:
    if phone.startswith("whatsapp:"):
        return phone
    digits = phone.lstrip("+")
    return f"whatsapp:+{digits}"
