from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, Required, TypedDict, TypeGuard


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """One customer message extracted from a Cloud API webhook."""

    phone_number_id: str
    sender_phone: str
    whatsapp_message_id: str
    message_type: str
    content: str
    sender_name: str | None = None
    timestamp: str | None = None
    media_id: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    quoted_message_id: str | None = None

    @property
    def has_media(self) -> bool:
        return self.message_type != "text"


@dataclass(frozen=True, slots=True)
class MetaMediaInfo:
    url: str
    mime_type: str | None = None
    file_size: int | None = None


class QuotedMetadata(TypedDict):
    id: Required[str]
    type: Required[str]
    content: Required[str]
    sender: Required[str]
    imageUrl: NotRequired[str | None]
    audioUrl: NotRequired[str | None]


def is_cloud_api_payload(data: Any) -> TypeGuard[dict[str, Any]]:
    """Runtime type guard for a WhatsApp Business Account webhook body.

    Use at the webhook boundary before extracting messages.
    """
    if not isinstance(data, dict):
        return False
    if data.get("object") != "whatsapp_business_account":
        return False
    return isinstance(data.get("entry"), list)
