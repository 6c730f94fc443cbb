"""Consolidated payload sent to an account's agent webhook for one group.

Keys are camelCase and mirror what existing agent workflows already consume;
renaming any of them breaks deployed agents.
"""

from __future__ import annotations

import base64
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from inboxflow.db.models import MessageType
from inboxflow.db.types import QueuedMessageSnapshot
from inboxflow.services.account_context import AccountConfig, ConversationContext

DEFAULT_AGENT_NAME = "Asistente Virtual"
DEFAULT_PROACTIVITY_LEVEL = "reactive"
DEFAULT_CUSTOMER_TREATMENT = "tu"
DEFAULT_WELCOME_MESSAGE = "Hola! Soy tu asistente virtual, ¿en qué puedo ayudarte hoy?"
DEFAULT_CALL_TO_ACTION = "¿Te gustaría que procese tu pedido?"
DEFAULT_SALES_MODE = "advise_only"
DEFAULT_PAYMENT_METHODS = "both"


def user_hash(email: str) -> str:
    return base64.b64encode(email.encode()).decode()


def store_url(store: dict[str, Any] | None, store_base_url: str) -> str | None:
    if not store:
        return None
    if store.get("customDomain"):
        return f"https://{store['customDomain']}"
    if store.get("storeSlug"):
        return f"{store_base_url.rstrip('/')}/{store['storeSlug']}"
    return None


def format_messages(rows: Sequence[QueuedMessageSnapshot]) -> list[dict[str, Any]]:
    ordered = sorted(rows, key=lambda r: r.sequence_number)
    return [
        {
            "type": row.message_type.value,
            "content": row.message_content,
            "mediaUrl": row.media_public_url,
            "timestamp": row.received_at.isoformat(),
            "quotedMessage": row.quoted_metadata,
            "sequenceNumber": row.sequence_number,
        }
        for row in ordered
    ]


def build_agent_payload(
    *,
    group_id: str,
    rows: Sequence[QueuedMessageSnapshot],
    account: AccountConfig,
    conversation: ConversationContext,
    featured_products: list[dict[str, Any]],
    store_base_url: str,
    now: datetime,
) -> dict[str, Any]:
    messages = format_messages(rows)

    image_url = None
    audio_url = None
    for message in messages:
        if message["type"] == MessageType.image.value and message["mediaUrl"]:
            image_url = message["mediaUrl"]
        elif message["type"] == MessageType.audio.value and message["mediaUrl"]:
            audio_url = message["mediaUrl"]

    quoted = next((m["quotedMessage"] for m in messages if m["quotedMessage"]), None)
    url = store_url(account.store, store_base_url)
    store = dict(account.store, shippingRates=account.shipping_rates, url=url) if account.store else None
    customer_name = conversation.customer_name or "Unknown"
    customer_phone = conversation.customer_phone or ""

    return {
        "userEmail": account.email,
        "userId": str(account.user_id),
        "userHash": user_hash(account.email),
        "customerName": customer_name,
        "customerPhone": customer_phone,
        "customerUid": str(conversation.customer_id),
        "customer": {
            "id": str(conversation.customer_id),
            "name": customer_name,
            "phone": customer_phone,
            "email": conversation.customer_email,
            "address": conversation.customer_address,
            "city": conversation.customer_city,
            "province": conversation.customer_province,
        },
        "messageContent": "\n".join(m["content"] for m in messages),
        "messageType": messages[0]["type"] if messages else MessageType.text.value,
        "messages": messages,
        "messageCount": len(messages),
        "imagen": image_url,
        "audio": audio_url,
        "hasImagen": image_url is not None,
        "hasAudio": audio_url is not None,
        "quotedMessage": quoted,
        "storeInfo": account.store_info or "",
        "storeUrl": url,
        "website": account.website or "",
        "store": store,
        "agentName": account.agent_name or DEFAULT_AGENT_NAME,
        "proactivityLevel": account.proactivity_level or DEFAULT_PROACTIVITY_LEVEL,
        "customerTreatment": account.customer_treatment or DEFAULT_CUSTOMER_TREATMENT,
        "welcomeMessage": account.welcome_message or DEFAULT_WELCOME_MESSAGE,
        "callToAction": account.call_to_action or DEFAULT_CALL_TO_ACTION,
        "specialInstructions": account.special_instructions or "",
        "salesMode": account.sales_mode or DEFAULT_SALES_MODE,
        "paymentMethods": account.payment_methods or DEFAULT_PAYMENT_METHODS,
        "paymentAccounts": account.payment_accounts,
        "shippingRates": account.shipping_rates,
        "featuredProducts": featured_products,
        "chatId": str(conversation.chat_id),
        "groupId": group_id,
        "timestamp": now.isoformat(),
    }
