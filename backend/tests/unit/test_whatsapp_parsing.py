"""Cloud API webhook parsing, signature and verification helpers."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from inboxflow.whatsapp.types.message import is_cloud_api_payload
from inboxflow.whatsapp.whatsapp_api_adapter import (
    default_content,
    extract_inbound_messages,
    verify_signature,
    verify_webhook,
)


def cloud_payload(*messages, phone_number_id="1098765", contacts=None):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "15550001", "phone_number_id": phone_number_id},
                            "contacts": contacts
                            if contacts is not None
                            else [{"wa_id": "5215550001111", "profile": {"name": "Ana"}}],
                            "messages": list(messages),
                        },
                    }
                ],
            }
        ],
    }


@pytest.mark.unit
def test_text_message_is_extracted():
    payload = cloud_payload(
        {"from": "5215550001111", "id": "wamid.A", "timestamp": "1700000000", "type": "text", "text": {"body": "hola"}}
    )

    [message] = extract_inbound_messages(payload)

    assert message.phone_number_id == "1098765"
    assert message.sender_phone == "5215550001111"
    assert message.sender_name == "Ana"
    assert message.message_type == "text"
    assert message.content == "hola"
    assert message.media_id is None


@pytest.mark.unit
def test_media_types_get_default_content_and_aliases():
    payload = cloud_payload(
        {"from": "521", "id": "wamid.1", "type": "image", "image": {"id": "M1", "mime_type": "image/jpeg"}},
        {"from": "521", "id": "wamid.2", "type": "voice", "voice": {"id": "M2", "mime_type": "audio/ogg"}},
        {"from": "521", "id": "wamid.3", "type": "document", "document": {"id": "M3", "filename": "cotizacion.pdf"}},
        {"from": "521", "id": "wamid.4", "type": "video", "video": {"id": "M4", "caption": "mira"}},
        {"from": "521", "id": "wamid.5", "type": "sticker", "sticker": {"id": "M5"}},
    )

    parsed = [(m.message_type, m.content, m.media_id) for m in extract_inbound_messages(payload)]

    assert parsed == [
        ("image", "[Image]", "M1"),
        ("audio", "[Audio]", "M2"),
        ("document", "[Document: cotizacion.pdf]", "M3"),
        ("video", "mira", "M4"),
        ("image", "[Image]", "M5"),
    ]


@pytest.mark.unit
def test_quoted_context_and_interactive_replies():
    payload = cloud_payload(
        {
            "from": "521",
            "id": "wamid.r",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "b1", "title": "Sí, lo quiero"}},
            "context": {"from": "15550001", "id": "wamid.original"},
        }
    )

    [message] = extract_inbound_messages(payload)

    assert message.message_type == "text"
    assert message.content == "Sí, lo quiero"
    assert message.quoted_message_id == "wamid.original"


@pytest.mark.unit
def test_status_callbacks_and_unsupported_types_are_skipped():
    payload = cloud_payload({"from": "521", "id": "wamid.loc", "type": "location", "location": {}})
    payload["entry"][0]["changes"].append({"field": "statuses", "value": {"statuses": [{"id": "x"}]}})

    assert extract_inbound_messages(payload) == []


@pytest.mark.unit
def test_payload_guard():
    assert is_cloud_api_payload(cloud_payload())
    assert not is_cloud_api_payload({"object": "page", "entry": []})
    assert not is_cloud_api_payload([])


@pytest.mark.unit
def test_signature_verification():
    body = b'{"object":"whatsapp_business_account"}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    assert verify_signature("app-secret", body, f"sha256={digest}")
    assert not verify_signature("app-secret", body, "sha256=deadbeef")
    assert not verify_signature("app-secret", body, None)


@pytest.mark.unit
def test_webhook_verification_handshake():
    assert verify_webhook("subscribe", "verify-me", "12345", "verify-me") == "12345"
    assert verify_webhook("subscribe", "wrong", "12345", "verify-me") is None
    assert verify_webhook("unsubscribe", "verify-me", "12345", "verify-me") is None


@pytest.mark.unit
def test_default_content_prefers_caption():
    assert default_content("image", "foto del producto") == "foto del producto"
    assert default_content("document", None, None) == "[Document: file]"
