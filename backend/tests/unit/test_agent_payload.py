"""Consolidated agent payload and the account context behind it."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest

from inboxflow.db.models import MessageType, Product, Profile
from inboxflow.db.session import db_session, db_transaction
from inboxflow.db.types import QueuedMessageSnapshot
from inboxflow.services.account_context import (
    AccountConfig,
    AccountContextService,
    ConversationContext,
    extract_product_ids,
)
from inboxflow.services.agent_payload import build_agent_payload, store_url, user_hash

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
USER_ID = UUID("01890a5d-ac96-774b-bcce-b302099a8057")
CHAT_ID = uuid4()
CUSTOMER_ID = uuid4()


def _row(seq: int, message_type: MessageType = MessageType.text, content: str = "", url: str | None = None, quoted=None):
    return QueuedMessageSnapshot(
        id=uuid4(),
        group_id="g-payload",
        sequence_number=seq,
        user_id=USER_ID,
        customer_id=CUSTOMER_ID,
        chat_id=CHAT_ID,
        message_type=message_type,
        message_content=content,
        media_public_url=url,
        media_processed=True,
        quoted_metadata=quoted,
        whatsapp_message_id=f"wamid.{seq}",
        media_metadata=None,
        received_at=T0 + timedelta(seconds=seq),
    )


def _account(**overrides) -> AccountConfig:
    values = dict(
        user_id=USER_ID,
        email="owner@shop.example.com",
        agent_webhook_url="https://agent.example.com/hook",
        automation_enabled=True,
        shipping_rates=[{"zone": "CDMX", "price": 99}],
        store={"id": "s-1", "storeName": "Tienda Azul", "storeSlug": "tienda-azul", "customDomain": None},
    )
    values.update(overrides)
    return AccountConfig(**values)


CONVERSATION = ConversationContext(
    chat_id=CHAT_ID,
    customer_id=CUSTOMER_ID,
    instance_name="meta_1098765",
    ai_agent_enabled=True,
    customer_name=None,
    customer_phone="5215550001111",
)


def _payload(rows, account=None):
    return build_agent_payload(
        group_id="g-payload",
        rows=rows,
        account=account or _account(),
        conversation=CONVERSATION,
        featured_products=[],
        store_base_url="https://shop.example.com/store",
        now=T0,
    )


@pytest.mark.unit
def test_messages_are_ordered_by_sequence_number():
    payload = _payload([_row(3, content="c"), _row(1, content="a"), _row(2, content="b")])

    assert [m["sequenceNumber"] for m in payload["messages"]] == [1, 2, 3]
    assert payload["messageContent"] == "a\nb\nc"
    assert payload["messageType"] == "text"
    assert payload["messageCount"] == 3


@pytest.mark.unit
def test_last_image_and_audio_urls_are_promoted():
    rows = [
        _row(1, MessageType.image, "[Image]", "https://media.example.com/1.jpg"),
        _row(2, MessageType.audio, "[Audio]", "https://media.example.com/2.ogg"),
        _row(3, MessageType.image, "mira esta", "https://media.example.com/3.jpg"),
        _row(4, MessageType.image, "[Image]", None),
    ]
    payload = _payload(rows)

    assert payload["imagen"] == "https://media.example.com/3.jpg"
    assert payload["audio"] == "https://media.example.com/2.ogg"
    assert payload["hasImagen"] is True
    assert payload["hasAudio"] is True
    assert payload["messageType"] == "image"


@pytest.mark.unit
def test_first_quoted_message_is_surfaced():
    quoted = {"id": "wamid.q", "type": "text", "content": "¿Precio?", "sender": "business"}
    payload = _payload([_row(1, content="a"), _row(2, content="b", quoted=quoted)])

    assert payload["quotedMessage"] == quoted
    assert payload["messages"][0]["quotedMessage"] is None


@pytest.mark.unit
def test_account_defaults_and_identity():
    payload = _payload([_row(1, content="hola")])

    assert payload["userHash"] == user_hash("owner@shop.example.com")
    assert payload["customerName"] == "Unknown"
    assert payload["agentName"] == "Asistente Virtual"
    assert payload["salesMode"] == "advise_only"
    assert payload["storeUrl"] == "https://shop.example.com/store/tienda-azul"
    assert payload["store"]["shippingRates"] == [{"zone": "CDMX", "price": 99}]
    assert payload["chatId"] == str(CHAT_ID)
    assert payload["groupId"] == "g-payload"
    assert payload["timestamp"] == T0.isoformat()


@pytest.mark.unit
def test_custom_domain_wins_for_store_url():
    assert store_url({"customDomain": "azul.mx", "storeSlug": "x"}, "https://base") == "https://azul.mx"
    assert store_url({"storeSlug": None}, "https://base") is None
    assert store_url(None, "https://base") is None


@pytest.mark.unit
def test_product_ids_are_extracted_in_order_without_duplicates():
    a, b = uuid4(), uuid4()
    text = f"Recomienda {b} y luego {a}. Insiste en {b}."
    assert extract_product_ids(text) == [b, a]
    assert extract_product_ids(None) == []


@pytest.mark.unit
def test_featured_products_come_from_special_instructions(seed_account, session_factory):
    account = seed_account()
    with db_transaction(session_factory) as session:
        mine = Product(user_id=account.user_id, name="Playera azul", price=249.5)
        session.add(mine)
        session.flush()
        mine_id = mine.id
    missing = uuid4()
    with db_transaction(session_factory) as session:
        session.get(Profile, account.user_id).special_instructions = f"Destaca {mine_id} y {missing}"

    with db_session(session_factory) as session:
        service = AccountContextService(session)
        config = service.get_account_config(account.user_id)
        featured = service.get_featured_products(config)
        conversation = service.get_conversation(account.customer_id, account.chat_id)

    assert [(p["id"], p["name"], p["price"]) for p in featured] == [(str(mine_id), "Playera azul", 249.5)]
    assert config.store["storeSlug"] == "tienda-azul"
    assert config.payment_accounts == [{"bank": "BBVA", "clabe": "012345"}]
    assert conversation.customer_phone == account.customer_phone
    assert conversation.customer_name == "Ana"
