"""Outbound dispatch: provider selection by chat binding."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from twilio.base.exceptions import TwilioException

from inboxflow.db.models import Message, MessageStatus, MetaCredential, SenderType
from inboxflow.db.session import db_session, db_transaction
from inboxflow.whatsapp.adapter import DispatchError
from inboxflow.whatsapp.dispatcher import ChannelBinding, OutboundDispatcher
from inboxflow.whatsapp.twilio_adapter import TwilioWhatsAppAdapter
from inboxflow.whatsapp.whatsapp_api_adapter import WhatsAppApiAdapter

from conftest import FakeSender  # type: ignore[import-not-found]


class RecordingFactory:
    def __init__(self) -> None:
        self.built: list[tuple[str, str]] = []
        self.sender = FakeSender("meta")

    def __call__(self, phone_number_id: str, access_token: str) -> FakeSender:
        self.built.append((phone_number_id, access_token))
        return self.sender


@pytest.mark.unit
def test_binding_parses_meta_instance_name():
    binding = ChannelBinding(user_id=None, instance_name="meta_1098765")  # type: ignore[arg-type]
    assert binding.meta_phone_number_id == "1098765"
    assert ChannelBinding(user_id=None, instance_name="tienda-azul").meta_phone_number_id is None  # type: ignore[arg-type]


@pytest.mark.unit
def test_bound_credential_is_used(seed_account, session_factory):
    account = seed_account(phone_number_id="555")
    factory = RecordingFactory()
    dispatcher = OutboundDispatcher(meta_sender_factory=factory, session_factory=session_factory)

    message_id = dispatcher.dispatch(
        ChannelBinding(account.user_id, "meta_555"), "+52 1 555 000 1111", "Hola"
    )

    assert message_id == "wamid.out.1"
    assert factory.built == [("555", "EAAG-test-token")]
    assert factory.sender.texts == [("5215550001111", "Hola")]


@pytest.mark.unit
def test_unbound_chat_falls_back_to_latest_credential(seed_account, session_factory):
    account = seed_account(phone_number_id="777")
    factory = RecordingFactory()
    dispatcher = OutboundDispatcher(meta_sender_factory=factory, session_factory=session_factory)

    dispatcher.dispatch(ChannelBinding(account.user_id, "legacy-instance"), "5215550001111", "Hola")

    assert factory.built == [("777", "EAAG-test-token")]


@pytest.mark.unit
def test_credential_of_another_account_is_ignored(seed_account, session_factory):
    owner = seed_account(phone_number_id="888")
    other = seed_account(phone_number_id="999", with_credential=False)
    secondary = FakeSender("twilio")
    factory = RecordingFactory()
    dispatcher = OutboundDispatcher(
        meta_sender_factory=factory, secondary_sender=secondary, session_factory=session_factory
    )

    dispatcher.dispatch(ChannelBinding(other.user_id, "meta_888"), "5215550001111", "Hola")

    assert factory.built == []
    assert secondary.texts == [("5215550001111", "Hola")]
    assert owner.user_id != other.user_id


@pytest.mark.unit
def test_no_channel_raises_dispatch_error(seed_account, session_factory):
    account = seed_account(with_credential=False)
    dispatcher = OutboundDispatcher(meta_sender_factory=RecordingFactory(), session_factory=session_factory)

    with pytest.raises(DispatchError):
        dispatcher.dispatch(ChannelBinding(account.user_id, None), "5215550001111", "Hola")


@pytest.mark.unit
def test_empty_destination_is_rejected(seed_account, session_factory):
    account = seed_account()
    dispatcher = OutboundDispatcher(meta_sender_factory=RecordingFactory(), session_factory=session_factory)

    with pytest.raises(DispatchError):
        dispatcher.dispatch(ChannelBinding(account.user_id, "meta_1098765"), "+", "Hola")


@pytest.mark.asyncio
async def test_media_dispatch_passes_caption(seed_account, session_factory):
    account = seed_account()
    factory = RecordingFactory()
    dispatcher = OutboundDispatcher(meta_sender_factory=factory, session_factory=session_factory)

    await dispatcher.adispatch_media(
        ChannelBinding(account.user_id, "meta_1098765"),
        account.customer_phone,
        "image",
        "https://cdn.example.com/a.jpg",
        "Catálogo",
    )

    assert factory.sender.media == [
        (account.customer_phone, "image", "https://cdn.example.com/a.jpg", "Catálogo")
    ]


@pytest.mark.unit
def test_twilio_adapter_sends_whatsapp_addresses():
    client = MagicMock()
    client.messages.create.return_value = SimpleNamespace(sid="SM123")
    adapter = TwilioWhatsAppAdapter(account_sid="AC1", auth_token="t", from_number="+14155238886", client=client)

    assert adapter.send_text("5215550001111", "Hola") == "SM123"
    client.messages.create.assert_called_once_with(
        from_="whatsapp:+14155238886", to="whatsapp:+5215550001111", body="Hola"
    )


@pytest.mark.unit
def test_twilio_errors_become_dispatch_errors():
    client = MagicMock()
    client.messages.create.side_effect = TwilioException("invalid number")
    adapter = TwilioWhatsAppAdapter(account_sid="AC1", auth_token="t", from_number="+14155238886", client=client)

    with pytest.raises(DispatchError) as exc_info:
        adapter.send_media("5215550001111", "image", "https://cdn.example.com/a.jpg")
    assert exc_info.value.provider == "twilio"


@pytest.mark.unit
def test_meta_credentials_are_encrypted_at_rest(seed_account, session_factory):
    seed_account(phone_number_id="321")
    with db_transaction(session_factory) as session:
        raw = session.connection().exec_driver_sql(
            "SELECT access_token FROM whatsapp_meta_credentials WHERE phone_number_id = '321'"
        ).scalar_one()
        stored = session.query(MetaCredential).filter_by(phone_number_id="321").one()
        assert raw != "EAAG-test-token"
        assert stored.access_token == "EAAG-test-token"


@pytest.mark.unit
def test_meta_adapter_returns_message_id(monkeypatch):
    response = MagicMock(status_code=200)
    response.json.return_value = {"messages": [{"id": "wamid.HBgN"}]}
    post = MagicMock(return_value=response)
    monkeypatch.setattr("inboxflow.whatsapp.whatsapp_api_adapter.requests.post", post)
    adapter = WhatsAppApiAdapter(phone_number_id="1098765", access_token="EAAG-test-token")

    assert adapter.send_text("5215550001111", "Hola") == "wamid.HBgN"
    assert post.call_args.kwargs["json"]["text"] == {"body": "Hola"}


@pytest.mark.unit
def test_meta_adapter_accepts_success_without_json_body(monkeypatch):
    response = MagicMock(status_code=200, text="OK")
    response.json.side_effect = ValueError("Expecting value")
    monkeypatch.setattr(
        "inboxflow.whatsapp.whatsapp_api_adapter.requests.post", MagicMock(return_value=response)
    )
    adapter = WhatsAppApiAdapter(phone_number_id="1098765", access_token="EAAG-test-token")

    assert adapter.send_text("5215550001111", "Hola") is None


@pytest.mark.asyncio
async def test_reply_sent_with_unparseable_body_is_still_recorded(
    seed_account, queue_message, build_processor, dispatcher, session_factory, monkeypatch
):
    account = seed_account()
    queue_message(account, group_id="g-plain", sequence_number=1)
    response = MagicMock(status_code=200, text="OK")
    response.json.side_effect = ValueError("Expecting value")
    monkeypatch.setattr(
        "inboxflow.whatsapp.whatsapp_api_adapter.requests.post", MagicMock(return_value=response)
    )
    monkeypatch.setattr(
        dispatcher,
        "_meta_sender_factory",
        lambda pnid, token: WhatsAppApiAdapter(phone_number_id=pnid, access_token=token),
    )

    result = await build_processor().process_group("g-plain")

    assert result.outcome.value == "replied"
    assert result.provider_message_id is None
    with db_session(session_factory) as session:
        stored = session.execute(
            select(Message).where(Message.chat_id == account.chat_id, Message.sender_type == SenderType.agent)
        ).scalar_one()
        assert stored.status is MessageStatus.sent
