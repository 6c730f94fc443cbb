import asyncio
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import pytest
from cryptography.fernet import Fernet

# Environment must be in place before inboxflow.settings is first imported
_SCRATCH = tempfile.mkdtemp(prefix="inboxflow-tests-")
os.environ.setdefault("PII_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_SCRATCH, 'app.db')}"
os.environ["MEDIA_STORAGE_DIR"] = os.path.join(_SCRATCH, "media")
os.environ["RUN_QUEUE_WORKER"] = "false"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "verify-me"
for _name in ("REDIS_URL", "REDIS_HOST", "WHATSAPP_APP_SECRET", "TWILIO_ACCOUNT_SID"):
    os.environ.pop(_name, None)

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from inboxflow.db.base import Base  # noqa: E402
from inboxflow.db.models import (  # noqa: E402
    Chat,
    Customer,
    MessageType,
    MetaCredential,
    Profile,
    QueuedMessage,
    StoreSettings,
)
from inboxflow.db.session import db_transaction  # noqa: E402
from inboxflow.db.types import phone_lookup_hash, utcnow  # noqa: E402
from inboxflow.services.first_contact import FirstContactService  # noqa: E402
from inboxflow.services.flow_executor import FlowExecutor  # noqa: E402
from inboxflow.services.group_lock import GroupLock  # noqa: E402
from inboxflow.services.group_processor import GroupProcessor  # noqa: E402
from inboxflow.services.media_wait import MediaWaitPolicy  # noqa: E402
from inboxflow.whatsapp.adapter import DispatchError  # noqa: E402
from inboxflow.whatsapp.dispatcher import OutboundDispatcher  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: Fast unit tests with fakes only")


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads share the same database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pipeline.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, future=True)
    engine.dispose()


@dataclass
class SeededAccount:
    user_id: UUID
    customer_id: UUID
    chat_id: UUID
    phone_number_id: str
    customer_phone: str


@pytest.fixture
def seed_account(session_factory):
    """Create a profile with store, Cloud API credential, customer and chat."""

    def _seed(
        *,
        webhook_url: str | None = "https://agent.example.com/hook",
        automation_enabled: bool = True,
        buffer_seconds: int | None = 10,
        max_group_age_seconds: int | None = None,
        ai_messages_blocked: bool = False,
        ai_agent_enabled: bool = True,
        customer_phone: str | None = "5215550001111",
        phone_number_id: str = "1098765",
        special_instructions: str | None = None,
        with_credential: bool = True,
    ) -> SeededAccount:
        with db_transaction(session_factory) as session:
            profile = Profile(
                email="owner@shop.example.com",
                business_name="Tienda Azul",
                automation_enabled=automation_enabled,
                agent_webhook_url=webhook_url,
                buffer_seconds=buffer_seconds,
                max_group_age_seconds=max_group_age_seconds,
                ai_messages_blocked=ai_messages_blocked,
                agent_name="Luna",
                special_instructions=special_instructions,
                payment_accounts=[{"bank": "BBVA", "clabe": "012345"}],
            )
            session.add(profile)
            session.flush()
            session.add(
                StoreSettings(
                    user_id=profile.id,
                    store_name="Tienda Azul",
                    store_slug="tienda-azul",
                    currency="MXN",
                    shipping_rates=[{"zone": "CDMX", "price": 99}],
                )
            )
            if with_credential:
                session.add(
                    MetaCredential(
                        user_id=profile.id,
                        phone_number_id=phone_number_id,
                        access_token="EAAG-test-token",
                    )
                )
            customer = Customer(
                user_id=profile.id,
                name="Ana",
                phone=customer_phone,
                phone_hash=phone_lookup_hash(customer_phone) if customer_phone else None,
                city="Puebla",
            )
            session.add(customer)
            session.flush()
            chat = Chat(
                user_id=profile.id,
                customer_id=customer.id,
                instance_name=f"meta_{phone_number_id}",
                ai_agent_enabled=ai_agent_enabled,
            )
            session.add(chat)
            session.flush()
            return SeededAccount(
                user_id=profile.id,
                customer_id=customer.id,
                chat_id=chat.id,
                phone_number_id=phone_number_id,
                customer_phone=customer_phone or "",
            )

    return _seed


@pytest.fixture
def queue_message(session_factory):
    """Insert one queued customer message; returns its row id."""
    counter = {"n": 0}

    def _queue(
        account: SeededAccount,
        *,
        group_id: str,
        sequence_number: int,
        content: str = "hola",
        message_type: MessageType = MessageType.text,
        age_seconds: float = 60,
        media_processed: bool = True,
        media_public_url: str | None = None,
        whatsapp_message_id: str | None = None,
        quoted_metadata: dict[str, Any] | None = None,
        received_at: datetime | None = None,
    ) -> UUID:
        counter["n"] += 1
        at = received_at or utcnow() - timedelta(seconds=age_seconds)
        with db_transaction(session_factory) as session:
            row = QueuedMessage(
                group_id=group_id,
                sequence_number=sequence_number,
                user_id=account.user_id,
                customer_id=account.customer_id,
                chat_id=account.chat_id,
                message_type=message_type,
                message_content=content,
                whatsapp_message_id=whatsapp_message_id or f"wamid.in.{group_id}.{counter['n']}",
                media_processed=media_processed,
                media_public_url=media_public_url,
                quoted_metadata=quoted_metadata,
                received_at=at,
                group_last_message_at=at,
            )
            session.add(row)
            session.flush()
            return row.id

    return _queue


class FakeSender:
    """Records outbound sends instead of calling a provider."""

    def __init__(self, provider: str = "meta", *, fail: bool = False) -> None:
        self.provider = provider
        self.fail = fail
        self.texts: list[tuple[str, str]] = []
        self.media: list[tuple[str, str, str, str | None]] = []

    def send_text(self, to_phone: str, text: str) -> str | None:
        if self.fail:
            raise DispatchError("recipient not reachable", provider=self.provider, status_code=400)
        self.texts.append((to_phone, text))
        return f"wamid.out.{len(self.texts)}"

    def send_media(
        self, to_phone: str, media_type: str, media_url: str, caption: str | None = None
    ) -> str | None:
        if self.fail:
            raise DispatchError("media rejected", provider=self.provider, status_code=400)
        self.media.append((to_phone, media_type, media_url, caption))
        return f"wamid.media.{len(self.media)}"


class FakeAgent:
    """Stands in for ``AgentWebhookClient``; yields once per call like a real request."""

    def __init__(self, response: Any = None, *, error: Exception | None = None) -> None:
        self.response = {"mensaje_agente": "Claro, te ayudo con eso."} if response is None else response
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def apost(self, url: str, payload: dict[str, Any]) -> Any:
        self.calls.append((url, payload))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.response


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def dispatcher(session_factory, fake_sender) -> OutboundDispatcher:
    return OutboundDispatcher(
        meta_sender_factory=lambda _pnid, _token: fake_sender,
        session_factory=session_factory,
    )


@pytest.fixture
def build_processor(session_factory, dispatcher, fake_agent):
    def _build(
        *,
        agent: Any = None,
        media_wait_policy: MediaWaitPolicy | None = None,
        lock_stale_seconds: int = 30,
        flow_sleep: Any = None,
        lock_clock: Any = None,
    ) -> GroupProcessor:
        executor = FlowExecutor(
            dispatcher,
            session_factory=session_factory,
            sleep=flow_sleep or _no_sleep,
            inter_step_pause_seconds=0,
        )
        return GroupProcessor(
            lock=GroupLock(
                stale_after_seconds=lock_stale_seconds,
                session_factory=session_factory,
                clock=lock_clock or utcnow,
            ),
            agent_client=agent or fake_agent,
            dispatcher=dispatcher,
            first_contact=FirstContactService(executor, session_factory=session_factory),
            media_wait_policy=media_wait_policy or MediaWaitPolicy(max_wait_ms=200, poll_interval_ms=20),
            store_base_url="https://shop.example.com/store",
            session_factory=session_factory,
        )

    return _build
