from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from inboxflow.db.models import (
    AutomationFlow,
    Chat,
    Customer,
    FlowExecution,
    FlowExecutionStatus,
    FlowStep,
    Message,
    MessageType,
    MetaCredential,
    Product,
    Profile,
    QueuedMessage,
    SenderType,
    StoreSettings,
)
from inboxflow.db.types import MessageToSave, as_utc, phone_lookup_hash

logger = logging.getLogger(__name__)


# --- Inbound queue


@dataclass(frozen=True, slots=True)
class GroupActivity:
    group_id: str
    user_id: UUID
    last_message_at: datetime
    first_received_at: datetime
    unsent_count: int


def get_group_activity(session: Session, group_id: str) -> GroupActivity | None:
    row = session.execute(
        select(
            QueuedMessage.user_id,
            func.max(QueuedMessage.group_last_message_at),
            func.min(QueuedMessage.received_at),
            func.sum(case((QueuedMessage.sent_to_webhook.is_(False), 1), else_=0)),
        )
        .where(QueuedMessage.group_id == group_id)
        .group_by(QueuedMessage.user_id)
    ).first()
    if row is None:
        return None
    user_id, last_at, first_at, unsent = row
    return GroupActivity(
        group_id=group_id,
        user_id=user_id,
        last_message_at=as_utc(last_at),  # type: ignore[arg-type]
        first_received_at=as_utc(first_at),  # type: ignore[arg-type]
        unsent_count=int(unsent or 0),
    )


def get_group_lock_timestamps(session: Session, group_id: str) -> list[datetime | None]:
    """Lock timestamps of the group's unsent rows (empty when nothing is pending)."""
    values = session.execute(
        select(QueuedMessage.processing_started_at).where(
            QueuedMessage.group_id == group_id,
            QueuedMessage.sent_to_webhook.is_(False),
        )
    ).scalars()
    return [as_utc(v) for v in values]


def claim_group(session: Session, group_id: str, *, now: datetime, stale_before: datetime) -> int:
    """Stamp ``processing_started_at`` on unsent rows whose lock is free or stale.

    Returns the number of rows claimed.
    """
    result = session.execute(
        update(QueuedMessage)
        .where(
            QueuedMessage.group_id == group_id,
            QueuedMessage.sent_to_webhook.is_(False),
            or_(
                QueuedMessage.processing_started_at.is_(None),
                QueuedMessage.processing_started_at < stale_before,
            ),
        )
        .values(processing_started_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def clear_group_lock(session: Session, group_id: str) -> None:
    session.execute(
        update(QueuedMessage)
        .where(QueuedMessage.group_id == group_id)
        .values(processing_started_at=None)
        .execution_options(synchronize_session=False)
    )


def fetch_unsent_group_messages(session: Session, group_id: str) -> Sequence[QueuedMessage]:
    return (
        session.execute(
            select(QueuedMessage)
            .where(QueuedMessage.group_id == group_id, QueuedMessage.sent_to_webhook.is_(False))
            .order_by(QueuedMessage.sequence_number)
        )
        .scalars()
        .all()
    )


def mark_messages_sent(session: Session, message_ids: Iterable[UUID], *, sent_at: datetime) -> None:
    ids = list(message_ids)
    if not ids:
        return
    session.execute(
        update(QueuedMessage)
        .where(QueuedMessage.id.in_(ids))
        .values(sent_to_webhook=True, sent_at=sent_at)
        .execution_options(synchronize_session=False)
    )


def find_ready_group_ids(session: Session, user_id: UUID, *, cutoff: datetime) -> list[str]:
    """Unsent groups of an account whose last message is at or before ``cutoff``."""
    rows = session.execute(
        select(QueuedMessage.group_id, func.min(QueuedMessage.received_at))
        .where(QueuedMessage.user_id == user_id, QueuedMessage.sent_to_webhook.is_(False))
        .group_by(QueuedMessage.group_id)
        .having(func.max(QueuedMessage.group_last_message_at) <= cutoff)
        .order_by(func.min(QueuedMessage.received_at))
    ).all()
    return [group_id for group_id, _ in rows]


def find_open_group(
    session: Session, user_id: UUID, customer_id: UUID, *, stale_before: datetime
) -> tuple[str, int] | None:
    """Latest unsent group for a customer that no worker currently holds.

    Returns ``(group_id, max_sequence_number)``.
    """
    latest = session.execute(
        select(QueuedMessage.group_id)
        .where(
            QueuedMessage.user_id == user_id,
            QueuedMessage.customer_id == customer_id,
            QueuedMessage.sent_to_webhook.is_(False),
        )
        .order_by(QueuedMessage.received_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is None:
        return None

    locked = session.execute(
        select(func.count())
        .select_from(QueuedMessage)
        .where(
            QueuedMessage.group_id == latest,
            QueuedMessage.processing_started_at.is_not(None),
            QueuedMessage.processing_started_at >= stale_before,
        )
    ).scalar_one()
    if locked:
        return None

    max_seq = session.execute(
        select(func.max(QueuedMessage.sequence_number)).where(QueuedMessage.group_id == latest)
    ).scalar_one()
    return latest, int(max_seq or 0)


def queued_message_exists(session: Session, whatsapp_message_id: str) -> bool:
    found = session.execute(
        select(QueuedMessage.id).where(QueuedMessage.whatsapp_message_id == whatsapp_message_id)
    ).first()
    return found is not None


def insert_queued_message(session: Session, **fields: Any) -> QueuedMessage:
    row = QueuedMessage(**fields)
    session.add(row)
    session.flush()
    return row


def bump_group_last_message_at(session: Session, group_id: str, at: datetime) -> None:
    """Advance ``group_last_message_at`` on the group's unsent rows, never backwards."""
    session.execute(
        update(QueuedMessage)
        .where(
            QueuedMessage.group_id == group_id,
            QueuedMessage.sent_to_webhook.is_(False),
            QueuedMessage.group_last_message_at < at,
        )
        .values(group_last_message_at=at)
        .execution_options(synchronize_session=False)
    )


def get_queued_message(session: Session, queued_id: UUID) -> QueuedMessage | None:
    return session.get(QueuedMessage, queued_id)


def mark_media_resolved(session: Session, queued_id: UUID, public_url: str | None) -> None:
    session.execute(
        update(QueuedMessage)
        .where(QueuedMessage.id == queued_id)
        .values(media_processed=True, media_public_url=public_url)
        .execution_options(synchronize_session=False)
    )


# --- Durable message store


def message_exists(session: Session, chat_id: UUID, whatsapp_message_id: str) -> bool:
    found = session.execute(
        select(Message.id).where(
            Message.chat_id == chat_id, Message.whatsapp_message_id == whatsapp_message_id
        )
    ).first()
    return found is not None


def whatsapp_message_seen(session: Session, whatsapp_message_id: str) -> bool:
    found = session.execute(
        select(Message.id).where(Message.whatsapp_message_id == whatsapp_message_id)
    ).first()
    return found is not None


def create_message(session: Session, to_save: MessageToSave) -> Message:
    message = Message(
        chat_id=to_save.chat_id,
        sender_type=to_save.sender_type,
        message_type=to_save.message_type,
        status=to_save.status,
        content=to_save.content,
        whatsapp_message_id=to_save.whatsapp_message_id,
        message_metadata=to_save.metadata or None,
    )
    if to_save.created_at is not None:
        message.created_at = to_save.created_at
    session.add(message)
    session.flush()
    return message


def save_message_once(session: Session, to_save: MessageToSave) -> bool:
    """Insert unless a message with the same channel id already exists for the chat.

    Messages without a channel id are always inserted. Returns True on insert.
    """
    if to_save.whatsapp_message_id and message_exists(
        session, to_save.chat_id, to_save.whatsapp_message_id
    ):
        logger.debug("Message %s already stored, skipping", to_save.whatsapp_message_id)
        return False
    create_message(session, to_save)
    return True


def count_customer_messages(session: Session, chat_id: UUID) -> int:
    return int(
        session.execute(
            select(func.count())
            .select_from(Message)
            .where(Message.chat_id == chat_id, Message.sender_type == SenderType.customer)
        ).scalar_one()
    )


def find_message_by_whatsapp_id(session: Session, whatsapp_message_id: str) -> Message | None:
    return session.execute(
        select(Message).where(Message.whatsapp_message_id == whatsapp_message_id).limit(1)
    ).scalar_one_or_none()


def attach_late_media_url(
    session: Session, whatsapp_message_id: str, message_type: MessageType, public_url: str
) -> bool:
    """Add a media URL to a stored message whose media resolved after delivery."""
    message = find_message_by_whatsapp_id(session, whatsapp_message_id)
    if message is None:
        return False
    metadata = dict(message.message_metadata or {})
    metadata["mediaUrl"] = public_url
    metadata[f"{message_type.value}Url"] = public_url
    message.message_metadata = metadata
    return True


# --- Accounts, customers and chats


def get_profile(session: Session, user_id: UUID) -> Profile | None:
    return session.execute(
        select(Profile).options(selectinload(Profile.store_settings)).where(Profile.id == user_id)
    ).scalar_one_or_none()


def list_automation_profiles(session: Session) -> Sequence[Profile]:
    return (
        session.execute(
            select(Profile).where(
                Profile.automation_enabled.is_(True), Profile.agent_webhook_url.is_not(None)
            )
        )
        .scalars()
        .all()
    )


def get_customer(session: Session, customer_id: UUID) -> Customer | None:
    return session.get(Customer, customer_id)


def get_chat(session: Session, chat_id: UUID) -> Chat | None:
    return session.get(Chat, chat_id)


def get_or_create_customer(
    session: Session, user_id: UUID, phone: str, *, name: str | None
) -> Customer:
    phone_hash = phone_lookup_hash(phone)
    customer = session.execute(
        select(Customer).where(Customer.user_id == user_id, Customer.phone_hash == phone_hash)
    ).scalar_one_or_none()
    if customer is not None:
        if not customer.name and name:
            customer.name = name
        return customer

    customer = Customer(user_id=user_id, phone=phone, phone_hash=phone_hash, name=name)
    session.add(customer)
    session.flush()
    logger.info("Created customer %s for account %s", customer.id, user_id)
    return customer


def get_or_create_chat(
    session: Session, user_id: UUID, customer_id: UUID, *, instance_name: str | None
) -> Chat:
    chat = session.execute(
        select(Chat).where(Chat.user_id == user_id, Chat.customer_id == customer_id)
    ).scalar_one_or_none()
    if chat is not None:
        if not chat.instance_name and instance_name:
            chat.instance_name = instance_name
        return chat

    chat = Chat(user_id=user_id, customer_id=customer_id, instance_name=instance_name)
    session.add(chat)
    session.flush()
    return chat


def touch_chat(session: Session, chat_id: UUID, at: datetime) -> None:
    session.execute(
        update(Chat)
        .where(Chat.id == chat_id)
        .values(last_message_at=at)
        .execution_options(synchronize_session=False)
    )


def disable_chat_automation(session: Session, chat_id: UUID, at: datetime) -> None:
    session.execute(
        update(Chat)
        .where(Chat.id == chat_id)
        .values(ai_agent_enabled=False, last_message_at=at)
        .execution_options(synchronize_session=False)
    )


def get_store_settings(session: Session, user_id: UUID) -> StoreSettings | None:
    return session.execute(
        select(StoreSettings).where(StoreSettings.user_id == user_id)
    ).scalar_one_or_none()


def get_products_by_ids(session: Session, user_id: UUID, product_ids: Sequence[UUID]) -> Sequence[Product]:
    if not product_ids:
        return []
    return (
        session.execute(
            select(Product).where(Product.user_id == user_id, Product.id.in_(list(product_ids)))
        )
        .scalars()
        .all()
    )


def get_meta_credential_by_phone_number_id(
    session: Session, phone_number_id: str
) -> MetaCredential | None:
    return session.execute(
        select(MetaCredential).where(MetaCredential.phone_number_id == phone_number_id)
    ).scalar_one_or_none()


def get_latest_meta_credential(session: Session, user_id: UUID) -> MetaCredential | None:
    return session.execute(
        select(MetaCredential)
        .where(MetaCredential.user_id == user_id)
        .order_by(MetaCredential.created_at.desc(), MetaCredential.id.desc())
        .limit(1)
    ).scalar_one_or_none()


# --- Automation flows


def list_active_flows(session: Session, user_id: UUID) -> Sequence[AutomationFlow]:
    return (
        session.execute(
            select(AutomationFlow)
            .where(AutomationFlow.user_id == user_id, AutomationFlow.is_active.is_(True))
            .order_by(AutomationFlow.created_at, AutomationFlow.id)
        )
        .scalars()
        .all()
    )


def flow_execution_exists(session: Session, flow_id: UUID, chat_id: UUID, trigger_type: str) -> bool:
    found = session.execute(
        select(FlowExecution.id).where(
            and_(
                FlowExecution.flow_id == flow_id,
                FlowExecution.chat_id == chat_id,
                FlowExecution.trigger_type == trigger_type,
            )
        )
    ).first()
    return found is not None


def create_flow_execution(
    session: Session,
    *,
    flow_id: UUID,
    user_id: UUID,
    customer_id: UUID,
    chat_id: UUID,
    trigger_type: str,
    started_at: datetime,
) -> FlowExecution:
    execution = FlowExecution(
        flow_id=flow_id,
        user_id=user_id,
        customer_id=customer_id,
        chat_id=chat_id,
        trigger_type=trigger_type,
        status=FlowExecutionStatus.running,
        started_at=started_at,
    )
    session.add(execution)
    session.flush()
    return execution


def finish_flow_execution(
    session: Session,
    execution_id: UUID,
    *,
    status: FlowExecutionStatus,
    completed_at: datetime,
    error_message: str | None = None,
) -> None:
    session.execute(
        update(FlowExecution)
        .where(FlowExecution.id == execution_id)
        .values(status=status, completed_at=completed_at, error_message=error_message)
        .execution_options(synchronize_session=False)
    )


def get_flow_steps(session: Session, flow_id: UUID) -> Sequence[FlowStep]:
    return (
        session.execute(
            select(FlowStep).where(FlowStep.flow_id == flow_id).order_by(FlowStep.step_order)
        )
        .scalars()
        .all()
    )
