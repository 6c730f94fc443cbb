"""Database side of webhook ingress: turns one inbound message into a queue row."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from uuid_v7.base import uuid7

from inboxflow.db import repository
from inboxflow.db.models import MessageType, SenderType
from inboxflow.db.session import SessionFactory, db_transaction
from inboxflow.db.types import digits_only, utcnow
from inboxflow.whatsapp.dispatcher import META_INSTANCE_PREFIX
from inboxflow.whatsapp.types.message import InboundMessage, QuotedMetadata

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

MAX_ENQUEUE_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class EnqueuedMessage:
    queued_message_id: UUID
    group_id: str
    sequence_number: int
    user_id: UUID
    message_type: MessageType
    whatsapp_message_id: str
    media_id: str | None
    mime_type: str | None
    access_token: str
    phone_number_id: str
    new_group: bool

    @property
    def needs_media(self) -> bool:
        return self.message_type is not MessageType.text and self.media_id is not None


class WebhookDatabaseHandler:
    """
    Handles the database operations of webhook ingress.

    Resolves the owning account from the business phone number, creates the
    customer and chat on first contact, deduplicates by channel message id
    and assigns the message to a group.
    """

    def __init__(self, session: Session, *, now: datetime, lock_stale_seconds: int = 30):
        self.session = session
        self.now = now
        self.lock_stale_after = timedelta(seconds=lock_stale_seconds)

    def enqueue(self, message: InboundMessage) -> EnqueuedMessage | None:
        credential = repository.get_meta_credential_by_phone_number_id(
            self.session, message.phone_number_id
        )
        if credential is None:
            logger.warning("No account bound to phone number id %s", message.phone_number_id)
            return None

        if repository.queued_message_exists(
            self.session, message.whatsapp_message_id
        ) or repository.whatsapp_message_seen(self.session, message.whatsapp_message_id):
            logger.info("Duplicate WhatsApp message %s ignored", message.whatsapp_message_id)
            return None

        user_id = credential.user_id
        customer = repository.get_or_create_customer(
            self.session, user_id, digits_only(message.sender_phone), name=message.sender_name
        )
        chat = repository.get_or_create_chat(
            self.session,
            user_id,
            customer.id,
            instance_name=f"{META_INSTANCE_PREFIX}{message.phone_number_id}",
        )

        open_group = repository.find_open_group(
            self.session, user_id, customer.id, stale_before=self.now - self.lock_stale_after
        )
        if open_group is not None:
            group_id, last_sequence = open_group
            sequence_number = last_sequence + 1
        else:
            group_id, sequence_number = str(uuid7()), 1

        message_type = MessageType(message.message_type)
        media_metadata = None
        if message.media_id:
            media_metadata = {
                "media_id": message.media_id,
                "mime_type": message.mime_type,
                "filename": message.filename,
                "whatsapp_message_id": message.whatsapp_message_id,
            }

        row = repository.insert_queued_message(
            self.session,
            group_id=group_id,
            sequence_number=sequence_number,
            user_id=user_id,
            customer_id=customer.id,
            chat_id=chat.id,
            message_type=message_type,
            message_content=message.content,
            whatsapp_message_id=message.whatsapp_message_id,
            media_metadata=media_metadata,
            media_processed=message_type is MessageType.text or message.media_id is None,
            quoted_metadata=self._quoted_metadata(message),
            received_at=self.now,
            group_last_message_at=self.now,
        )
        repository.bump_group_last_message_at(self.session, group_id, self.now)

        logger.info(
            "Queued WhatsApp message %s as %s #%d (%s)",
            message.whatsapp_message_id,
            group_id,
            sequence_number,
            "new group" if open_group is None else "joined group",
        )
        return EnqueuedMessage(
            queued_message_id=row.id,
            group_id=group_id,
            sequence_number=sequence_number,
            user_id=user_id,
            message_type=message_type,
            whatsapp_message_id=message.whatsapp_message_id,
            media_id=message.media_id,
            mime_type=message.mime_type,
            access_token=credential.access_token,
            phone_number_id=credential.phone_number_id,
            new_group=open_group is None,
        )

    def _quoted_metadata(self, message: InboundMessage) -> QuotedMetadata | None:
        if not message.quoted_message_id:
            return None
        quoted = repository.find_message_by_whatsapp_id(self.session, message.quoted_message_id)
        if quoted is None:
            return QuotedMetadata(
                id=message.quoted_message_id,
                type="unknown",
                content="[Quoted message not found]",
                sender="unknown",
            )
        metadata = quoted.message_metadata or {}
        return QuotedMetadata(
            id=message.quoted_message_id,
            type=quoted.message_type.value,
            content=quoted.content or "",
            sender="customer" if quoted.sender_type is SenderType.customer else "business",
            imageUrl=metadata.get("imageUrl"),
            audioUrl=metadata.get("audioUrl"),
        )


def enqueue_inbound_message(
    message: InboundMessage,
    *,
    session_factory: SessionFactory | None = None,
    clock: Callable[[], datetime] = utcnow,
    lock_stale_seconds: int = 30,
) -> EnqueuedMessage | None:
    """Insert one inbound message into the queue in its own transaction.

    A concurrent insert into the same group surfaces as a unique violation on
    ``(group_id, sequence_number)``; the insert is retried with a fresh read.
    """
    for attempt in range(1, MAX_ENQUEUE_ATTEMPTS + 1):
        try:
            with db_transaction(session_factory) as session:
                handler = WebhookDatabaseHandler(
                    session, now=clock(), lock_stale_seconds=lock_stale_seconds
                )
                return handler.enqueue(message)
        except IntegrityError:
            if attempt == MAX_ENQUEUE_ATTEMPTS:
                raise
            logger.warning(
                "Queue insert conflict for %s, retrying (%d/%d)",
                message.whatsapp_message_id,
                attempt,
                MAX_ENQUEUE_ATTEMPTS,
            )
    return None
