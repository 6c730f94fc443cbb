from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from cryptography.fernet import Fernet
from sqlalchemy import JSON, String, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB

if TYPE_CHECKING:
    from inboxflow.db.models import MessageStatus, MessageType, QueuedMessage, SenderType

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class EncryptedString(TypeDecorator):
    """SQLAlchemy type for encrypted string fields (GDPR/LGPD compliance)."""

    impl = String
    cache_ok = True
    _fernet_cache: Fernet | None = None

    @property
    def fernet(self) -> Fernet:
        """Lazy-load Fernet cipher to allow env vars to be loaded first."""
        if EncryptedString._fernet_cache is None:
            encryption_key = os.getenv("PII_ENCRYPTION_KEY")
            if not encryption_key:
                raise RuntimeError(
                    "PII_ENCRYPTION_KEY environment variable is required for encrypted fields. "
                    'Generate one with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
                )
            EncryptedString._fernet_cache = Fernet(encryption_key.encode())
        return EncryptedString._fernet_cache

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        if isinstance(value, str):
            return self.fernet.encrypt(value.encode()).decode()
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        """Decrypt value when reading from database."""
        if value is None:
            return None
        if isinstance(value, memoryview):
            value = bytes(value).decode()
        elif isinstance(value, bytes):
            value = value.decode()
        if isinstance(value, str):
            return self.fernet.decrypt(value.encode()).decode()
        return value


_NON_DIGITS = re.compile(r"\D+")


def digits_only(phone: str | None) -> str:
    return _NON_DIGITS.sub("", phone or "")


def phone_lookup_hash(phone: str) -> str:
    """Deterministic lookup key for an encrypted phone number."""
    return hashlib.sha256(digits_only(phone).encode()).hexdigest()


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class QueuedMessageSnapshot:
    """Detached, read-only view of one inbound queue row."""

    id: UUID
    group_id: str
    sequence_number: int
    user_id: UUID
    customer_id: UUID
    chat_id: UUID
    message_type: MessageType
    message_content: str
    media_public_url: str | None
    media_processed: bool
    quoted_metadata: dict[str, Any] | None
    whatsapp_message_id: str | None
    media_metadata: dict[str, Any] | None
    received_at: datetime

    @property
    def is_text(self) -> bool:
        return self.message_type.value == "text"

    @property
    def media_pending(self) -> bool:
        return not self.is_text and not self.media_processed

    @classmethod
    def from_row(cls, row: QueuedMessage) -> QueuedMessageSnapshot:
        return cls(
            id=row.id,
            group_id=row.group_id,
            sequence_number=row.sequence_number,
            user_id=row.user_id,
            customer_id=row.customer_id,
            chat_id=row.chat_id,
            message_type=row.message_type,
            message_content=row.message_content or "",
            media_public_url=row.media_public_url,
            media_processed=row.media_processed,
            quoted_metadata=row.quoted_metadata,
            whatsapp_message_id=row.whatsapp_message_id,
            media_metadata=row.media_metadata,
            received_at=as_utc(row.received_at),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class MessageToSave:
    chat_id: UUID
    content: str
    sender_type: SenderType
    message_type: MessageType
    status: MessageStatus
    whatsapp_message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
