"""
DATABASE MODELS
===============

Personal data (customer names, phone numbers, e-mails, message bodies and
provider access tokens) is stored with ``EncryptedString`` and requires the
``PII_ENCRYPTION_KEY`` environment variable. Columns that must be searched
(customer phone) get a deterministic ``*_hash`` companion column.

The inbound queue (``message_queue``) is the only table this service mutates
concurrently; rows are never deleted and form the audit trail of what was
forwarded to the agent and when.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy import (
    Enum as PgEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from uuid_v7.base import uuid7

from inboxflow.db.base import Base
from inboxflow.db.types import EncryptedString, JSONType

# --- Enumerations


class MessageType(str, Enum):
    text = "text"
    image = "image"
    audio = "audio"
    video = "video"
    document = "document"


class SenderType(str, Enum):
    customer = "customer"
    agent = "agent"
    business = "business"


class MessageStatus(str, Enum):
    received = "received"
    sent = "sent"
    failed = "failed"


class FlowStepType(str, Enum):
    text = "text"
    image = "image"
    video = "video"
    audio = "audio"
    file = "file"
    delay = "delay"
    ai_function = "ai_function"


class FlowExecutionStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


# --- Base mixins


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


# --- Accounts and configuration


class Profile(Base, TimestampMixin):
    """Account owning customers, chats and the agent configuration."""

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    email: Mapped[str] = mapped_column(EncryptedString, nullable=False)
    business_name: Mapped[str | None] = mapped_column(String(255))

    # Agent automation
    automation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    agent_webhook_url: Mapped[str | None] = mapped_column(Text)
    buffer_seconds: Mapped[int | None] = mapped_column(Integer, default=10)
    # Forces processing of a group whose first message is older than this
    max_group_age_seconds: Mapped[int | None] = mapped_column(Integer)
    ai_messages_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Agent persona forwarded verbatim in the payload
    agent_name: Mapped[str | None] = mapped_column(String(120))
    proactivity_level: Mapped[str | None] = mapped_column(String(40))
    customer_treatment: Mapped[str | None] = mapped_column(String(40))
    welcome_message: Mapped[str | None] = mapped_column(Text)
    call_to_action: Mapped[str | None] = mapped_column(Text)
    special_instructions: Mapped[str | None] = mapped_column(Text)
    sales_mode: Mapped[str | None] = mapped_column(String(40))
    payment_methods: Mapped[str | None] = mapped_column(String(40))
    payment_accounts: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType)
    store_info: Mapped[str | None] = mapped_column(Text)
    website: Mapped[str | None] = mapped_column(String(255))

    store_settings: Mapped[StoreSettings | None] = relationship(
        back_populates="profile", uselist=False, cascade="all, delete-orphan"
    )
    meta_credentials: Mapped[list[MetaCredential]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )


class StoreSettings(Base, TimestampMixin):
    __tablename__ = "store_settings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), unique=True
    )
    store_name: Mapped[str | None] = mapped_column(String(255))
    store_slug: Mapped[str | None] = mapped_column(String(255))
    custom_domain: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    currency: Mapped[str | None] = mapped_column(String(8))
    whatsapp_number: Mapped[str | None] = mapped_column(String(32))
    shipping_rates: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType)

    profile: Mapped[Profile] = relationship(back_populates="store_settings")


class MetaCredential(Base, TimestampMixin):
    """WhatsApp Cloud API credentials bound to one business phone number."""

    __tablename__ = "whatsapp_meta_credentials"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    phone_number_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    business_account_id: Mapped[str | None] = mapped_column(String(64))
    access_token: Mapped[str] = mapped_column(EncryptedString, nullable=False)

    profile: Mapped[Profile] = relationship(back_populates="meta_credentials")


class Product(Base, TimestampMixin):
    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    image_url: Mapped[str | None] = mapped_column(Text)


# --- Conversations


class Customer(Base, TimestampMixin):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("user_id", "phone_hash", name="uq_customer_user_phone"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    name: Mapped[str | None] = mapped_column(EncryptedString)
    phone: Mapped[str | None] = mapped_column(EncryptedString)
    phone_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    email: Mapped[str | None] = mapped_column(EncryptedString)
    address: Mapped[str | None] = mapped_column(EncryptedString)
    city: Mapped[str | None] = mapped_column(String(120))
    province: Mapped[str | None] = mapped_column(String(120))


class Chat(Base, TimestampMixin):
    __tablename__ = "chats"
    __table_args__ = (UniqueConstraint("user_id", "customer_id", name="uq_chat_user_customer"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"))
    # Channel binding, e.g. "meta_<phone_number_id>"
    instance_name: Mapped[str | None] = mapped_column(String(120))
    ai_agent_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    customer: Mapped[Customer] = relationship()


class Message(Base, TimestampMixin):
    """Durable message store; one row per inbound or outbound message."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("chat_id", "whatsapp_message_id", name="uq_message_chat_wa_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    chat_id: Mapped[UUID] = mapped_column(ForeignKey("chats.id", ondelete="CASCADE"), index=True)
    sender_type: Mapped[SenderType] = mapped_column(
        PgEnum(SenderType, name="sender_type"), nullable=False
    )
    message_type: Mapped[MessageType] = mapped_column(
        PgEnum(MessageType, name="message_type"), nullable=False, default=MessageType.text
    )
    status: Mapped[MessageStatus] = mapped_column(
        PgEnum(MessageStatus, name="message_status"), nullable=False, default=MessageStatus.received
    )
    content: Mapped[str | None] = mapped_column(EncryptedString)
    whatsapp_message_id: Mapped[str | None] = mapped_column(String(255))
    # Media URLs, quoted message, originating flow
    message_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )


class QueuedMessage(Base):
    """One inbound message waiting to be delivered to the agent as part of a group."""

    __tablename__ = "message_queue"
    __table_args__ = (
        UniqueConstraint("group_id", "sequence_number", name="uq_queue_group_sequence"),
        UniqueConstraint("whatsapp_message_id", name="uq_queue_wa_id"),
        Index("ix_queue_user_unsent", "user_id", "sent_to_webhook"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"))
    chat_id: Mapped[UUID] = mapped_column(ForeignKey("chats.id", ondelete="CASCADE"))

    message_type: Mapped[MessageType] = mapped_column(
        PgEnum(MessageType, name="message_type"), nullable=False
    )
    message_content: Mapped[str | None] = mapped_column(EncryptedString)
    whatsapp_message_id: Mapped[str | None] = mapped_column(String(255))
    # media_id, mime_type, filename as delivered by the channel
    media_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    media_public_url: Mapped[str | None] = mapped_column(Text)
    media_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quoted_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    group_last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_to_webhook: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# --- Automation flows


class AutomationFlow(Base, TimestampMixin):
    __tablename__ = "automation_flows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # {"on_first_message": bool, "on_inactivity": {...}, "on_no_response": {...}}
    trigger_conditions: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    steps: Mapped[list[FlowStep]] = relationship(
        back_populates="flow", cascade="all, delete-orphan", order_by="FlowStep.step_order"
    )


class FlowStep(Base):
    __tablename__ = "flow_steps"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    flow_id: Mapped[UUID] = mapped_column(ForeignKey("automation_flows.id", ondelete="CASCADE"))
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_type: Mapped[FlowStepType] = mapped_column(
        PgEnum(FlowStepType, name="flow_step_type"), nullable=False
    )
    content: Mapped[str | None] = mapped_column(Text)
    # Single URL or a JSON list of URLs for image/file steps
    media_url: Mapped[str | None] = mapped_column(Text)
    delay_seconds: Mapped[int | None] = mapped_column(Integer)

    flow: Mapped[AutomationFlow] = relationship(back_populates="steps")


class FlowExecution(Base):
    __tablename__ = "flow_executions"
    __table_args__ = (
        UniqueConstraint("flow_id", "chat_id", "trigger_type", name="uq_flow_execution_trigger"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid7)
    flow_id: Mapped[UUID] = mapped_column(ForeignKey("automation_flows.id", ondelete="CASCADE"))
    user_id: Mapped[UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    customer_id: Mapped[UUID] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"))
    chat_id: Mapped[UUID] = mapped_column(ForeignKey("chats.id", ondelete="CASCADE"))
    trigger_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[FlowExecutionStatus] = mapped_column(
        PgEnum(FlowExecutionStatus, name="flow_execution_status"),
        nullable=False,
        default=FlowExecutionStatus.running,
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
