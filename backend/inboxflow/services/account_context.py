from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.orm import Session

from inboxflow.db import repository

if TYPE_CHECKING:
    from inboxflow.db.models import Chat, Customer, Profile, StoreSettings

logger = logging.getLogger(__name__)

_UUID_PATTERN = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE
)


def extract_product_ids(text: str | None) -> list[UUID]:
    """Product ids mentioned in free text, in order of first appearance."""
    seen: dict[UUID, None] = {}
    for match in _UUID_PATTERN.findall(text or ""):
        seen.setdefault(UUID(match.lower()), None)
    return list(seen)


@dataclass(frozen=True, slots=True)
class AccountConfig:
    """
    Per-account configuration read fresh on every invocation.

    Holds what the pipeline needs to decide whether and where to deliver a
    group, plus the agent persona forwarded in the payload.
    """

    user_id: UUID
    email: str
    business_name: str | None = None
    agent_webhook_url: str | None = None
    automation_enabled: bool = False
    buffer_seconds: int | None = None
    max_group_age_seconds: int | None = None
    ai_messages_blocked: bool = False

    agent_name: str | None = None
    proactivity_level: str | None = None
    customer_treatment: str | None = None
    welcome_message: str | None = None
    call_to_action: str | None = None
    special_instructions: str | None = None
    sales_mode: str | None = None
    payment_methods: str | None = None
    payment_accounts: list[dict[str, Any]] = field(default_factory=list)
    store_info: str | None = None
    website: str | None = None
    shipping_rates: list[dict[str, Any]] = field(default_factory=list)
    store: dict[str, Any] | None = None

    def effective_buffer_seconds(self, default: int) -> int:
        if self.buffer_seconds is None or self.buffer_seconds < 0:
            return default
        return self.buffer_seconds

    def effective_max_group_age_seconds(self, default: int) -> int:
        return self.max_group_age_seconds if self.max_group_age_seconds else default


@dataclass(frozen=True, slots=True)
class ConversationContext:
    chat_id: UUID
    customer_id: UUID
    instance_name: str | None
    ai_agent_enabled: bool
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    customer_address: str | None = None
    customer_city: str | None = None
    customer_province: str | None = None


class AccountContextService:
    """Reads account, store and conversation data into detached value objects."""

    def __init__(self, session: Session):
        self.session = session

    def get_account_config(self, user_id: UUID) -> AccountConfig | None:
        profile = repository.get_profile(self.session, user_id)
        if profile is None:
            logger.warning("Profile %s not found", user_id)
            return None
        return self._build_account_config(profile)

    def list_automation_accounts(self) -> list[AccountConfig]:
        return [
            self._build_account_config(profile)
            for profile in repository.list_automation_profiles(self.session)
        ]

    def get_conversation(self, customer_id: UUID, chat_id: UUID) -> ConversationContext | None:
        chat = repository.get_chat(self.session, chat_id)
        if chat is None:
            logger.warning("Chat %s not found", chat_id)
            return None
        customer = repository.get_customer(self.session, customer_id)
        return self._build_conversation(chat, customer)

    def get_featured_products(self, account: AccountConfig) -> list[dict[str, Any]]:
        product_ids = extract_product_ids(account.special_instructions)
        if not product_ids:
            return []
        products = {
            p.id: p
            for p in repository.get_products_by_ids(self.session, account.user_id, product_ids)
        }
        return [
            {
                "id": str(pid),
                "name": products[pid].name,
                "description": products[pid].description,
                "price": products[pid].price,
                "imageUrl": products[pid].image_url,
            }
            for pid in product_ids
            if pid in products
        ]

    def _build_account_config(self, profile: Profile) -> AccountConfig:
        store = profile.store_settings
        return AccountConfig(
            user_id=profile.id,
            email=profile.email,
            business_name=profile.business_name,
            agent_webhook_url=(profile.agent_webhook_url or "").strip() or None,
            automation_enabled=profile.automation_enabled,
            buffer_seconds=profile.buffer_seconds,
            max_group_age_seconds=profile.max_group_age_seconds,
            ai_messages_blocked=profile.ai_messages_blocked,
            agent_name=profile.agent_name,
            proactivity_level=profile.proactivity_level,
            customer_treatment=profile.customer_treatment,
            welcome_message=profile.welcome_message,
            call_to_action=profile.call_to_action,
            special_instructions=profile.special_instructions,
            sales_mode=profile.sales_mode,
            payment_methods=profile.payment_methods,
            payment_accounts=list(profile.payment_accounts or []),
            store_info=profile.store_info,
            website=profile.website,
            shipping_rates=list(store.shipping_rates or []) if store else [],
            store=self._build_store(store),
        )

    @staticmethod
    def _build_store(store: StoreSettings | None) -> dict[str, Any] | None:
        if store is None:
            return None
        return {
            "id": str(store.id),
            "storeName": store.store_name,
            "storeSlug": store.store_slug,
            "customDomain": store.custom_domain,
            "storeDescription": store.description,
            "currency": store.currency,
            "whatsappNumber": store.whatsapp_number,
        }

    @staticmethod
    def _build_conversation(chat: Chat, customer: Customer | None) -> ConversationContext:
        return ConversationContext(
            chat_id=chat.id,
            customer_id=chat.customer_id,
            instance_name=chat.instance_name,
            ai_agent_enabled=chat.ai_agent_enabled,
            customer_name=customer.name if customer else None,
            customer_phone=customer.phone if customer else None,
            customer_email=customer.email if customer else None,
            customer_address=customer.address if customer else None,
            customer_city=customer.city if customer else None,
            customer_province=customer.province if customer else None,
        )
