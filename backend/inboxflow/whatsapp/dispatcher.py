"""Outbound dispatch: picks the channel a chat is bound to and sends one message."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from inboxflow.db import repository
from inboxflow.db.session import SessionFactory, db_session
from inboxflow.db.types import digits_only
from inboxflow.whatsapp.adapter import ChannelSender, DispatchError

logger = logging.getLogger(__name__)

META_INSTANCE_PREFIX = "meta_"

MetaSenderFactory = Callable[[str, str], ChannelSender]


@dataclass(frozen=True, slots=True)
class ChannelBinding:
    """Where a chat's outbound messages go, taken from ``Chat.instance_name``."""

    user_id: UUID
    instance_name: str | None

    @property
    def meta_phone_number_id(self) -> str | None:
        name = self.instance_name or ""
        if name.startswith(META_INSTANCE_PREFIX):
            return name[len(META_INSTANCE_PREFIX):] or None
        return None


class OutboundDispatcher:
    def __init__(
        self,
        *,
        meta_sender_factory: MetaSenderFactory,
        secondary_sender: ChannelSender | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._meta_sender_factory = meta_sender_factory
        self._secondary_sender = secondary_sender
        self._session_factory = session_factory

    def resolve_sender(self, binding: ChannelBinding) -> ChannelSender:
        """Cloud API when the account has matching credentials, else the secondary provider."""
        with db_session(self._session_factory) as session:
            credential = None
            phone_number_id = binding.meta_phone_number_id
            if phone_number_id:
                credential = repository.get_meta_credential_by_phone_number_id(session, phone_number_id)
                if credential is not None and credential.user_id != binding.user_id:
                    logger.warning(
                        "Credential for %s belongs to another account, ignoring", phone_number_id
                    )
                    credential = None
            if credential is None:
                credential = repository.get_latest_meta_credential(session, binding.user_id)
            if credential is not None:
                return self._meta_sender_factory(credential.phone_number_id, credential.access_token)

        if self._secondary_sender is None:
            raise DispatchError(
                f"No outbound channel configured for account {binding.user_id}", provider="none"
            )
        return self._secondary_sender

    def dispatch(self, binding: ChannelBinding, destination: str, text: str) -> str | None:
        """Send one text message and return the provider message id."""
        to_phone = digits_only(destination)
        if not to_phone:
            raise DispatchError("Destination phone is empty", provider="none")
        sender = self.resolve_sender(binding)
        try:
            message_id = sender.send_text(to_phone, text)
        except DispatchError as exc:
            logger.error("Send via %s to %s failed: %s", sender.provider, to_phone, exc)
            raise
        logger.info("Sent message via %s to %s (id=%s)", sender.provider, to_phone, message_id)
        return message_id

    def dispatch_media(
        self,
        binding: ChannelBinding,
        destination: str,
        media_type: str,
        media_url: str,
        caption: str | None = None,
    ) -> str | None:
        to_phone = digits_only(destination)
        if not to_phone:
            raise DispatchError("Destination phone is empty", provider="none")
        sender = self.resolve_sender(binding)
        try:
            message_id = sender.send_media(to_phone, media_type, media_url, caption)
        except DispatchError as exc:
            logger.error("Media send via %s to %s failed: %s", sender.provider, to_phone, exc)
            raise
        return message_id

    async def adispatch(self, binding: ChannelBinding, destination: str, text: str) -> str | None:
        return await asyncio.to_thread(self.dispatch, binding, destination, text)

    async def adispatch_media(
        self,
        binding: ChannelBinding,
        destination: str,
        media_type: str,
        media_url: str,
        caption: str | None = None,
    ) -> str | None:
        return await asyncio.to_thread(
            self.dispatch_media, binding, destination, media_type, media_url, caption
        )
