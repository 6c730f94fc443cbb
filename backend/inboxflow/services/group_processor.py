"""Lock-and-process state machine for one inbound queue group.

States::

    UNCLAIMED -> LOCKED -> MEDIA_WAIT -> PERSISTING -> AGENT_CALL -> REPLY_RELAY -> DONE
                                                  \\-> FAILED (from any step)

Every step is safe to re-run: persistence is keyed on the channel message id
and delivered rows are flagged ``sent_to_webhook``, so an invocation that
crashed can be retried from scratch once its lock is released or goes stale.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from inboxflow.core.logging import bind_group_id
from inboxflow.db import repository
from inboxflow.db.models import MessageStatus, MessageType, SenderType
from inboxflow.db.session import SessionFactory, db_session, db_transaction
from inboxflow.db.types import MessageToSave, QueuedMessageSnapshot, utcnow
from inboxflow.services.account_context import AccountConfig, AccountContextService, ConversationContext
from inboxflow.services.agent_client import AgentWebhookClient, extract_reply_text
from inboxflow.services.agent_payload import build_agent_payload
from inboxflow.services.first_contact import FirstContactService
from inboxflow.services.group_lock import GroupLock, LockAttempt
from inboxflow.services.media_wait import MediaWaitPolicy, load_group_snapshot, wait_for_media
from inboxflow.whatsapp.adapter import DispatchError
from inboxflow.whatsapp.dispatcher import ChannelBinding, OutboundDispatcher

logger = logging.getLogger(__name__)


class GroupState(str, Enum):
    unclaimed = "UNCLAIMED"
    locked = "LOCKED"
    media_wait = "MEDIA_WAIT"
    persisting = "PERSISTING"
    agent_call = "AGENT_CALL"
    reply_relay = "REPLY_RELAY"
    done = "DONE"
    failed = "FAILED"


class GroupOutcome(str, Enum):
    locked_elsewhere = "locked_elsewhere"
    nothing_pending = "nothing_pending"
    welcome_flow = "welcome_flow"
    automation_disabled = "automation_disabled"
    no_webhook = "no_webhook"
    quota_exceeded = "quota_exceeded"
    no_reply = "no_reply"
    replied = "replied"
    send_failed = "send_failed"


@dataclass(slots=True)
class GroupRunResult:
    group_id: str
    state: GroupState = GroupState.unclaimed
    outcome: GroupOutcome | None = None
    message_count: int = 0
    reply_text: str | None = None
    provider_message_id: str | None = None
    history: list[GroupState] = field(default_factory=list)

    def advance(self, state: GroupState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Group %s -> %s", self.group_id, state.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "message_count": self.message_count,
            "reply_text": self.reply_text,
            "provider_message_id": self.provider_message_id,
        }


def _customer_metadata(row: QueuedMessageSnapshot) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if row.media_public_url:
        metadata["mediaUrl"] = row.media_public_url
        metadata[f"{row.message_type.value}Url"] = row.media_public_url
    if row.quoted_metadata:
        metadata["quotedMessage"] = row.quoted_metadata
    metadata["groupId"] = row.group_id
    return metadata


class GroupProcessor:
    def __init__(
        self,
        *,
        lock: GroupLock,
        agent_client: AgentWebhookClient,
        dispatcher: OutboundDispatcher,
        first_contact: FirstContactService,
        media_wait_policy: MediaWaitPolicy | None = None,
        store_base_url: str = "",
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.lock = lock
        self.agent_client = agent_client
        self.dispatcher = dispatcher
        self.first_contact = first_contact
        self.media_wait_policy = media_wait_policy or MediaWaitPolicy()
        self.store_base_url = store_base_url
        self._session_factory = session_factory
        self._clock = clock

    async def process_group(self, group_id: str) -> GroupRunResult:
        """Run one group to completion.

        Returns quietly when another worker holds the group or nothing is
        pending. Errors are logged with the group id and re-raised; the lock
        is cleared in every case.
        """
        result = GroupRunResult(group_id=group_id)
        with bind_group_id(group_id):
            attempt = self.lock.try_acquire(group_id)
            if attempt is LockAttempt.empty:
                result.outcome = GroupOutcome.nothing_pending
                return result
            if attempt is LockAttempt.held:
                result.outcome = GroupOutcome.locked_elsewhere
                return result
            result.advance(GroupState.locked)
            try:
                await self._run(result)
                result.advance(GroupState.done)
                logger.info(
                    "Group %s done: outcome=%s messages=%d",
                    group_id,
                    result.outcome.value if result.outcome else None,
                    result.message_count,
                )
                return result
            except Exception:
                failed_in = result.state
                result.advance(GroupState.failed)
                logger.exception("Group %s failed during %s", group_id, failed_in.value)
                raise
            finally:
                self.lock.release(group_id)

    async def _run(self, result: GroupRunResult) -> None:
        group_id = result.group_id
        rows = load_group_snapshot(group_id, self._session_factory)
        if not rows:
            result.outcome = GroupOutcome.nothing_pending
            return

        result.advance(GroupState.media_wait)
        rows = await wait_for_media(
            group_id, rows, self.media_wait_policy, session_factory=self._session_factory
        )
        result.message_count = len(rows)

        first = rows[0]
        with db_session(self._session_factory) as session:
            contexts = AccountContextService(session)
            account = contexts.get_account_config(first.user_id)
            conversation = contexts.get_conversation(first.customer_id, first.chat_id)
            featured = contexts.get_featured_products(account) if account else []
        if account is None or conversation is None:
            raise LookupError(f"Group {group_id} references a missing account or chat")

        # Counted before persisting so the customer's very first message is seen as such
        first_contact = self.first_contact.is_first_contact(conversation.chat_id)

        # Rows are marked delivered before any flow step runs
        result.advance(GroupState.persisting)
        self._persist_and_mark_sent(rows)

        welcome_handled = False
        if first_contact:
            logger.info("Group %s is the first contact for chat %s", group_id, conversation.chat_id)
            welcome_handled = await self.first_contact.run_welcome_flow(
                user_id=account.user_id,
                customer_id=conversation.customer_id,
                chat_id=conversation.chat_id,
                customer_phone=conversation.customer_phone,
                instance_name=conversation.instance_name,
            )

        if welcome_handled:
            result.outcome = GroupOutcome.welcome_flow
            self._touch_chat(conversation)
            return

        guard = self._guard(account, conversation)
        if guard is not None:
            result.outcome = guard
            return

        result.advance(GroupState.agent_call)
        payload = build_agent_payload(
            group_id=group_id,
            rows=rows,
            account=account,
            conversation=conversation,
            featured_products=featured,
            store_base_url=self.store_base_url,
            now=self._clock(),
        )
        logger.info("Group %s sending %d message(s) to agent webhook", group_id, len(rows))
        response = await self.agent_client.apost(account.agent_webhook_url, payload)  # type: ignore[arg-type]

        result.advance(GroupState.reply_relay)
        reply = extract_reply_text(response)
        if reply is None:
            logger.info("Group %s: agent returned no usable reply", group_id)
            result.outcome = GroupOutcome.no_reply
        elif not conversation.customer_phone:
            logger.info("Group %s: customer has no phone, reply not relayed", group_id)
            result.reply_text = reply
            result.outcome = GroupOutcome.no_reply
        else:
            result.reply_text = reply
            await self._relay(result, account, conversation, reply)

        self._touch_chat(conversation)

    def _persist_and_mark_sent(self, rows: list[QueuedMessageSnapshot]) -> None:
        now = self._clock()
        with db_transaction(self._session_factory) as session:
            inserted = 0
            for row in rows:
                saved = repository.save_message_once(
                    session,
                    MessageToSave(
                        chat_id=row.chat_id,
                        content=row.message_content,
                        sender_type=SenderType.customer,
                        message_type=row.message_type,
                        status=MessageStatus.received,
                        whatsapp_message_id=row.whatsapp_message_id,
                        metadata=_customer_metadata(row),
                        created_at=row.received_at,
                    ),
                )
                inserted += int(saved)
            repository.mark_messages_sent(session, [row.id for row in rows], sent_at=now)
        logger.info("Persisted %d of %d queued message(s)", inserted, len(rows))

    def _guard(self, account: AccountConfig, conversation: ConversationContext) -> GroupOutcome | None:
        if not conversation.ai_agent_enabled:
            logger.info("Automation disabled for chat %s", conversation.chat_id)
            self._touch_chat(conversation)
            return GroupOutcome.automation_disabled
        if not account.agent_webhook_url:
            logger.info("Account %s has no agent webhook configured", account.user_id)
            self._touch_chat(conversation)
            return GroupOutcome.no_webhook
        if account.ai_messages_blocked:
            logger.warning(
                "Account %s exceeded its message quota, handing chat %s to a human",
                account.user_id,
                conversation.chat_id,
            )
            with db_transaction(self._session_factory) as session:
                repository.disable_chat_automation(session, conversation.chat_id, self._clock())
            return GroupOutcome.quota_exceeded
        return None

    async def _relay(
        self,
        result: GroupRunResult,
        account: AccountConfig,
        conversation: ConversationContext,
        reply: str,
    ) -> None:
        binding = ChannelBinding(user_id=account.user_id, instance_name=conversation.instance_name)
        status = MessageStatus.sent
        try:
            result.provider_message_id = await self.dispatcher.adispatch(
                binding, conversation.customer_phone, reply  # type: ignore[arg-type]
            )
            result.outcome = GroupOutcome.replied
        except DispatchError as exc:
            # Not retried; the outbound record is kept with a failed status
            logger.error("Group %s reply could not be sent: %s", result.group_id, exc)
            status = MessageStatus.failed
            result.outcome = GroupOutcome.send_failed

        with db_transaction(self._session_factory) as session:
            repository.create_message(
                session,
                MessageToSave(
                    chat_id=conversation.chat_id,
                    content=reply,
                    sender_type=SenderType.agent,
                    message_type=MessageType.text,
                    status=status,
                    whatsapp_message_id=result.provider_message_id,
                    metadata={"groupId": result.group_id},
                ),
            )

    def _touch_chat(self, conversation: ConversationContext) -> None:
        with db_transaction(self._session_factory) as session:
            repository.touch_chat(session, conversation.chat_id, self._clock())
