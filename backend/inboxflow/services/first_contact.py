from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from inboxflow.db import repository
from inboxflow.db.session import SessionFactory, db_session
from inboxflow.services.flow_executor import FlowAlreadyExecutedError, FlowExecutor, FlowRunTarget
from inboxflow.whatsapp.dispatcher import ChannelBinding

logger = logging.getLogger(__name__)

FIRST_MESSAGE_TRIGGER = "first_message"
# Flows with a time-based trigger are owned by the inactivity scheduler
_TIME_BASED_TRIGGERS = ("on_inactivity", "on_no_response")


def _enabled(value: Any) -> bool:
    if isinstance(value, dict):
        return bool(value.get("enabled"))
    return bool(value)


def is_first_message_rule(trigger_conditions: dict[str, Any] | None) -> bool:
    conditions = trigger_conditions or {}
    if not _enabled(conditions.get("on_first_message")):
        return False
    return not any(_enabled(conditions.get(key)) for key in _TIME_BASED_TRIGGERS)


class FirstContactService:
    """Runs the welcome flow on a customer's first-ever message."""

    def __init__(self, executor: FlowExecutor, *, session_factory: SessionFactory | None = None) -> None:
        self._executor = executor
        self._session_factory = session_factory

    def is_first_contact(self, chat_id: UUID) -> bool:
        with db_session(self._session_factory) as session:
            return repository.count_customer_messages(session, chat_id) == 0

    def select_flow(self, user_id: UUID, chat_id: UUID) -> UUID | None:
        """First active first-message rule that has not fired for this chat yet."""
        with db_session(self._session_factory) as session:
            candidates = [
                flow
                for flow in repository.list_active_flows(session, user_id)
                if is_first_message_rule(flow.trigger_conditions)
            ]
            if not candidates:
                return None
            if len(candidates) > 1:
                logger.warning(
                    "Account %s has %d first-message flows, using %s",
                    user_id,
                    len(candidates),
                    candidates[0].id,
                )
            flow = candidates[0]
            if repository.flow_execution_exists(session, flow.id, chat_id, FIRST_MESSAGE_TRIGGER):
                logger.info("Welcome flow %s already ran for chat %s", flow.id, chat_id)
                return None
            return flow.id

    async def run_welcome_flow(
        self,
        *,
        user_id: UUID,
        customer_id: UUID,
        chat_id: UUID,
        customer_phone: str | None,
        instance_name: str | None,
    ) -> bool:
        """Returns True when a welcome flow ran and owns the reply for this group.

        Failures are logged and return False so the agent path answers instead.
        """
        flow_id = self.select_flow(user_id, chat_id)
        if flow_id is None:
            return False
        if not customer_phone:
            logger.info("Customer %s has no phone, skipping welcome flow", customer_id)
            return False

        target = FlowRunTarget(
            flow_id=flow_id,
            user_id=user_id,
            customer_id=customer_id,
            chat_id=chat_id,
            customer_phone=customer_phone,
            binding=ChannelBinding(user_id=user_id, instance_name=instance_name),
        )
        try:
            await self._executor.execute(target, FIRST_MESSAGE_TRIGGER)
        except FlowAlreadyExecutedError:
            logger.info("Welcome flow %s claimed concurrently for chat %s", flow_id, chat_id)
            return False
        except Exception:
            logger.exception("Welcome flow %s failed for chat %s, falling back to agent", flow_id, chat_id)
            return False
        return True
