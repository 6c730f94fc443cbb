from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from inboxflow.db import repository
from inboxflow.db.models import FlowExecutionStatus, FlowStepType, MessageStatus, MessageType, SenderType
from inboxflow.db.session import SessionFactory, db_session, db_transaction
from inboxflow.db.types import MessageToSave, utcnow
from inboxflow.whatsapp.dispatcher import ChannelBinding, OutboundDispatcher

logger = logging.getLogger(__name__)

# Pause between consecutive outbound steps to stay under provider rate limits
INTER_STEP_PAUSE_SECONDS = 1.0

_STEP_MEDIA_TYPES = {
    FlowStepType.image: MessageType.image,
    FlowStepType.video: MessageType.video,
    FlowStepType.audio: MessageType.audio,
    FlowStepType.file: MessageType.document,
}


class FlowAlreadyExecutedError(Exception):
    """A flow already ran for this chat and trigger type."""


@dataclass(frozen=True, slots=True)
class FlowStepSpec:
    step_order: int
    step_type: FlowStepType
    content: str | None
    media_url: str | None
    delay_seconds: int | None

    def media_urls(self) -> list[str]:
        """A step may carry one URL or a JSON list of URLs."""
        if not self.media_url:
            return []
        try:
            parsed = json.loads(self.media_url)
        except ValueError:
            return [self.media_url]
        if isinstance(parsed, list):
            return [str(u) for u in parsed if u]
        return [self.media_url]


@dataclass(frozen=True, slots=True)
class FlowRunTarget:
    flow_id: UUID
    user_id: UUID
    customer_id: UUID
    chat_id: UUID
    customer_phone: str
    binding: ChannelBinding


class FlowExecutor:
    """Runs the ordered steps of an automation flow against one chat.

    An execution row is recorded first; the ``(flow, chat, trigger)`` unique
    key makes a second execution for the same trigger impossible.
    """

    def __init__(
        self,
        dispatcher: OutboundDispatcher,
        *,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        inter_step_pause_seconds: float = INTER_STEP_PAUSE_SECONDS,
    ) -> None:
        self._dispatcher = dispatcher
        self._session_factory = session_factory
        self._clock = clock
        self._sleep = sleep
        self._pause = inter_step_pause_seconds

    async def execute(self, target: FlowRunTarget, trigger_type: str) -> int:
        """Execute the flow; returns the number of steps that sent something."""
        try:
            with db_transaction(self._session_factory) as session:
                execution = repository.create_flow_execution(
                    session,
                    flow_id=target.flow_id,
                    user_id=target.user_id,
                    customer_id=target.customer_id,
                    chat_id=target.chat_id,
                    trigger_type=trigger_type,
                    started_at=self._clock(),
                )
                execution_id = execution.id
        except IntegrityError as exc:
            raise FlowAlreadyExecutedError(
                f"Flow {target.flow_id} already executed for chat {target.chat_id} ({trigger_type})"
            ) from exc

        with db_session(self._session_factory) as session:
            steps = [
                FlowStepSpec(
                    step_order=s.step_order,
                    step_type=s.step_type,
                    content=s.content,
                    media_url=s.media_url,
                    delay_seconds=s.delay_seconds,
                )
                for s in repository.get_flow_steps(session, target.flow_id)
            ]

        logger.info(
            "Starting flow %s for chat %s (trigger: %s, %d steps)",
            target.flow_id,
            target.chat_id,
            trigger_type,
            len(steps),
        )
        executed = 0
        for index, step in enumerate(steps):
            try:
                if await self._run_step(target, step):
                    executed += 1
            except Exception as exc:
                logger.error("Flow %s failed at step %d: %s", target.flow_id, step.step_order, exc)
                self._finish(
                    execution_id,
                    FlowExecutionStatus.failed,
                    f"Failed at step {step.step_order}: {exc}",
                )
                raise
            if index < len(steps) - 1 and step.step_type is not FlowStepType.delay:
                await self._sleep(self._pause)

        self._finish(execution_id, FlowExecutionStatus.completed)
        logger.info("Flow %s completed for chat %s (%d steps sent)", target.flow_id, target.chat_id, executed)
        return executed

    async def _run_step(self, target: FlowRunTarget, step: FlowStepSpec) -> bool:
        if step.step_type is FlowStepType.delay:
            if step.delay_seconds and step.delay_seconds > 0:
                logger.info("Flow %s waiting %ds", target.flow_id, step.delay_seconds)
                await self._sleep(float(step.delay_seconds))
            return False

        if step.step_type is FlowStepType.ai_function:
            logger.info("Flow %s step %d is an AI step, left to the agent", target.flow_id, step.step_order)
            return False

        if step.step_type is FlowStepType.text:
            text = step.content or ""
            if not text.strip():
                return False
            provider_id = await self._dispatcher.adispatch(target.binding, target.customer_phone, text)
            self._record(target, text, MessageType.text, provider_id, {})
            return True

        media_type = _STEP_MEDIA_TYPES[step.step_type]
        urls = step.media_urls()
        for i, url in enumerate(urls):
            # Only the first item of a multi-media step carries the caption
            caption = step.content if i == 0 else None
            provider_id = await self._dispatcher.adispatch_media(
                target.binding, target.customer_phone, media_type.value, url, caption
            )
            self._record(
                target,
                caption or f"[{media_type.value.capitalize()}]",
                media_type,
                provider_id,
                {"mediaUrl": url, f"{media_type.value}Url": url},
            )
        return bool(urls)

    def _record(
        self,
        target: FlowRunTarget,
        content: str,
        message_type: MessageType,
        provider_id: str | None,
        metadata: dict[str, str],
    ) -> None:
        with db_transaction(self._session_factory) as session:
            repository.create_message(
                session,
                MessageToSave(
                    chat_id=target.chat_id,
                    content=content,
                    sender_type=SenderType.business,
                    message_type=message_type,
                    status=MessageStatus.sent,
                    whatsapp_message_id=provider_id,
                    metadata={**metadata, "flowId": str(target.flow_id)},
                ),
            )
            repository.touch_chat(session, target.chat_id, self._clock())

    def _finish(
        self, execution_id: UUID, status: FlowExecutionStatus, error_message: str | None = None
    ) -> None:
        with db_transaction(self._session_factory) as session:
            repository.finish_flow_execution(
                session,
                execution_id,
                status=status,
                completed_at=self._clock(),
                error_message=error_message,
            )
