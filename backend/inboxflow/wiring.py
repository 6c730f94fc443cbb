"""Builds the pipeline services from settings for the HTTP app and the CLI."""

from __future__ import annotations

import logging

from inboxflow.core.app_context import AppContext
from inboxflow.db.session import SessionFactory
from inboxflow.services.agent_client import AgentWebhookClient
from inboxflow.services.delayed_queue import (
    DelayedGroupQueue,
    InMemoryDelayedGroupQueue,
    RedisDelayedGroupQueue,
)
from inboxflow.services.first_contact import FirstContactService
from inboxflow.services.flow_executor import FlowExecutor
from inboxflow.services.group_admission import GroupAdmission
from inboxflow.services.group_lock import GroupLock
from inboxflow.services.group_processor import GroupProcessor
from inboxflow.services.media_resolver import MediaResolver
from inboxflow.services.media_wait import MediaWaitPolicy
from inboxflow.services.queue_worker import QueueWorker
from inboxflow.settings import Settings
from inboxflow.whatsapp.adapter import ChannelSender
from inboxflow.whatsapp.dispatcher import OutboundDispatcher
from inboxflow.whatsapp.twilio_adapter import TwilioWhatsAppAdapter
from inboxflow.whatsapp.whatsapp_api_adapter import WhatsAppApiAdapter

logger = logging.getLogger(__name__)


def _delayed_queue(settings: Settings) -> DelayedGroupQueue:
    redis_url = settings.redis_conn_url
    if redis_url:
        try:
            queue = RedisDelayedGroupQueue(redis_url)
            logger.info("Deferred re-check queue initialized with Redis: %s", redis_url)
            return queue
        except Exception as e:
            logger.warning("Redis connection failed (%s), falling back to in-memory queue", e)
    else:
        logger.info("Deferred re-check queue initialized with in-memory backend")
    return InMemoryDelayedGroupQueue()


def _secondary_sender(settings: Settings) -> ChannelSender | None:
    if not (
        settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_whatsapp_from
    ):
        return None
    logger.info("Twilio configured as secondary outbound provider")
    return TwilioWhatsAppAdapter(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_whatsapp_from,
    )


def build_app_context(
    settings: Settings,
    *,
    session_factory: SessionFactory | None = None,
    delayed_queue: DelayedGroupQueue | None = None,
) -> AppContext:
    """Wire the pipeline services from settings."""

    def meta_adapter(phone_number_id: str, access_token: str) -> WhatsAppApiAdapter:
        return WhatsAppApiAdapter(
            phone_number_id=phone_number_id,
            access_token=access_token,
            graph_base_url=settings.graph_api_base_url,
        )

    delayed_queue = delayed_queue or _delayed_queue(settings)
    dispatcher = OutboundDispatcher(
        meta_sender_factory=meta_adapter,
        secondary_sender=_secondary_sender(settings),
        session_factory=session_factory,
    )
    first_contact = FirstContactService(
        FlowExecutor(dispatcher, session_factory=session_factory),
        session_factory=session_factory,
    )
    processor = GroupProcessor(
        lock=GroupLock(
            stale_after_seconds=settings.group_lock_stale_seconds,
            session_factory=session_factory,
        ),
        agent_client=AgentWebhookClient(timeout_seconds=settings.agent_webhook_timeout_seconds),
        dispatcher=dispatcher,
        first_contact=first_contact,
        media_wait_policy=MediaWaitPolicy(
            max_wait_ms=settings.media_wait_max_ms,
            poll_interval_ms=settings.media_wait_poll_interval_ms,
        ),
        store_base_url=settings.store_base_url,
        session_factory=session_factory,
    )
    admission = GroupAdmission(
        processor,
        delayed_queue,
        default_buffer_seconds=settings.default_buffer_seconds,
        default_max_group_age_seconds=settings.max_group_age_seconds,
        session_factory=session_factory,
    )
    return AppContext(
        admission=admission,
        delayed_queue=delayed_queue,
        dispatcher=dispatcher,
        media_resolver=MediaResolver(
            storage_dir=settings.media_storage_dir,
            public_base_url=settings.public_base_url,
            session_factory=session_factory,
        ),
        media_fetcher_factory=meta_adapter,
        session_factory=session_factory,
        lock_stale_seconds=settings.group_lock_stale_seconds,
        worker=QueueWorker(
            admission,
            delayed_queue,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
            scan_interval_seconds=settings.queue_scan_interval_seconds,
        ),
    )

