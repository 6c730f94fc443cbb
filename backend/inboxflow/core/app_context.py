from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from fastapi import FastAPI

    from inboxflow.db.session import SessionFactory
    from inboxflow.services.delayed_queue import DelayedGroupQueue
    from inboxflow.services.group_admission import GroupAdmission
    from inboxflow.services.media_resolver import MediaFetcher, MediaResolver
    from inboxflow.services.queue_worker import QueueWorker
    from inboxflow.whatsapp.dispatcher import OutboundDispatcher


@dataclass(slots=True)
class AppContext:
    admission: GroupAdmission
    delayed_queue: DelayedGroupQueue
    dispatcher: OutboundDispatcher
    media_resolver: MediaResolver
    # Builds a Graph API client for (phone_number_id, access_token)
    media_fetcher_factory: Callable[[str, str], MediaFetcher]
    session_factory: SessionFactory | None = None
    lock_stale_seconds: int = 30
    worker: QueueWorker | None = None


def set_app_context(app: FastAPI, ctx: AppContext) -> None:
    # Store one typed context object under app.state
    app.state.ctx = ctx


def get_app_context(app: FastAPI) -> AppContext:
    # Retrieve and cast from app.state
    return cast("AppContext", app.state.ctx)
