from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from inboxflow.db import repository
from inboxflow.db.session import SessionFactory, db_session
from inboxflow.db.types import QueuedMessageSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MediaWaitPolicy:
    """Bounded polling for media still being republished.

    When the deadline passes the group proceeds with whatever URLs exist;
    missing media is reported as absent.
    """

    max_wait_ms: int = 15000
    poll_interval_ms: int = 1000

    @property
    def max_wait_seconds(self) -> float:
        return self.max_wait_ms / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


def load_group_snapshot(
    group_id: str, session_factory: SessionFactory | None = None
) -> list[QueuedMessageSnapshot]:
    with db_session(session_factory) as session:
        rows = repository.fetch_unsent_group_messages(session, group_id)
        return [QueuedMessageSnapshot.from_row(row) for row in rows]


async def wait_for_media(
    group_id: str,
    rows: list[QueuedMessageSnapshot],
    policy: MediaWaitPolicy,
    *,
    session_factory: SessionFactory | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[QueuedMessageSnapshot]:
    """Re-fetch the group until no media is pending or the policy deadline passes.

    Only rows already in ``rows`` are returned, refreshed; rows that joined the
    group meanwhile belong to the next run.
    """
    if not any(row.media_pending for row in rows):
        return rows

    wanted = {row.id for row in rows}
    started = time.monotonic()
    deadline = started + policy.max_wait_seconds
    pending = sum(1 for row in rows if row.media_pending)
    logger.info("Group %s waiting for %d media item(s)", group_id, pending)

    while time.monotonic() < deadline:
        await sleep(policy.poll_interval_seconds)
        fresh = [
            row for row in load_group_snapshot(group_id, session_factory) if row.id in wanted
        ]
        if fresh:
            rows = fresh
        if not any(row.media_pending for row in rows):
            logger.info(
                "Group %s media ready after %.1fs", group_id, time.monotonic() - started
            )
            return rows

    still_pending = [row.whatsapp_message_id for row in rows if row.media_pending]
    logger.warning(
        "Group %s media wait expired after %.1fs, proceeding without %s",
        group_id,
        policy.max_wait_seconds,
        still_pending,
    )
    return rows
