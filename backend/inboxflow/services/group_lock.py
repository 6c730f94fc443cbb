"""Soft mutual-exclusion lock over an inbound queue group.

The lock is the ``processing_started_at`` timestamp on the group's unsent
rows. A fresh timestamp means another worker owns the group; one older than
the staleness window belongs to a crashed worker and may be reclaimed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from inboxflow.db import repository
from inboxflow.db.session import SessionFactory, db_transaction
from inboxflow.db.types import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOCK_STALE_SECONDS = 30


class LockAttempt(str, Enum):
    acquired = "acquired"
    held = "held"
    # no unsent rows left in the group
    empty = "empty"


class GroupLock:
    def __init__(
        self,
        *,
        stale_after_seconds: int = DEFAULT_LOCK_STALE_SECONDS,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._session_factory = session_factory
        self._clock = clock

    def is_fresh(self, started_at: datetime | None, now: datetime) -> bool:
        return started_at is not None and now - started_at < self.stale_after

    def try_acquire(self, group_id: str) -> LockAttempt:
        """Claim the group for this invocation.

        ``held`` means another worker owns a fresh lock; ``empty`` means every
        row of the group was already delivered.
        """
        now = self._clock()
        with db_transaction(self._session_factory) as session:
            stamps = repository.get_group_lock_timestamps(session, group_id)
            if not stamps:
                logger.debug("Group %s has no pending rows", group_id)
                return LockAttempt.empty

            fresh = [s for s in stamps if self.is_fresh(s, now)]
            if fresh:
                logger.info(
                    "Group %s already locked since %s, skipping", group_id, max(fresh).isoformat()  # type: ignore[type-var]
                )
                return LockAttempt.held

            if any(s is not None for s in stamps):
                logger.warning("Reclaiming stale lock on group %s", group_id)

            claimed = repository.claim_group(
                session, group_id, now=now, stale_before=now - self.stale_after
            )
            return LockAttempt.acquired if claimed > 0 else LockAttempt.held

    def release(self, group_id: str) -> None:
        with db_transaction(self._session_factory) as session:
            repository.clear_group_lock(session, group_id)
        logger.debug("Released lock on group %s", group_id)
