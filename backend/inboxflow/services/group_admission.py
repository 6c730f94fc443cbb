"""Debounce admission: decides when a group may be handed to the processor.

A group is ready once ``now - group_last_message_at >= buffer_seconds`` (the
account's debounce window) or once its first message is older than the
maximum group age, which bounds how long a fast typist can postpone the
agent call. A group that is not ready gets exactly one deferred re-check on
the delayed queue; re-checks are idempotent, so a group that stops receiving
messages is processed once no matter how many triggers it saw.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from inboxflow.core.logging import bind_group_id
from inboxflow.db import repository
from inboxflow.db.session import SessionFactory, db_session
from inboxflow.db.types import utcnow
from inboxflow.services.account_context import AccountContextService
from inboxflow.services.delayed_queue import DelayedGroupQueue
from inboxflow.services.group_processor import GroupProcessor, GroupRunResult

logger = logging.getLogger(__name__)

AdmissionDecision = Literal["missing", "deferred", "processed", "failed"]


@dataclass(slots=True)
class AdmissionResult:
    group_id: str
    decision: AdmissionDecision
    retry_in_seconds: float | None = None
    run: GroupRunResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "decision": self.decision,
            "retry_in_seconds": self.retry_in_seconds,
            "run": self.run.to_dict() if self.run else None,
            "error": self.error,
        }


def is_group_ready(
    now: datetime,
    last_message_at: datetime,
    buffer_seconds: int,
    *,
    first_received_at: datetime | None = None,
    max_group_age_seconds: int | None = None,
) -> bool:
    if now - last_message_at >= timedelta(seconds=buffer_seconds):
        return True
    if first_received_at is not None and max_group_age_seconds:
        return now - first_received_at >= timedelta(seconds=max_group_age_seconds)
    return False


class GroupAdmission:
    def __init__(
        self,
        processor: GroupProcessor,
        delayed_queue: DelayedGroupQueue,
        *,
        default_buffer_seconds: int = 10,
        default_max_group_age_seconds: int = 120,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.processor = processor
        self.delayed_queue = delayed_queue
        self.default_buffer_seconds = default_buffer_seconds
        self.default_max_group_age_seconds = default_max_group_age_seconds
        self._session_factory = session_factory
        self._clock = clock

    async def invoke(self, group_id: str | None = None) -> list[AdmissionResult]:
        """Targeted check when ``group_id`` is given, scan over all accounts otherwise."""
        if group_id:
            return [await self.check_group(group_id)]
        return await self.scan()

    async def check_group(self, group_id: str) -> AdmissionResult:
        with bind_group_id(group_id):
            with db_session(self._session_factory) as session:
                activity = repository.get_group_activity(session, group_id)
                account = (
                    AccountContextService(session).get_account_config(activity.user_id)
                    if activity
                    else None
                )
            if activity is None:
                logger.info("Group %s not found", group_id)
                return AdmissionResult(group_id=group_id, decision="missing")

            buffer_seconds = (
                account.effective_buffer_seconds(self.default_buffer_seconds)
                if account
                else self.default_buffer_seconds
            )
            max_age = (
                account.effective_max_group_age_seconds(self.default_max_group_age_seconds)
                if account
                else self.default_max_group_age_seconds
            )
            now = self._clock()
            if not is_group_ready(
                now,
                activity.last_message_at,
                buffer_seconds,
                first_received_at=activity.first_received_at,
                max_group_age_seconds=max_age,
            ):
                delay = buffer_seconds + 1
                self.delayed_queue.schedule(group_id, delay)
                logger.info(
                    "Group %s not ready (last message %.1fs ago, buffer %ds), re-check in %ds",
                    group_id,
                    (now - activity.last_message_at).total_seconds(),
                    buffer_seconds,
                    delay,
                )
                return AdmissionResult(group_id=group_id, decision="deferred", retry_in_seconds=delay)

            run = await self.processor.process_group(group_id)
            return AdmissionResult(group_id=group_id, decision="processed", run=run)

    async def scan(self) -> list[AdmissionResult]:
        """Process every ready group of every account with automation enabled.

        One group's failure is recorded and does not stop the scan.
        """
        now = self._clock()
        with db_session(self._session_factory) as session:
            accounts = AccountContextService(session).list_automation_accounts()
            ready: list[str] = []
            for account in accounts:
                buffer_seconds = account.effective_buffer_seconds(self.default_buffer_seconds)
                cutoff = now - timedelta(seconds=buffer_seconds)
                ready.extend(repository.find_ready_group_ids(session, account.user_id, cutoff=cutoff))

        logger.info("Scan found %d ready group(s) across %d account(s)", len(ready), len(accounts))
        results: list[AdmissionResult] = []
        for group_id in ready:
            try:
                run = await self.processor.process_group(group_id)
            except Exception as exc:
                results.append(AdmissionResult(group_id=group_id, decision="failed", error=str(exc)))
                continue
            results.append(AdmissionResult(group_id=group_id, decision="processed", run=run))
        return results
