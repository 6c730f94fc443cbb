from __future__ import annotations

import asyncio
import logging
import time

from inboxflow.services.delayed_queue import DelayedGroupQueue
from inboxflow.services.group_admission import AdmissionResult, GroupAdmission

logger = logging.getLogger(__name__)


class QueueWorker:
    """Background loop that replays deferred re-checks and runs periodic scans.

    Failures of a single group are logged by the processor and observed here;
    the loop itself keeps running.
    """

    def __init__(
        self,
        admission: GroupAdmission,
        delayed_queue: DelayedGroupQueue,
        *,
        poll_interval_seconds: float = 1.0,
        scan_interval_seconds: float = 30.0,
    ) -> None:
        self.admission = admission
        self.delayed_queue = delayed_queue
        self.poll_interval_seconds = poll_interval_seconds
        self.scan_interval_seconds = scan_interval_seconds
        self._last_scan = 0.0

    async def _check(self, group_id: str) -> AdmissionResult | None:
        try:
            return await self.admission.check_group(group_id)
        except Exception as exc:
            logger.error("Deferred re-check of group %s failed: %s", group_id, exc)
            return None

    async def run_due(self, now: float | None = None) -> list[AdmissionResult]:
        due = self.delayed_queue.pop_due(now)
        if not due:
            return []
        logger.debug("Re-checking %d deferred group(s)", len(due))
        results = await asyncio.gather(*(self._check(group_id) for group_id in due))
        return [r for r in results if r is not None]

    async def run_scan_if_due(self, now: float | None = None) -> list[AdmissionResult]:
        now = time.monotonic() if now is None else now
        if self.scan_interval_seconds <= 0 or now - self._last_scan < self.scan_interval_seconds:
            return []
        self._last_scan = now
        try:
            return await self.admission.scan()
        except Exception as exc:
            logger.error("Queue scan failed: %s", exc)
            return []

    async def run_forever(self, stop: asyncio.Event) -> None:
        logger.info(
            "Queue worker started (poll=%.1fs, scan=%.0fs)",
            self.poll_interval_seconds,
            self.scan_interval_seconds,
        )
        while not stop.is_set():
            await self.run_due()
            await self.run_scan_if_due()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Queue worker stopped")
