from __future__ import annotations

import logging
import threading
import time
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_KEY = "inboxflow:group_rechecks"


class DelayedGroupQueue(Protocol):
    """Deferred re-checks of queue groups.

    Scheduling the same group again keeps a single pending entry due at the
    later of the two times.
    """

    def schedule(self, group_id: str, delay_seconds: float) -> None: ...

    def pop_due(self, now: float | None = None, limit: int = 100) -> list[str]: ...


class InMemoryDelayedGroupQueue:
    def __init__(self) -> None:
        # group_id -> due epoch seconds
        self._due: dict[str, float] = {}
        self._lock = threading.Lock()

    def schedule(self, group_id: str, delay_seconds: float) -> None:
        due = time.time() + delay_seconds
        with self._lock:
            self._due[group_id] = max(due, self._due.get(group_id, 0.0))

    def pop_due(self, now: float | None = None, limit: int = 100) -> list[str]:
        now = time.time() if now is None else now
        with self._lock:
            ready = sorted((due, gid) for gid, due in self._due.items() if due <= now)[:limit]
            for _, gid in ready:
                del self._due[gid]
        return [gid for _, gid in ready]

    def pending(self) -> dict[str, float]:
        with self._lock:
            return dict(self._due)


class RedisDelayedGroupQueue:
    """Sorted set keyed by due time; ``ZREM`` decides which worker owns a due group."""

    def __init__(
        self,
        redis_url: str | None = None,
        key: str = DEFAULT_QUEUE_KEY,
        *,
        client: redis.Redis | None = None,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("RedisDelayedGroupQueue needs a redis_url or a client")
            client = redis.from_url(redis_url)
        self._r = client
        self._key = key

    def schedule(self, group_id: str, delay_seconds: float) -> None:
        due = time.time() + delay_seconds
        # GT keeps the later due time when the group is already scheduled
        self._r.zadd(self._key, {group_id: due}, gt=True)

    def pop_due(self, now: float | None = None, limit: int = 100) -> list[str]:
        now = time.time() if now is None else now
        candidates = self._r.zrangebyscore(self._key, "-inf", now, start=0, num=limit)
        claimed: list[str] = []
        for raw in candidates:
            group_id = raw.decode() if isinstance(raw, bytes) else str(raw)
            if self._r.zrem(self._key, group_id):
                claimed.append(group_id)
        return claimed
