"""Group lock staleness and bounded media polling."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from sqlalchemy import update

from inboxflow.core.logging import RequestIdFilter, bind_group_id
from inboxflow.db import repository
from inboxflow.db.models import MessageType, QueuedMessage
from inboxflow.db.session import db_transaction
from inboxflow.db.types import utcnow
from inboxflow.services.group_lock import GroupLock, LockAttempt
from inboxflow.services.media_wait import MediaWaitPolicy, load_group_snapshot, wait_for_media


@pytest.mark.unit
def test_lock_is_exclusive_until_released(seed_account, queue_message, session_factory):
    account = seed_account()
    queue_message(account, group_id="g-lock", sequence_number=1)
    lock = GroupLock(stale_after_seconds=30, session_factory=session_factory)

    assert lock.try_acquire("g-lock") is LockAttempt.acquired
    assert lock.try_acquire("g-lock") is LockAttempt.held
    lock.release("g-lock")
    assert lock.try_acquire("g-lock") is LockAttempt.acquired


@pytest.mark.unit
def test_lock_staleness_is_configurable(seed_account, queue_message, session_factory):
    account = seed_account()
    queue_message(account, group_id="g-stale", sequence_number=1)
    with db_transaction(session_factory) as session:
        session.execute(update(QueuedMessage).values(processing_started_at=utcnow() - timedelta(seconds=20)))

    assert GroupLock(stale_after_seconds=30, session_factory=session_factory).try_acquire("g-stale") is LockAttempt.held
    assert GroupLock(stale_after_seconds=10, session_factory=session_factory).try_acquire("g-stale") is LockAttempt.acquired


@pytest.mark.unit
def test_lock_needs_pending_rows(session_factory):
    assert GroupLock(session_factory=session_factory).try_acquire("g-none") is LockAttempt.empty


@pytest.mark.asyncio
async def test_media_wait_returns_once_media_resolves(seed_account, queue_message, session_factory):
    account = seed_account()
    row_id = queue_message(
        account, group_id="g-wait", sequence_number=1, message_type=MessageType.image, media_processed=False
    )
    rows = load_group_snapshot("g-wait", session_factory)
    polls: list[float] = []

    async def resolve_on_first_poll(seconds: float) -> None:
        polls.append(seconds)
        with db_transaction(session_factory) as session:
            repository.mark_media_resolved(session, row_id, "https://inbox.example.com/media/x.png")

    fresh = await wait_for_media(
        "g-wait",
        rows,
        MediaWaitPolicy(max_wait_ms=5000, poll_interval_ms=250),
        session_factory=session_factory,
        sleep=resolve_on_first_poll,
    )

    assert polls == [0.25]
    assert fresh[0].media_public_url == "https://inbox.example.com/media/x.png"
    assert not fresh[0].media_pending


@pytest.mark.asyncio
async def test_media_wait_ignores_rows_that_joined_later(seed_account, queue_message, session_factory):
    account = seed_account()
    queue_message(account, group_id="g-late", sequence_number=1, message_type=MessageType.audio, media_processed=False)
    rows = load_group_snapshot("g-late", session_factory)

    async def late_arrival(_seconds: float) -> None:
        if len(load_group_snapshot("g-late", session_factory)) == 1:
            queue_message(account, group_id="g-late", sequence_number=2, content="otra cosa")

    fresh = await wait_for_media(
        "g-late",
        rows,
        MediaWaitPolicy(max_wait_ms=60, poll_interval_ms=20),
        session_factory=session_factory,
        sleep=late_arrival,
    )

    assert [r.sequence_number for r in fresh] == [1]
    assert fresh[0].media_pending


@pytest.mark.asyncio
async def test_text_only_group_does_not_wait(seed_account, queue_message, session_factory):
    account = seed_account()
    queue_message(account, group_id="g-text", sequence_number=1)
    rows = load_group_snapshot("g-text", session_factory)

    async def fail_if_called(_seconds: float) -> None:
        raise AssertionError("should not poll")

    assert await wait_for_media("g-text", rows, MediaWaitPolicy(), session_factory=session_factory, sleep=fail_if_called) == rows


@pytest.mark.unit
def test_group_id_is_attached_to_log_records():
    record = logging.LogRecord("inboxflow", logging.INFO, __file__, 1, "msg", None, None)
    with bind_group_id("g-log"):
        RequestIdFilter().filter(record)
    assert record.group_id == "g-log"
    assert record.request_id == "-"

    RequestIdFilter().filter(record)
    assert record.group_id == "-"
