"""Processor invocation endpoint."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from inboxflow.core.app_context import AppContext
from inboxflow.main import create_app
from inboxflow.services.delayed_queue import InMemoryDelayedGroupQueue
from inboxflow.services.group_admission import GroupAdmission
from inboxflow.services.media_resolver import MediaResolver


@pytest.fixture
def client(session_factory, build_processor, dispatcher, tmp_path):
    queue = InMemoryDelayedGroupQueue()
    ctx = AppContext(
        admission=GroupAdmission(build_processor(), queue, session_factory=session_factory),
        delayed_queue=queue,
        dispatcher=dispatcher,
        media_resolver=MediaResolver(
            storage_dir=tmp_path, public_base_url="https://inbox.example.com", session_factory=session_factory
        ),
        media_fetcher_factory=lambda _pnid, _token: None,  # type: ignore[arg-type,return-value]
        session_factory=session_factory,
    )
    return TestClient(create_app(ctx))


@pytest.mark.integration
def test_targeted_invocation_processes_ready_group(client, seed_account, queue_message, fake_agent):
    account = seed_account()
    queue_message(account, group_id="g-api", sequence_number=1, age_seconds=30)

    response = client.post("/api/queue/process", json={"group_id": "g-api"})

    assert response.status_code == 200
    body = response.json()
    assert body["mode"] == "targeted"
    assert body["processed"] == 1
    assert body["results"][0]["run"]["outcome"] == "replied"
    assert len(fake_agent.calls) == 1


@pytest.mark.integration
def test_targeted_invocation_defers_recent_group(client, seed_account, queue_message, fake_agent):
    account = seed_account()
    queue_message(account, group_id="g-busy", sequence_number=1, age_seconds=1)

    body = client.post("/api/queue/process", json={"group_id": "g-busy"}).json()

    assert body["deferred"] == 1
    assert body["results"][0]["retry_in_seconds"] == 11
    assert fake_agent.calls == []


@pytest.mark.integration
def test_empty_body_scans_all_accounts(client, seed_account, queue_message, fake_agent):
    account = seed_account()
    queue_message(account, group_id="g-scan-1", sequence_number=1, age_seconds=60)

    body = client.post("/api/queue/process").json()

    assert body["mode"] == "scan"
    assert [r["group_id"] for r in body["results"]] == ["g-scan-1"]
    assert len(fake_agent.calls) == 1
