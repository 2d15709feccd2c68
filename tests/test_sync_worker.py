from __future__ import annotations

import pytest

from calendar_sync import repositories
from calendar_sync.errors import TransientProviderError
from calendar_sync.workers import sync_worker

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def fresh_schedule(monkeypatch):
    monkeypatch.setattr(sync_worker, "_last_materialized", None)
    monkeypatch.setattr(sync_worker, "_last_inbound", None)


async def test_periodic_pass_materializes_drains_and_pulls(linked_user, fake_calendar):
    await repositories.create_routine(linked_user, {"id": "7", "title": "Morning run"})
    fake_calendar.add_event(
        "g1",
        summary="Dentist",
        start={"dateTime": "2099-06-02T14:00:00Z"},
        end={"dateTime": "2099-06-02T15:00:00Z"},
    )

    drained = await sync_worker.run_periodic_pass()

    assert drained == 1
    assert len(fake_calendar.calls_of("create")) == 7
    assert len(fake_calendar.calls_of("list")) == 1
    tasks = await repositories.list_tasks(linked_user, "2099-01-01", "2099-12-31")
    assert [task["title"] for task in tasks] == ["Dentist"]


async def test_interval_gates_materializer_and_inbound(linked_user, fake_calendar):
    await sync_worker.run_periodic_pass()
    fake_calendar.calls.clear()

    assert await sync_worker.run_periodic_pass() == 0
    assert fake_calendar.calls == []


async def test_inbound_failure_for_one_user_does_not_stop_the_pass(linked_user, fake_calendar):
    fake_calendar.failures.extend(TransientProviderError(status_code=503, message="down") for _ in range(3))

    assert await sync_worker.run_inbound_pass() == 0
    link = await repositories.get_calendar_link(linked_user)
    assert link["sync_health"] == "needs_attention"
