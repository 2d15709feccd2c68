"""Shared fixtures: a throwaway sqlite database and an in-memory Google Calendar."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from calendar_sync import db, repositories, settings
from calendar_sync.db_init import init_db
from calendar_sync.errors import EventNotFound
from calendar_sync.services import (
    google_calendar_service,
    google_oauth,
    inbound_reconciler,
    outbound_dispatcher,
    token_manager,
)

USER_ID = "user-1"


@pytest.fixture(autouse=True)
def sync_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'calendar_sync.db'}")
    monkeypatch.setenv("GOOGLE_TOKEN_ENCRYPTION_KEY", "test-encryption-key")
    monkeypatch.setenv("BACKEND_SESSION_SECRET", "test-secret")
    monkeypatch.setenv("CALENDAR_CLIENT_ID", "client-id")
    monkeypatch.setenv("CALENDAR_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("CALENDAR_REDIRECT_URI", "http://test/v1/oauth/google/callback")
    monkeypatch.setenv("RUN_BACKGROUND_WORKER", "false")
    monkeypatch.setenv("TOKEN_REFRESH_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("PROVIDER_BACKOFF_SECONDS", "0")
    monkeypatch.setattr(settings, "_settings", None)
    monkeypatch.setattr(outbound_dispatcher, "_wakeup", None)
    token_manager._refresh_locks.clear()
    inbound_reconciler._inflight.clear()
    yield
    token_manager._refresh_locks.clear()
    inbound_reconciler._inflight.clear()


@pytest.fixture
async def database():
    await init_db()
    yield
    await db.dispose_engine()


@pytest.fixture
async def linked_user(database) -> str:
    await repositories.store_calendar_tokens(
        USER_ID,
        google_oauth.encrypt_token("refresh-1"),
        access_token="access-0",
        token_expires_at=(datetime.now(UTC) + timedelta(hours=1)).isoformat(),
        scope=google_oauth.CALENDAR_SCOPE,
        google_email="user@example.com",
        timezone_name="UTC",
    )
    return USER_ID


class FakeCalendar:
    """Stands in for the Google Calendar REST client at module level."""

    def __init__(self) -> None:
        self.events: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.failures: list[Exception] = []
        self.pages: list[tuple[list[dict], str | None]] | None = None
        self.on_create: Callable[[dict], Any] | None = None
        self.clock = datetime(2025, 6, 1, 8, 0, tzinfo=UTC)
        self.timezone = "UTC"
        self._seq = 0

    def _raise_pending_failure(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def _stamp(self) -> str:
        self.clock += timedelta(seconds=1)
        return self.clock.isoformat().replace("+00:00", "Z")

    def calls_of(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]

    def add_event(self, event_id: str, **fields: Any) -> dict:
        event = {"id": event_id, "status": "confirmed", "updated": self._stamp(), **fields}
        self.events[event_id] = event
        return event

    async def create_event(self, user_id: str, calendar_id: str, payload: dict) -> dict:
        self.calls.append(("create", calendar_id, payload))
        self._raise_pending_failure()
        self._seq += 1
        event = {**payload, "id": f"evt-{self._seq}", "status": "confirmed", "updated": self._stamp()}
        self.events[event["id"]] = event
        if self.on_create is not None:
            await self.on_create(event)
        return dict(event)

    async def update_event(self, user_id: str, calendar_id: str, event_id: str, patch: dict) -> dict:
        self.calls.append(("update", calendar_id, event_id, patch))
        self._raise_pending_failure()
        if event_id not in self.events:
            raise EventNotFound(status_code=404, message="Not Found")
        self.events[event_id].update(patch)
        self.events[event_id]["updated"] = self._stamp()
        return dict(self.events[event_id])

    async def delete_event(self, user_id: str, calendar_id: str, event_id: str) -> None:
        self.calls.append(("delete", calendar_id, event_id))
        self._raise_pending_failure()
        self.events.pop(event_id, None)

    async def list_events(
        self,
        user_id: str,
        calendar_id: str,
        time_min: str,
        time_max: str,
        page_token: str | None = None,
    ) -> tuple[list[dict], str | None]:
        self.calls.append(("list", page_token))
        self._raise_pending_failure()
        if self.pages is not None:
            items, next_token = self.pages[int(page_token or 0)]
            return [dict(item) for item in items], next_token
        return [dict(event) for event in self.events.values()], None

    async def get_calendar_timezone(self, user_id: str, calendar_id: str) -> str:
        self.calls.append(("timezone", calendar_id))
        return self.timezone


@pytest.fixture
def fake_calendar(monkeypatch) -> FakeCalendar:
    fake = FakeCalendar()
    for name in ("create_event", "update_event", "delete_event", "list_events", "get_calendar_timezone"):
        monkeypatch.setattr(google_calendar_service, name, getattr(fake, name))
    return fake
