"""Tests for the Google Calendar REST client and its error taxonomy."""

from __future__ import annotations

import json

import httpx
import pytest

from calendar_sync import repositories
from calendar_sync.errors import (
    AuthExpired,
    EventNotFound,
    ProviderError,
    RateLimited,
    TransientProviderError,
)
from calendar_sync.services import google_calendar_service, sync_health, token_manager

pytestmark = pytest.mark.unit


class _Tokens:
    def __init__(self) -> None:
        self.calls: list[bool] = []

    async def ensure_valid_token(self, user_id: str, force_refresh: bool = False) -> str:
        self.calls.append(force_refresh)
        return "fresh-token" if force_refresh else "stale-token"


@pytest.fixture
def tokens(monkeypatch) -> _Tokens:
    fake = _Tokens()
    monkeypatch.setattr(token_manager, "ensure_valid_token", fake.ensure_valid_token)
    return fake


@pytest.fixture
def mock_api(monkeypatch):
    requests: list[httpx.Request] = []
    responses: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(
        google_calendar_service, "_http_client", lambda timeout=20: httpx.AsyncClient(transport=transport)
    )
    return requests, responses


def _google_error(status: int, reason: str, message: str = "error") -> httpx.Response:
    return httpx.Response(
        status,
        json={"error": {"code": status, "message": message, "errors": [{"reason": reason, "message": message}]}},
    )


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("response", "expected"),
        [
            (_google_error(404, "notFound"), EventNotFound),
            (_google_error(410, "deleted"), EventNotFound),
            (_google_error(500, "backendError"), TransientProviderError),
            (_google_error(503, "backendError"), TransientProviderError),
            (_google_error(403, "rateLimitExceeded"), RateLimited),
            (_google_error(403, "forbidden"), ProviderError),
            (_google_error(400, "invalid"), ProviderError),
        ],
    )
    def test_status_classification(self, response, expected):
        with pytest.raises(expected):
            google_calendar_service.raise_for_provider_status(response)

    def test_retry_after_header_is_honoured(self):
        response = httpx.Response(429, headers={"Retry-After": "7"}, json={"error": {"message": "slow down"}})

        with pytest.raises(RateLimited) as excinfo:
            google_calendar_service.raise_for_provider_status(response)

        assert excinfo.value.retry_after == 7

    def test_missing_retry_after_uses_default_delay(self):
        with pytest.raises(RateLimited) as excinfo:
            google_calendar_service.raise_for_provider_status(_google_error(429, "rateLimitExceeded"))

        assert excinfo.value.retry_after == 60

    def test_client_errors_are_not_transient(self):
        with pytest.raises(ProviderError) as excinfo:
            google_calendar_service.raise_for_provider_status(_google_error(400, "invalid", "bad start"))

        assert not isinstance(excinfo.value, TransientProviderError)
        assert excinfo.value.status_code == 400


class TestRequests:
    async def test_create_event_posts_json_with_bearer_token(self, tokens, mock_api):
        requests, responses = mock_api
        responses.append(httpx.Response(200, json={"id": "evt-1", "updated": "2025-06-01T08:00:00.000Z"}))

        event = await google_calendar_service.create_event("user-1", "primary", {"summary": "Submit report"})

        assert event["id"] == "evt-1"
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/calendar/v3/calendars/primary/events"
        assert requests[0].headers["Authorization"] == "Bearer stale-token"
        assert json.loads(requests[0].content) == {"summary": "Submit report"}

    async def test_unauthorized_forces_one_refresh_and_retries(self, tokens, mock_api):
        requests, responses = mock_api
        responses.extend([httpx.Response(401, json={}), httpx.Response(200, json={"id": "evt-1"})])

        await google_calendar_service.update_event("user-1", "primary", "evt-1", {"summary": "x"})

        assert tokens.calls == [False, True]
        assert requests[1].headers["Authorization"] == "Bearer fresh-token"
        assert requests[1].method == "PATCH"

    async def test_second_unauthorized_disconnects_the_link(self, linked_user, tokens, mock_api):
        _, responses = mock_api
        responses.extend([httpx.Response(401, json={}), httpx.Response(401, json={})])

        with pytest.raises(AuthExpired):
            await google_calendar_service.create_event(linked_user, "primary", {"summary": "x"})

        link = await repositories.get_calendar_link(linked_user)
        assert link["auth_state"] == token_manager.AUTH_STATE_DISCONNECTED
        assert link["sync_health"] == "needs_attention"
        assert (await sync_health.get_status(linked_user)).connected is False

    async def test_network_errors_become_transient(self, tokens, mock_api):
        _, responses = mock_api
        responses.append(httpx.ConnectTimeout("timed out"))

        with pytest.raises(TransientProviderError):
            await google_calendar_service.create_event("user-1", "primary", {"summary": "x"})

    async def test_delete_treats_missing_event_as_done(self, tokens, mock_api):
        requests, responses = mock_api
        responses.append(_google_error(410, "deleted"))

        await google_calendar_service.delete_event("user-1", "primary", "evt-1")

        assert requests[0].method == "DELETE"
        assert requests[0].url.path.endswith("/events/evt-1")

    async def test_list_events_returns_items_and_page_token(self, tokens, mock_api):
        requests, responses = mock_api
        responses.append(httpx.Response(200, json={"items": [{"id": "a"}], "nextPageToken": "p2"}))

        items, next_token = await google_calendar_service.list_events(
            "user-1", "team@group.calendar.google.com", "2025-06-01T00:00:00Z", "2025-07-01T00:00:00Z", "p1"
        )

        assert items == [{"id": "a"}]
        assert next_token == "p2"
        params = requests[0].url.params
        assert params["singleEvents"] == "true"
        assert params["showDeleted"] == "true"
        assert params["pageToken"] == "p1"
        assert params["timeMin"] == "2025-06-01T00:00:00Z"
        assert requests[0].url.path == "/calendar/v3/calendars/team@group.calendar.google.com/events"

    async def test_calendar_timezone_is_read(self, tokens, mock_api):
        _, responses = mock_api
        responses.append(httpx.Response(200, json={"id": "primary", "timeZone": "Europe/Lisbon"}))

        assert await google_calendar_service.get_calendar_timezone("user-1", "primary") == "Europe/Lisbon"
