from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from calendar_sync.errors import (
    AuthExpired,
    EventNotFound,
    ProviderError,
    RateLimited,
    TransientProviderError,
)
from calendar_sync.services import token_manager
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3"
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def _http_client(timeout: float = 20) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def _events_endpoint(calendar_id: str, event_id: str | None = None) -> str:
    endpoint = f"{CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events"
    if event_id:
        endpoint = f"{endpoint}/{quote(event_id, safe='')}"
    return endpoint


def _error_payload(response: httpx.Response) -> tuple[str, set[str]]:
    try:
        payload = response.json()
    except Exception:
        return response.text, set()
    if not isinstance(payload, dict):
        return response.text, set()
    error = payload.get("error")
    if not isinstance(error, dict):
        return str(payload.get("message") or error or response.text), set()
    reasons = {str(item.get("reason")) for item in error.get("errors") or [] if isinstance(item, dict)}
    return str(error.get("message") or response.text), reasons


def _retry_after(response: httpx.Response) -> float:
    header = response.headers.get("Retry-After")
    if header is not None:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass
    return float(get_settings().default_rate_limit_delay_seconds)


def raise_for_provider_status(response: httpx.Response) -> None:
    """Translate an error response into the sync error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    message, reasons = _error_payload(response)
    if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
        raise RateLimited(retry_after=_retry_after(response), message=message, status_code=status)
    if status == 401:
        raise AuthExpired(f"Google Calendar rejected the access token: {message}")
    if status in {404, 410}:
        raise EventNotFound(status_code=status, message=message)
    if status >= 500:
        raise TransientProviderError(status_code=status, message=message)
    raise ProviderError(status_code=status, message=message)


async def _send(method: str, url: str, access_token: str, params: dict | None, json_body: dict | None) -> httpx.Response:
    headers = {"Authorization": f"Bearer {access_token}"}
    if json_body is not None:
        headers["Content-Type"] = "application/json"
    try:
        async with _http_client() as client:
            return await client.request(method, url, headers=headers, params=params, json=json_body)
    except httpx.HTTPError as exc:
        raise TransientProviderError(status_code=0, message=f"Google Calendar request failed: {exc}") from exc


async def _request(
    user_id: str,
    method: str,
    url: str,
    params: dict | None = None,
    json_body: dict | None = None,
) -> httpx.Response:
    access_token = await token_manager.ensure_valid_token(user_id)
    response = await _send(method, url, access_token, params, json_body)
    if response.status_code == 401:
        access_token = await token_manager.ensure_valid_token(user_id, force_refresh=True)
        response = await _send(method, url, access_token, params, json_body)
        if response.status_code == 401:
            reason = "Google Calendar rejected a freshly refreshed access token"
            logger.warning("%s for user %s", reason, user_id)
            await token_manager.mark_disconnected(user_id, reason)
    raise_for_provider_status(response)
    return response


async def list_events(
    user_id: str,
    calendar_id: str,
    time_min: str,
    time_max: str,
    page_token: str | None = None,
) -> tuple[list[dict], str | None]:
    """Fetch one page of events; returns ``(items, next_page_token)``."""
    params = {
        "singleEvents": "true",
        "showDeleted": "true",
        "orderBy": "startTime",
        "maxResults": get_settings().provider_page_size,
        "timeMin": time_min,
        "timeMax": time_max,
    }
    if page_token:
        params["pageToken"] = page_token
    response = await _request(user_id, "GET", _events_endpoint(calendar_id), params=params)
    payload = response.json()
    return list(payload.get("items") or []), payload.get("nextPageToken")


async def create_event(user_id: str, calendar_id: str, payload: dict) -> dict:
    response = await _request(user_id, "POST", _events_endpoint(calendar_id), json_body=payload)
    return response.json()


async def update_event(user_id: str, calendar_id: str, event_id: str, patch: dict) -> dict:
    response = await _request(user_id, "PATCH", _events_endpoint(calendar_id, event_id), json_body=patch)
    return response.json()


async def delete_event(user_id: str, calendar_id: str, event_id: str) -> None:
    try:
        await _request(user_id, "DELETE", _events_endpoint(calendar_id, event_id))
    except EventNotFound:
        logger.debug("Event %s already gone from calendar %s", event_id, calendar_id)


async def get_calendar_timezone(user_id: str, calendar_id: str) -> str:
    response = await _request(user_id, "GET", f"{CALENDAR_API}/calendars/{quote(calendar_id, safe='')}")
    tz = response.json().get("timeZone")
    if tz:
        return str(tz)
    return get_settings().calendar_timezone
