"""Credential lifecycle for the per-user CalendarLink.

A link is *Active* while its refresh token works. ``ensure_valid_token``
refreshes the access token shortly before it expires; a rejected refresh (or
transient failures that outlast the retry budget) moves the link to
*Disconnected*, after which every caller fails fast with ``AuthExpired`` until
the user goes through consent again.

Refreshes are single-flight per user: Google rotates refresh tokens, so two
overlapping refresh calls could invalidate each other.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from cryptography.fernet import InvalidToken

from calendar_sync import repositories
from calendar_sync.errors import AuthExpired, RateLimited, TransientProviderError
from calendar_sync.services import google_oauth
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

AUTH_STATE_ACTIVE = "active"
AUTH_STATE_DISCONNECTED = "disconnected"

_refresh_locks: dict[str, asyncio.Lock] = {}


def _lock_for(user_id: str) -> asyncio.Lock:
    lock = _refresh_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[user_id] = lock
    return lock


def _parse_ts(value) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _expires_at(expires_in) -> str:
    try:
        seconds = int(expires_in or 3600)
    except (TypeError, ValueError):
        seconds = 3600
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def _require_active(link: dict | None, user_id: str) -> dict:
    if not link:
        raise AuthExpired(f"Google Calendar is not connected for user {user_id}")
    if link.get("auth_state") == AUTH_STATE_DISCONNECTED:
        raise AuthExpired("Google Calendar access was revoked; the user must reconnect")
    return link


def needs_refresh(link: dict, now: datetime | None = None) -> bool:
    if not link.get("access_token"):
        return True
    expires_at = _parse_ts(link.get("token_expires_at"))
    if expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    buffer = timedelta(seconds=get_settings().token_refresh_buffer_seconds)
    return expires_at - now <= buffer


async def ensure_valid_token(user_id: str, force_refresh: bool = False) -> str:
    link = _require_active(await repositories.get_calendar_link(user_id), user_id)
    if not force_refresh and not needs_refresh(link):
        return link["access_token"]
    seen_token = link.get("access_token")

    async with _lock_for(user_id):
        # Another caller may have refreshed while we waited for the lock.
        link = _require_active(await repositories.get_calendar_link(user_id), user_id)
        if not needs_refresh(link) and (not force_refresh or link.get("access_token") != seen_token):
            return link["access_token"]
        return await _refresh(user_id, link)


async def _refresh(user_id: str, link: dict) -> str:
    settings = get_settings()
    try:
        refresh_token = google_oauth.decrypt_token(link["refresh_token_enc"])
    except InvalidToken as exc:
        await mark_disconnected(user_id, "Stored refresh token could not be decrypted")
        raise AuthExpired("Stored refresh token could not be decrypted") from exc

    max_attempts = max(1, settings.token_refresh_max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            token_data = await google_oauth.refresh_access_token(refresh_token)
            break
        except AuthExpired as exc:
            logger.warning("Refresh token rejected for user %s: %s", user_id, exc)
            await mark_disconnected(user_id, str(exc))
            raise
        except (TransientProviderError, RateLimited) as exc:
            if attempt >= max_attempts:
                logger.error("Token refresh for user %s failed after %d attempts: %s", user_id, attempt, exc)
                await mark_disconnected(user_id, f"Token refresh failed: {exc}")
                raise AuthExpired(f"Token refresh failed after {attempt} attempts") from exc
            delay = settings.token_refresh_backoff_seconds * (2 ** (attempt - 1))
            if isinstance(exc, RateLimited):
                delay = max(delay, exc.retry_after)
            logger.info("Token refresh for user %s failed (%s); retrying in %.1fs", user_id, exc, delay)
            await asyncio.sleep(delay)

    access_token = token_data["access_token"]
    rotated = token_data.get("refresh_token")
    await repositories.update_link_tokens(
        user_id,
        access_token,
        _expires_at(token_data.get("expires_in")),
        token_data.get("scope"),
        refresh_token_enc=google_oauth.encrypt_token(rotated) if rotated else None,
    )
    logger.debug("Refreshed Google access token for user %s", user_id)
    return access_token


async def mark_disconnected(user_id: str, reason: str) -> None:
    await repositories.update_calendar_link(
        user_id,
        {
            "auth_state": AUTH_STATE_DISCONNECTED,
            "access_token": None,
            "sync_health": "needs_attention",
            "last_error": reason,
        },
    )


async def connect_with_tokens(
    user_id: str,
    refresh_token: str | None,
    access_token: str | None,
    expires_in,
    scope: str | None = None,
    google_email: str | None = None,
) -> dict:
    """Create or re-activate the CalendarLink after user consent."""
    settings = get_settings()
    existing = await repositories.get_calendar_link(user_id)
    if not refresh_token:
        if existing and existing.get("refresh_token_enc"):
            refresh_token = google_oauth.decrypt_token(existing["refresh_token_enc"])
        else:
            raise AuthExpired("Google OAuth did not return refresh_token")
    await repositories.store_calendar_tokens(
        user_id,
        google_oauth.encrypt_token(refresh_token),
        access_token=access_token,
        token_expires_at=_expires_at(expires_in) if access_token else None,
        scope=scope,
        google_email=google_email,
        timezone_name=(existing or {}).get("timezone") or settings.calendar_timezone,
        calendar_id=(existing or {}).get("calendar_id") or settings.default_calendar_id,
    )
    return await repositories.get_calendar_link(user_id) or {}


async def exchange_code_for_tokens(user_id: str, code: str) -> dict:
    token_data = await google_oauth.exchange_code(code)
    return await connect_with_tokens(
        user_id,
        token_data.get("refresh_token"),
        token_data.get("access_token"),
        token_data.get("expires_in"),
        scope=token_data.get("scope"),
    )


async def disconnect(user_id: str) -> None:
    link = await repositories.get_calendar_link(user_id)
    if not link:
        return
    try:
        await google_oauth.revoke_token(google_oauth.decrypt_token(link["refresh_token_enc"]))
    except InvalidToken:
        logger.info("Skipping revoke for user %s: refresh token unreadable", user_id)
    await repositories.delete_calendar_link(user_id)
    _refresh_locks.pop(user_id, None)


async def save_tokens(
    user_id: str,
    access_token: str,
    refresh_token: str,
    expires_in,
    google_email: str | None = None,
) -> dict:
    """Native sign-in path: the client already holds the token pair."""
    return await connect_with_tokens(user_id, refresh_token, access_token, expires_in, google_email=google_email)
