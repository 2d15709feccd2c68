from __future__ import annotations

import base64
import hashlib
import logging
from urllib.parse import urlencode

import httpx
from cryptography.fernet import Fernet, InvalidToken

from calendar_sync.errors import AuthExpired, ProviderError, RateLimited, TransientProviderError
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
STATE_PREFIX = "oauth-state:"


def _fernet() -> Fernet:
    settings = get_settings()
    digest = hashlib.sha256(settings.google_token_encryption_key.encode("utf-8")).digest()
    key = base64.urlsafe_b64encode(digest)
    return Fernet(key)


def encrypt_token(value: str) -> str:
    return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_token(value: str) -> str:
    return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")


def encode_state(user_id: str) -> str:
    return encrypt_token(f"{STATE_PREFIX}{user_id}")


def decode_state(state: str) -> str | None:
    """Return the user id sealed in an OAuth ``state``, or None when it is forged or expired."""
    try:
        value = _fernet().decrypt(state.encode("utf-8"), ttl=get_settings().oauth_state_ttl_seconds).decode("utf-8")
    except (InvalidToken, UnicodeError):
        return None
    if not value.startswith(STATE_PREFIX):
        return None
    return value[len(STATE_PREFIX):] or None


def _http_client(timeout: float = 20) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def _oauth_error(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except Exception:
        return response.text
    if not isinstance(payload, dict):
        return response.text
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or response.text)
    return str(payload.get("error_description") or error or response.text)


def build_connect_url(user_id: str) -> str:
    settings = get_settings()
    params = {
        "client_id": settings.calendar_client_id,
        "redirect_uri": settings.calendar_redirect_uri,
        "response_type": "code",
        "scope": CALENDAR_SCOPE,
        "access_type": "offline",
        "include_granted_scopes": "true",
        "prompt": "consent",
        "state": encode_state(user_id),
    }
    return f"{AUTH_URL}?{urlencode(params)}"


async def _post_token_endpoint(payload: dict) -> dict:
    try:
        async with _http_client() as client:
            response = await client.post(TOKEN_URL, data=payload, headers={"Accept": "application/json"})
    except httpx.HTTPError as exc:
        raise TransientProviderError(status_code=0, message=f"Google OAuth request failed: {exc}") from exc

    if response.status_code in {400, 401}:
        raise AuthExpired(f"Google OAuth rejected the grant: {_oauth_error(response)}")
    if response.status_code == 429:
        raise RateLimited(
            retry_after=float(get_settings().default_rate_limit_delay_seconds),
            message=_oauth_error(response),
        )
    if response.status_code >= 500:
        raise TransientProviderError(status_code=response.status_code, message=_oauth_error(response))
    if response.status_code >= 400:
        raise ProviderError(status_code=response.status_code, message=_oauth_error(response))
    try:
        token_data = response.json()
    except ValueError as exc:
        raise TransientProviderError(
            status_code=response.status_code, message="Google OAuth token endpoint returned invalid JSON"
        ) from exc
    if not isinstance(token_data, dict) or not token_data.get("access_token"):
        raise AuthExpired("Google OAuth token response is missing an access_token")
    return token_data


async def exchange_code(code: str) -> dict:
    settings = get_settings()
    return await _post_token_endpoint(
        {
            "code": code,
            "client_id": settings.calendar_client_id,
            "client_secret": settings.calendar_client_secret,
            "redirect_uri": settings.calendar_redirect_uri,
            "grant_type": "authorization_code",
        }
    )


async def refresh_access_token(refresh_token: str) -> dict:
    """Exchange a refresh token; the response may carry a rotated refresh token."""
    settings = get_settings()
    return await _post_token_endpoint(
        {
            "client_id": settings.calendar_client_id,
            "client_secret": settings.calendar_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
    )


async def revoke_token(token: str) -> None:
    try:
        async with _http_client(timeout=10) as client:
            response = await client.post(REVOKE_URL, params={"token": token})
    except httpx.HTTPError as exc:
        logger.warning("Google token revoke request failed: %s", exc)
        return
    if response.status_code >= 400:
        logger.info("Google token revoke returned %s: %s", response.status_code, _oauth_error(response))
