"""Tests for the credential lifecycle: refresh, single-flight and disconnect."""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calendar_sync import repositories
from calendar_sync.errors import AuthExpired, ProviderError, RateLimited, TransientProviderError
from calendar_sync.services import google_oauth, token_manager

pytestmark = pytest.mark.unit


async def _expire_access_token(user_id: str) -> None:
    await repositories.update_calendar_link(
        user_id, {"token_expires_at": (datetime.now(UTC) - timedelta(minutes=1)).isoformat()}
    )


def _mock_oauth(monkeypatch, handler) -> None:
    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(google_oauth, "_http_client", lambda timeout=20: httpx.AsyncClient(transport=transport))


class TestEnsureValidToken:
    async def test_fresh_token_is_returned_without_refresh(self, linked_user, monkeypatch):
        async def _unexpected(refresh_token):
            raise AssertionError("refresh should not be called")

        monkeypatch.setattr(google_oauth, "refresh_access_token", _unexpected)

        assert await token_manager.ensure_valid_token(linked_user) == "access-0"

    async def test_token_inside_buffer_is_refreshed(self, linked_user, monkeypatch):
        await repositories.update_calendar_link(
            linked_user, {"token_expires_at": (datetime.now(UTC) + timedelta(seconds=60)).isoformat()}
        )

        async def _refresh(refresh_token):
            assert refresh_token == "refresh-1"
            return {"access_token": "access-1", "expires_in": 3600}

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        assert await token_manager.ensure_valid_token(linked_user) == "access-1"
        link = await repositories.get_calendar_link(linked_user)
        assert link["access_token"] == "access-1"
        assert not token_manager.needs_refresh(link)

    async def test_concurrent_callers_share_one_refresh(self, linked_user, monkeypatch):
        await _expire_access_token(linked_user)
        calls = 0

        async def _refresh(refresh_token):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"access_token": f"access-{calls}", "expires_in": 3600}

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        tokens = await asyncio.gather(*(token_manager.ensure_valid_token(linked_user) for _ in range(10)))

        assert calls == 1
        assert set(tokens) == {"access-1"}

    async def test_concurrent_forced_refreshes_collapse(self, linked_user, monkeypatch):
        calls = 0

        async def _refresh(refresh_token):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"access_token": f"access-{calls}", "expires_in": 3600}

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        tokens = await asyncio.gather(
            *(token_manager.ensure_valid_token(linked_user, force_refresh=True) for _ in range(3))
        )

        assert calls == 1
        assert set(tokens) == {"access-1"}

    async def test_rotated_refresh_token_is_persisted(self, linked_user, monkeypatch):
        await _expire_access_token(linked_user)

        async def _refresh(refresh_token):
            return {"access_token": "access-1", "refresh_token": "refresh-2", "expires_in": 3600}

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        await token_manager.ensure_valid_token(linked_user)

        link = await repositories.get_calendar_link(linked_user)
        assert google_oauth.decrypt_token(link["refresh_token_enc"]) == "refresh-2"

    async def test_rejected_refresh_disconnects_the_link(self, linked_user, monkeypatch):
        await _expire_access_token(linked_user)
        calls = 0

        async def _refresh(refresh_token):
            nonlocal calls
            calls += 1
            raise AuthExpired("invalid_grant")

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        with pytest.raises(AuthExpired):
            await token_manager.ensure_valid_token(linked_user)

        link = await repositories.get_calendar_link(linked_user)
        assert link["auth_state"] == token_manager.AUTH_STATE_DISCONNECTED
        assert link["sync_health"] == "needs_attention"
        assert link["access_token"] is None

        # Disconnected links fail fast without touching the provider again.
        with pytest.raises(AuthExpired):
            await token_manager.ensure_valid_token(linked_user)
        assert calls == 1

    async def test_transient_failures_are_retried(self, linked_user, monkeypatch):
        await _expire_access_token(linked_user)
        outcomes = [TransientProviderError(status_code=503, message="unavailable")]

        async def _refresh(refresh_token):
            if outcomes:
                raise outcomes.pop(0)
            return {"access_token": "access-1", "expires_in": 3600}

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        assert await token_manager.ensure_valid_token(linked_user) == "access-1"
        link = await repositories.get_calendar_link(linked_user)
        assert link["auth_state"] == token_manager.AUTH_STATE_ACTIVE

    async def test_exhausted_retries_escalate_to_disconnected(self, linked_user, monkeypatch):
        await _expire_access_token(linked_user)
        calls = 0

        async def _refresh(refresh_token):
            nonlocal calls
            calls += 1
            raise TransientProviderError(status_code=0, message="connection reset")

        monkeypatch.setattr(google_oauth, "refresh_access_token", _refresh)

        with pytest.raises(AuthExpired):
            await token_manager.ensure_valid_token(linked_user)

        assert calls == 3
        link = await repositories.get_calendar_link(linked_user)
        assert link["auth_state"] == token_manager.AUTH_STATE_DISCONNECTED

    async def test_missing_link_raises_auth_expired(self, database):
        with pytest.raises(AuthExpired):
            await token_manager.ensure_valid_token("nobody")


class TestConnectAndDisconnect:
    async def test_reconnect_keeps_previous_refresh_token(self, linked_user):
        await token_manager.mark_disconnected(linked_user, "revoked")

        link = await token_manager.connect_with_tokens(linked_user, None, "access-9", 3600)

        assert link["auth_state"] == token_manager.AUTH_STATE_ACTIVE
        assert link["sync_health"] == "healthy"
        assert link["access_token"] == "access-9"
        assert google_oauth.decrypt_token(link["refresh_token_enc"]) == "refresh-1"

    async def test_first_connect_requires_refresh_token(self, database):
        with pytest.raises(AuthExpired):
            await token_manager.connect_with_tokens("user-2", None, "access", 3600)

    async def test_save_tokens_stores_encrypted_pair(self, database):
        link = await token_manager.save_tokens("user-2", "access-1", "refresh-x", 3600, google_email="me@example.com")

        assert link["google_email"] == "me@example.com"
        assert link["refresh_token_enc"] != "refresh-x"
        assert google_oauth.decrypt_token(link["refresh_token_enc"]) == "refresh-x"

    async def test_disconnect_revokes_and_removes_link(self, linked_user, monkeypatch):
        revoked = []

        async def _revoke(token):
            revoked.append(token)

        monkeypatch.setattr(google_oauth, "revoke_token", _revoke)

        await token_manager.disconnect(linked_user)

        assert revoked == ["refresh-1"]
        assert await repositories.get_calendar_link(linked_user) is None


class TestTokenEndpoint:
    async def test_successful_refresh_returns_payload(self, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            assert b"grant_type=refresh_token" in request.content
            return httpx.Response(200, json={"access_token": "a", "expires_in": 3599})

        _mock_oauth(monkeypatch, handler)

        assert (await google_oauth.refresh_access_token("r"))["access_token"] == "a"

    @pytest.mark.parametrize(
        ("status", "body", "expected"),
        [
            (400, {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}, AuthExpired),
            (429, {"error": "rate_limit"}, RateLimited),
            (503, {"error": "backend_error"}, TransientProviderError),
            (403, {"error": "access_denied"}, ProviderError),
        ],
    )
    async def test_error_statuses_are_classified(self, monkeypatch, status, body, expected):
        _mock_oauth(monkeypatch, lambda request: httpx.Response(status, json=body))

        with pytest.raises(expected):
            await google_oauth.refresh_access_token("r")

    async def test_network_failure_is_transient(self, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        _mock_oauth(monkeypatch, handler)

        with pytest.raises(TransientProviderError):
            await google_oauth.refresh_access_token("r")

    def test_connect_url_requests_offline_consent(self):
        url = google_oauth.build_connect_url("user-1")

        assert url.startswith(google_oauth.AUTH_URL)
        assert "access_type=offline" in url
        assert "prompt=consent" in url
        state = parse_qs(urlparse(url).query)["state"][0]
        assert google_oauth.decode_state(state) == "user-1"

    def test_state_rejects_plain_user_id(self):
        assert google_oauth.decode_state("user-1") is None

    def test_state_rejects_expired_seal(self):
        stale = google_oauth._fernet().encrypt_at_time(b"oauth-state:user-1", int(time.time()) - 3600)

        assert google_oauth.decode_state(stale.decode("utf-8")) is None

    def test_state_rejects_other_ciphertexts(self):
        assert google_oauth.decode_state(google_oauth.encrypt_token("user-1")) is None
