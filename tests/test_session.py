"""Tests for the token cache and the SessionManager.

WHY: A broken session layer shows up as either repeated credential
submissions (token churn, account lockouts) or as a client that keeps
using a dead token. Both are hard to notice by hand.

HOW: SessionManager runs against make_fake_client(), whose login and
get_credits are AsyncMocks. Each scenario is an async function driven
by asyncio.run() so no pytest-asyncio plugin is needed.

RULES:
- Token files always live under tmp_path (token_cache fixture)
- Call counts on login/get_credits are the main assertions
"""

from __future__ import annotations

import asyncio
import os
from unittest.mock import AsyncMock

import pytest

from opensubs_ai.api.models import Credits
from opensubs_ai.core.errors import (
    AuthenticationError,
    NetworkError,
    RateLimited,
    ServerError,
    ValidationError,
)
from opensubs_ai.core.session import Credentials, SessionManager, TokenCache

from tests.fakes import make_fake_client

CREDS = Credentials("alice", "s3cret")


# ---------------------------------------------------------------------------
# TokenCache
# ---------------------------------------------------------------------------


class TestTokenCache:

    def test_missing_file_loads_none(self, token_cache):
        assert token_cache.load() is None

    def test_save_then_load(self, token_cache):
        assert token_cache.save("abc123")
        assert token_cache.load() == "abc123"

    def test_save_creates_parent_dirs(self, tmp_path):
        cache = TokenCache(path=tmp_path / "nested" / "dir" / "token.txt")
        assert cache.save("t")
        assert cache.path.exists()

    def test_stale_token_is_deleted(self, tmp_path):
        path = tmp_path / "token.txt"
        path.write_text("old", encoding="utf-8")
        os.utime(path, (1000, 1000))
        cache = TokenCache(path=path, max_age_seconds=60, clock=lambda: 1061)
        assert cache.load() is None
        assert not path.exists()

    def test_fresh_token_is_kept(self, tmp_path):
        path = tmp_path / "token.txt"
        path.write_text("young\n", encoding="utf-8")
        os.utime(path, (1000, 1000))
        cache = TokenCache(path=path, max_age_seconds=60, clock=lambda: 1030)
        assert cache.load() == "young"

    def test_empty_file_is_no_token(self, token_cache):
        token_cache.path.write_text("  \n", encoding="utf-8")
        assert token_cache.load() is None

    def test_clear_is_idempotent(self, token_cache):
        token_cache.save("t")
        token_cache.clear()
        token_cache.clear()
        assert token_cache.load() is None


class TestCredentials:

    def test_repr_masks_password(self):
        assert "s3cret" not in repr(CREDS)
        assert "alice" in repr(CREDS)


# ---------------------------------------------------------------------------
# ensure_authenticated / login
# ---------------------------------------------------------------------------


class TestEnsureAuthenticated:

    def test_fresh_login_without_cached_token(self, token_cache):
        client = make_fake_client()
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        assert asyncio.run(manager.ensure_authenticated())

        client.login.assert_awaited_once_with("alice", "s3cret")
        client.get_credits.assert_not_awaited()
        assert manager.session.token == "token-1"
        assert manager.session.cached_on_disk
        assert client.token == "token-1"
        assert token_cache.load() == "token-1"

    def test_cached_token_verified_and_reused(self, token_cache):
        token_cache.save("cached-token")
        client = make_fake_client(get_credits=AsyncMock(return_value=Credits(42)))
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        assert asyncio.run(manager.ensure_authenticated())

        client.login.assert_not_awaited()
        client.get_credits.assert_awaited_once()
        assert manager.session.token == "cached-token"
        assert manager.last_credits == Credits(42)

    def test_rejected_cached_token_falls_back_to_login(self, token_cache):
        token_cache.save("dead-token")
        client = make_fake_client(
            get_credits=AsyncMock(side_effect=AuthenticationError("expired", status_code=401)),
            login=AsyncMock(return_value="token-2"),
        )
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        assert asyncio.run(manager.ensure_authenticated())

        client.login.assert_awaited_once()
        assert manager.session.token == "token-2"
        assert token_cache.load() == "token-2"

    @pytest.mark.parametrize("error", [NetworkError("down"), ServerError("boom", status_code=503)])
    def test_unconfirmed_liveness_keeps_disk_token(self, token_cache, error):
        token_cache.save("maybe-alive")
        client = make_fake_client(get_credits=AsyncMock(side_effect=error))
        manager = SessionManager(client, token_cache=token_cache, credentials=None)

        assert not asyncio.run(manager.ensure_authenticated())

        assert manager.session.token is None
        assert client.token is None
        assert token_cache.load() == "maybe-alive"

    def test_unconfirmed_liveness_falls_through_to_login(self, token_cache):
        token_cache.save("maybe-alive")
        client = make_fake_client(
            get_credits=AsyncMock(side_effect=NetworkError("down")),
            login=AsyncMock(return_value="token-2"),
        )
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        assert asyncio.run(manager.ensure_authenticated())

        client.login.assert_awaited_once_with("alice", "s3cret")
        assert manager.session.token == "token-2"
        assert client.token == "token-2"
        assert token_cache.load() == "token-2"

    def test_missing_credentials_fail_without_call(self, token_cache):
        client = make_fake_client()
        manager = SessionManager(client, token_cache=token_cache)

        assert not asyncio.run(manager.ensure_authenticated())

        client.login.assert_not_awaited()
        assert isinstance(manager.last_error, ValidationError)
        assert not manager.session.is_live

    def test_rejected_login_records_error(self, token_cache):
        client = make_fake_client(login=AsyncMock(side_effect=AuthenticationError("bad password", status_code=401)))
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        assert not asyncio.run(manager.ensure_authenticated())

        assert isinstance(manager.last_error, AuthenticationError)
        assert token_cache.load() is None

    def test_successful_login_clears_last_error(self, token_cache):
        client = make_fake_client(
            login=AsyncMock(side_effect=[AuthenticationError("nope", status_code=401), "token-1"])
        )
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        async def scenario():
            assert not await manager.ensure_authenticated()
            assert await manager.ensure_authenticated()

        asyncio.run(scenario())
        assert manager.last_error is None

    def test_credentials_argument_is_remembered(self, token_cache):
        client = make_fake_client()
        manager = SessionManager(client, token_cache=token_cache)

        assert asyncio.run(manager.ensure_authenticated(CREDS))
        manager.clear_token()
        assert asyncio.run(manager.ensure_authenticated())
        assert client.login.await_count == 2


class TestSingleFlight:
    """Concurrent callers share one authentication attempt."""

    def test_concurrent_ensure_authenticated_logs_in_once(self, token_cache):
        client = make_fake_client()
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        async def scenario():
            return await asyncio.gather(*(manager.ensure_authenticated() for _ in range(5)))

        results = asyncio.run(scenario())

        assert results == [True] * 5
        assert client.login.await_count == 1
        assert not manager.is_authenticating

    def test_is_authenticating_while_attempt_runs(self, token_cache):
        client = make_fake_client()
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)
        seen = []

        async def slow_login(username, password):
            seen.append(manager.is_authenticating)
            await asyncio.sleep(0)
            return "token-1"

        client.login = AsyncMock(side_effect=slow_login)
        asyncio.run(manager.login())

        assert seen == [True]
        assert not manager.is_authenticating

    def test_failed_attempt_is_shared_then_discarded(self, token_cache):
        client = make_fake_client(
            login=AsyncMock(side_effect=[AuthenticationError("no", status_code=401), "token-1"])
        )
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        async def scenario():
            first = await asyncio.gather(manager.login(), manager.ensure_authenticated())
            second = await manager.ensure_authenticated()
            return first, second

        first, second = asyncio.run(scenario())

        assert first == [False, False]
        assert second is True
        assert client.login.await_count == 2

    def test_login_replaces_existing_token(self, token_cache):
        client = make_fake_client(login=AsyncMock(side_effect=["token-1", "token-2"]))
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)

        async def scenario():
            await manager.login()
            await manager.login(Credentials("bob", "pw"))

        asyncio.run(scenario())

        assert manager.session.token == "token-2"
        client.login.assert_awaited_with("bob", "pw")


# ---------------------------------------------------------------------------
# wrap_authenticated
# ---------------------------------------------------------------------------


class TestWrapAuthenticated:

    def _logged_in_manager(self, token_cache, client):
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)
        asyncio.run(manager.login())
        return manager

    def test_success_passes_result_through(self, token_cache):
        client = make_fake_client()
        manager = self._logged_in_manager(token_cache, client)
        call = AsyncMock(return_value="ok")

        assert asyncio.run(manager.wrap_authenticated(call)) == "ok"
        call.assert_awaited_once()

    def test_expired_token_reauthenticates_and_retries_once(self, token_cache):
        client = make_fake_client(login=AsyncMock(side_effect=["token-1", "token-2"]))
        manager = self._logged_in_manager(token_cache, client)
        call = AsyncMock(side_effect=[AuthenticationError("expired", status_code=401), "ok"])

        assert asyncio.run(manager.wrap_authenticated(call)) == "ok"

        assert call.await_count == 2
        assert client.login.await_count == 2
        assert manager.session.token == "token-2"
        assert token_cache.load() == "token-2"

    def test_second_auth_failure_propagates(self, token_cache):
        client = make_fake_client(login=AsyncMock(side_effect=["token-1", "token-2"]))
        manager = self._logged_in_manager(token_cache, client)
        call = AsyncMock(side_effect=AuthenticationError("forbidden", status_code=403))

        with pytest.raises(AuthenticationError):
            asyncio.run(manager.wrap_authenticated(call))
        assert call.await_count == 2

    def test_failed_reauthentication_raises_auth_error(self, token_cache):
        client = make_fake_client(
            login=AsyncMock(side_effect=["token-1", AuthenticationError("locked", status_code=401)])
        )
        manager = self._logged_in_manager(token_cache, client)
        call = AsyncMock(side_effect=AuthenticationError("expired", status_code=401))

        with pytest.raises(AuthenticationError, match="authentication failed"):
            asyncio.run(manager.wrap_authenticated(call))
        assert call.await_count == 1
        assert not manager.session.is_live

    def test_rate_limit_is_not_retried(self, token_cache):
        client = make_fake_client()
        manager = self._logged_in_manager(token_cache, client)
        call = AsyncMock(side_effect=RateLimited("slow down", status_code=429))

        with pytest.raises(RateLimited):
            asyncio.run(manager.wrap_authenticated(call))
        assert call.await_count == 1
        assert client.login.await_count == 1
        assert manager.session.token == "token-1"

    def test_token_replaced_meanwhile_is_not_cleared(self, token_cache):
        """A failure with a stale token must not drop a newer one."""
        client = make_fake_client(login=AsyncMock(side_effect=["token-1", "token-2"]))
        manager = self._logged_in_manager(token_cache, client)

        async def call():
            if call.attempts == 0:
                call.attempts += 1
                await manager.login()
                raise AuthenticationError("expired", status_code=401)
            return manager.session.token

        call.attempts = 0
        assert asyncio.run(manager.wrap_authenticated(call)) == "token-2"
        assert client.login.await_count == 2
        assert token_cache.load() == "token-2"

    def test_many_concurrent_failures_share_one_login(self, token_cache):
        client = make_fake_client(login=AsyncMock(side_effect=["token-1", "token-2"]))
        manager = self._logged_in_manager(token_cache, client)

        def make_call():
            state = {"calls": 0}

            async def call():
                state["calls"] += 1
                if state["calls"] == 1:
                    await asyncio.sleep(0)
                    raise AuthenticationError("expired", status_code=401)
                return manager.session.token

            return call

        async def scenario():
            return await asyncio.gather(*(manager.wrap_authenticated(make_call()) for _ in range(3)))

        results = asyncio.run(scenario())

        assert results == ["token-2"] * 3
        assert client.login.await_count == 2


# ---------------------------------------------------------------------------
# logout
# ---------------------------------------------------------------------------


class TestLogout:

    def test_logout_forgets_everything(self, token_cache):
        client = make_fake_client()
        manager = SessionManager(client, token_cache=token_cache, credentials=CREDS)
        asyncio.run(manager.login())

        manager.logout()

        assert not manager.session.is_live
        assert client.token is None
        assert token_cache.load() is None
        assert not asyncio.run(manager.ensure_authenticated())
        assert client.login.await_count == 1

    def test_logout_is_idempotent(self, token_cache):
        manager = SessionManager(make_fake_client(), token_cache=token_cache)
        manager.logout()
        manager.logout()
        assert not manager.session.is_live
