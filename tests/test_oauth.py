"""Unit tests for auth/oauth.py -- federated login flow.

Covers:
- fetch_oauth_profile(): retry once on transport failure, never on HTTP errors
- fetch_oauth_profile(): missing or unverified email is rejected
- find_or_create_oauth_user(): creates exactly one row with the sentinel password
- find_or_create_oauth_user(): existing local account logs in, hash untouched
- find_or_create_oauth_user(): lost insert race is treated as "found"
- find_or_create_oauth_user(): link_existing=False rejects local accounts
- concurrent callbacks for one new email create exactly one row
- authenticate_oauth_callback(): token exchange failure -> FederatedAuthError, no row
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from authlib.integrations.starlette_client import OAuthError

from auth.errors import FederatedAuthError, UserAlreadyExists
from auth.oauth import (
    authenticate_oauth_callback,
    fetch_oauth_profile,
    find_or_create_oauth_user,
    get_enabled_providers,
)
from auth.store import UserStore
from auth.tokens import hash_password

_PROFILE = {"sub": "1234", "email": "new@example.com", "email_verified": True, "name": "New User"}


def _ok_response(payload: dict) -> MagicMock:
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = payload
    return resp


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def test_google_enabled_when_configured() -> None:
    assert {"name": "google", "label": "Google"} in get_enabled_providers()


# ---------------------------------------------------------------------------
# Profile fetch
# ---------------------------------------------------------------------------


class TestFetchProfile:
    def test_returns_profile(self, make_oauth_client) -> None:
        client = make_oauth_client(_PROFILE)
        profile = asyncio.run(fetch_oauth_profile(client, "google", {"access_token": "t"}))
        assert profile["email"] == "new@example.com"
        client.get.assert_awaited_once()
        assert client.get.await_args.args[0] == "https://www.googleapis.com/oauth2/v3/userinfo"

    def test_retries_once_on_transport_error(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(side_effect=[httpx.ConnectError("reset"), _ok_response(_PROFILE)])
        profile = asyncio.run(fetch_oauth_profile(client, "google", {}))
        assert profile["email"] == "new@example.com"
        assert client.get.await_count == 2

    def test_gives_up_after_second_transport_error(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(FederatedAuthError):
            asyncio.run(fetch_oauth_profile(client, "google", {}))
        assert client.get.await_count == 2

    def test_http_error_status_is_not_retried(self) -> None:
        request = httpx.Request("GET", "https://www.googleapis.com/oauth2/v3/userinfo")
        response = httpx.Response(401, request=request)
        resp = MagicMock()
        resp.raise_for_status.side_effect = httpx.HTTPStatusError("401", request=request, response=response)
        client = MagicMock()
        client.get = AsyncMock(return_value=resp)
        with pytest.raises(FederatedAuthError):
            asyncio.run(fetch_oauth_profile(client, "google", {}))
        assert client.get.await_count == 1

    def test_missing_email_rejected(self, make_oauth_client) -> None:
        client = make_oauth_client({"sub": "1234", "name": "No Email"})
        with pytest.raises(FederatedAuthError):
            asyncio.run(fetch_oauth_profile(client, "google", {}))

    def test_unverified_email_rejected(self, make_oauth_client) -> None:
        client = make_oauth_client({**_PROFILE, "email_verified": False})
        with pytest.raises(FederatedAuthError):
            asyncio.run(fetch_oauth_profile(client, "google", {}))

    def test_unknown_provider_rejected(self, make_oauth_client) -> None:
        with pytest.raises(FederatedAuthError):
            asyncio.run(fetch_oauth_profile(make_oauth_client(_PROFILE), "myspace", {}))


# ---------------------------------------------------------------------------
# Find-or-create
# ---------------------------------------------------------------------------


class TestFindOrCreate:
    def test_creates_user_with_sentinel(self, store: UserStore) -> None:
        user = find_or_create_oauth_user(store, "new@example.com", "google")
        assert user.id is not None
        assert user.password_hash == "google"
        assert user.secret is None
        assert user.has_local_password is False
        assert store.count_users("new@example.com") == 1

    def test_repeat_login_reuses_row(self, store: UserStore) -> None:
        first = find_or_create_oauth_user(store, "new@example.com", "google")
        second = find_or_create_oauth_user(store, "new@example.com", "google")
        assert first.id == second.id
        assert store.count_users() == 1

    def test_existing_local_account_logs_in_unchanged(self, store: UserStore) -> None:
        digest = hash_password("local-pw")
        local = store.insert_user("both@example.com", digest)
        user = find_or_create_oauth_user(store, "both@example.com", "google")
        assert user.id == local.id
        assert store.find_by_email("both@example.com").password_hash == digest

    def test_link_existing_disabled_rejects_local_account(self, store: UserStore) -> None:
        store.insert_user("both@example.com", hash_password("local-pw"))
        with pytest.raises(FederatedAuthError):
            find_or_create_oauth_user(store, "both@example.com", "google", link_existing=False)

    def test_link_existing_disabled_still_allows_federated_account(self, store: UserStore) -> None:
        store.insert_user("fed@example.com", "google")
        user = find_or_create_oauth_user(store, "fed@example.com", "google", link_existing=False)
        assert user.email == "fed@example.com"

    def test_lost_insert_race_is_treated_as_found(self, store: UserStore) -> None:
        """Simulate a concurrent callback inserting between our lookup and our insert."""
        winner = store.insert_user("race@example.com", "google")
        racing = MagicMock(wraps=store)
        racing.find_by_email.side_effect = [None, winner]
        racing.insert_user.side_effect = UserAlreadyExists("race@example.com")

        user = find_or_create_oauth_user(racing, "race@example.com", "google")

        assert user.id == winner.id
        assert racing.find_by_email.call_count == 2
        assert store.count_users("race@example.com") == 1

    def test_concurrent_callbacks_create_one_row(self, tmp_path) -> None:
        file_store = UserStore(f"sqlite:///{tmp_path / 'race.db'}")
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                users = list(
                    pool.map(
                        lambda _: find_or_create_oauth_user(file_store, "burst@example.com", "google"),
                        range(16),
                    )
                )
            assert file_store.count_users("burst@example.com") == 1
            assert len({u.id for u in users}) == 1
        finally:
            file_store.close()


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------


class TestCallback:
    def test_success_creates_user(self, shared_store: UserStore, make_oauth_client) -> None:
        client = make_oauth_client(_PROFILE)
        user = asyncio.run(authenticate_oauth_callback(client, "google", MagicMock(), shared_store))
        assert user.email == "new@example.com"
        assert shared_store.count_users() == 1

    def test_token_exchange_failure(self, shared_store: UserStore, make_oauth_client) -> None:
        client = make_oauth_client(_PROFILE)
        client.authorize_access_token = AsyncMock(side_effect=OAuthError(error="access_denied"))
        with pytest.raises(FederatedAuthError):
            asyncio.run(authenticate_oauth_callback(client, "google", MagicMock(), shared_store))
        assert shared_store.count_users() == 0

    def test_token_exchange_transport_failure(self, shared_store: UserStore, make_oauth_client) -> None:
        client = make_oauth_client(_PROFILE)
        client.authorize_access_token = AsyncMock(side_effect=httpx.ConnectError("down"))
        with pytest.raises(FederatedAuthError):
            asyncio.run(authenticate_oauth_callback(client, "google", MagicMock(), shared_store))
        assert shared_store.count_users() == 0

    def test_profile_failure_creates_no_row(self, shared_store: UserStore, make_oauth_client) -> None:
        client = make_oauth_client({"sub": "1234"})
        with pytest.raises(FederatedAuthError):
            asyncio.run(authenticate_oauth_callback(client, "google", MagicMock(), shared_store))
        assert shared_store.count_users() == 0
