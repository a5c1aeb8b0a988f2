"""
auth/oauth.py -- Authlib OAuth registry and the federated login flow.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

Flow (authorization code):
  1. GET /auth/{provider}          -- authorize_redirect() to the provider with
                                      scope "profile email". No user state yet.
  2. GET /auth/{provider}/secrets  -- authenticate_oauth_callback():
       a. exchange the code for a token
       b. fetch the profile from the userinfo endpoint
       c. find_or_create_oauth_user() by profile email

find-or-create is safe under concurrent callbacks for the same new email:
the UNIQUE(email) constraint lets exactly one insert win, and the loser gets
UserAlreadyExists, re-fetches, and proceeds as if the row had been found.

An email that already has a local password logs in as that account unless
OAUTH_LINK_EXISTING_ACCOUNTS=false, in which case the login is rejected. The
existing password hash is never modified either way.

OAuth state parameter (CSRF protection) is handled by authlib via Starlette
SessionMiddleware.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError
from starlette.concurrency import run_in_threadpool

from auth.errors import FederatedAuthError, InternalError, UserAlreadyExists
from auth.models import User
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("secrets_app.auth.oauth")

_GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

_USERINFO_URLS: dict[str, str] = {
    "google": _GOOGLE_USERINFO_URL,
}

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        authorize_url=_GOOGLE_AUTHORIZE_URL,
        access_token_url=_GOOGLE_TOKEN_URL,
        client_kwargs={"scope": "profile email"},
    )
    logger.info("Google OAuth provider registered")


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured OAuth provider.

    Used by the login template to render provider buttons and by the
    routes to reject unknown provider names before redirecting.
    """
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    return providers


def get_callback_url(provider: str) -> str:
    """Return the fixed, configured callback URL for a provider, or "" if none."""
    if provider == "google":
        return get_settings().google_callback_url
    return ""


# ---------------------------------------------------------------------------
# Profile fetch
# ---------------------------------------------------------------------------


async def fetch_oauth_profile(client, provider: str, token: dict) -> dict:
    """Fetch the identity profile for an access token.

    Retried once on a transport failure (connection reset, timeout). An HTTP
    error status is a rejection by the provider and is not retried.

    Raises:
        FederatedAuthError: on any provider or transport failure, or when the
            profile has no email or the provider reports it unverified.
    """
    url = _USERINFO_URLS.get(provider)
    if url is None:
        raise FederatedAuthError(f"Unknown OAuth provider: {provider!r}")

    profile: dict | None = None
    for attempt in (1, 2):
        try:
            resp = await client.get(url, token=token)
            resp.raise_for_status()
            profile = resp.json()
            break
        except httpx.TransportError as exc:
            if attempt == 2:
                raise FederatedAuthError(f"{provider} profile fetch failed") from exc
            logger.warning("Transient error fetching %s profile, retrying once", provider)
        except (httpx.HTTPError, ValueError) as exc:
            raise FederatedAuthError(f"{provider} profile fetch failed") from exc

    if not isinstance(profile, dict) or not profile.get("email"):
        raise FederatedAuthError(f"{provider} OAuth: no email in profile")
    if profile.get("email_verified") is False:
        raise FederatedAuthError(f"{provider} OAuth: email is not verified")
    return profile


# ---------------------------------------------------------------------------
# Find-or-create
# ---------------------------------------------------------------------------


def find_or_create_oauth_user(
    store: UserStore,
    email: str,
    provider: str,
    link_existing: bool = True,
) -> User:
    """Return the user for a federated email, creating it on first login.

    New rows get password=<provider name> (the "no local password" marker)
    and no secret. A concurrent insert for the same email surfaces as
    UserAlreadyExists and is resolved by re-fetching.

    Raises:
        FederatedAuthError: link_existing is False and the account has a
            local password.
    """
    user = store.find_by_email(email)
    if user is None:
        try:
            user = store.insert_user(email, password_hash=provider)
            logger.info("Created federated account id=%s via %s", user.id, provider)
            return user
        except UserAlreadyExists:
            logger.info("Concurrent federated signup for the same email; using existing row")
            user = store.find_by_email(email)
            if user is None:
                raise InternalError("user vanished after insert conflict") from None

    if user.has_local_password and not link_existing:
        logger.warning("Rejected %s login for an account with local credentials (id=%s)", provider, user.id)
        raise FederatedAuthError("account has local credentials")
    return user


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------


async def authenticate_oauth_callback(client, provider: str, request, store: UserStore) -> User:
    """Complete phase 2 of the authorization code flow and return the User.

    Blocking store calls run in the thread pool so the event loop stays free.
    StoreError propagates; every provider-side failure is FederatedAuthError.
    """
    try:
        token = await client.authorize_access_token(request)
    except (OAuthError, httpx.HTTPError) as exc:
        raise FederatedAuthError(f"{provider} token exchange failed") from exc

    profile = await fetch_oauth_profile(client, provider, token)
    return await run_in_threadpool(
        find_or_create_oauth_user,
        store,
        profile["email"],
        provider,
        get_settings().oauth_link_existing_accounts,
    )
