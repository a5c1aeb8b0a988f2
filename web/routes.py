"""
web/routes.py -- Jinja2 template routes for the secrets app web UI.

These routes serve server-rendered HTML and form POSTs. They share app.state
with the API routes (same credential store, session manager, OAuth registry).

Route registration order: GET /auth/{provider}/secrets is registered before
GET /auth/{provider} for readability; the paths do not overlap.

Routes:
  GET  /                        -- landing page
  GET  /login                   -- login form (local + OAuth buttons)
  POST /login                   -- local password login
  GET  /register                -- registration form
  POST /register                -- create local account, log in
  GET  /logout                  -- destroy session, redirect /
  GET  /secrets                 -- current user's secret (auth required)
  GET  /submit                  -- secret submission form (auth required)
  POST /submit                  -- store secret, redirect /secrets (auth required)
  GET  /auth/{provider}         -- OAuth redirect to provider
  GET  /auth/{provider}/secrets -- OAuth callback handler
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from auth.dependencies import get_session_token, is_authenticated, try_get_current_user
from auth.errors import FederatedAuthError, InvalidCredentials, StoreError, UserAlreadyExists
from auth.oauth import authenticate_oauth_callback, get_callback_url, get_enabled_providers
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import authenticate_user, clear_session_cookie, hash_password
from core.config import get_settings

logger = logging.getLogger("secrets_app.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_settings = get_settings()

DEFAULT_SECRET = "Jack Bauer is my hero!"

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login [M3].
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted error query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
    "oauth_failed": "Sign-in with the provider failed. Please try again.",
    "unavailable": "Something went wrong. Please try again later.",
}


def _require_auth(request: Request) -> Optional[RedirectResponse]:
    """Check if the current request is authenticated.

    Returns a RedirectResponse to /login if not authenticated, None if OK.
    Call at the top of protected route handlers:
        if redirect := _require_auth(request):
            return redirect
    """
    if not is_authenticated(request):
        return RedirectResponse("/login", status_code=302)
    return None


def _login_redirect(request: Request, user, target: str = "/secrets") -> RedirectResponse:
    """Start a session for user and redirect to target.

    Any session the browser already holds is destroyed first so one cookie
    never maps to two identities.
    """
    sessions: SessionManager = request.app.state.sessions
    sessions.destroy(get_session_token(request))
    resp = RedirectResponse(target, status_code=302)
    sessions.start(resp, user)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public pages
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "home.html", {"logged_in": try_get_current_user(request) is not None})


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page with the email/password form and OAuth buttons."""
    # Map ?error= query param through whitelist [M3]
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    return templates.TemplateResponse(
        request,
        "login.html",
        {"error_msg": error_msg, "providers": get_enabled_providers()},
    )


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "register.html", {"providers": get_enabled_providers()})


# ---------------------------------------------------------------------------
# Local login / registration / logout
# ---------------------------------------------------------------------------


@router.post("/login", response_class=HTMLResponse)
@limiter.limit(_settings.login_rate_limit)  # brute-force mitigation
def login_post(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
) -> RedirectResponse:
    """Handle email/password login form submission.

    Every authentication failure maps to the same redirect so the response
    never reveals whether the email is registered.
    """
    user_store: UserStore = request.app.state.user_store
    try:
        user = authenticate_user(user_store, username, password)  # [C1] timing equalization
    except InvalidCredentials:
        logger.info("Local login failed")
        return RedirectResponse("/login?error=bad_credentials", status_code=302)
    return _login_redirect(request, user)


@router.post("/register", response_class=HTMLResponse)
@limiter.limit(_settings.login_rate_limit)
def register_post(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
) -> RedirectResponse:
    """Create a local account and log it in.

    The form field "username" carries the email. An email that is already
    registered, including one that loses an insert race, redirects to /login
    without a message and leaves the existing row untouched. A blank email or
    password sends the browser back to the form.
    """
    if not username or not password:
        return RedirectResponse("/register", status_code=302)
    user_store: UserStore = request.app.state.user_store
    if user_store.find_by_email(username) is not None:
        return RedirectResponse("/login", status_code=302)
    try:
        user = user_store.insert_user(username, password_hash=hash_password(password))
    except UserAlreadyExists:
        return RedirectResponse("/login", status_code=302)
    logger.info("Registered local account id=%s", user.id)
    return _login_redirect(request, user)


@router.get("/logout")
def logout(request: Request) -> RedirectResponse:
    """Destroy the session (if any), clear the cookie and go home.

    The cookie is cleared even when the store cannot delete the session row;
    the row then expires on its own.
    """
    resp = RedirectResponse("/", status_code=302)
    try:
        request.app.state.sessions.destroy(get_session_token(request))
    except StoreError:
        logger.exception("Could not delete session row on logout")
    clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Protected pages
# ---------------------------------------------------------------------------


@router.get("/secrets", response_class=HTMLResponse)
def secrets_page(request: Request) -> HTMLResponse:
    """Show the current user's secret, or the default text if none is set.

    The secret is read from the store by the session email, not from the
    session snapshot, so it reflects the latest submission.
    """
    user = try_get_current_user(request)
    if user is None:
        return RedirectResponse("/login", status_code=302)
    user_store: UserStore = request.app.state.user_store
    row = user_store.find_by_email(user.email)
    secret = row.secret if row is not None and row.secret is not None else DEFAULT_SECRET
    return templates.TemplateResponse(request, "secrets.html", {"logged_in": True, "secret": secret})


@router.get("/submit", response_class=HTMLResponse)
def submit_form(request: Request) -> HTMLResponse:
    if redirect := _require_auth(request):
        return redirect
    return templates.TemplateResponse(request, "submit.html", {"logged_in": True})


@router.post("/submit", response_class=HTMLResponse)
def submit_post(request: Request, secret: str = Form("")) -> RedirectResponse:
    """Replace the current user's secret. Keyed only by the session email."""
    user = try_get_current_user(request)
    if user is None:
        return RedirectResponse("/login", status_code=302)
    user_store: UserStore = request.app.state.user_store
    user_store.update_secret(user.email, secret)
    return RedirectResponse("/secrets", status_code=302)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/{provider}/secrets", response_class=HTMLResponse, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback: resolve the user, start a session.

    Any provider failure redirects to /login?error=oauth_failed and leaves no
    user row behind. StoreError propagates to the app-level handler.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    client = request.app.state.oauth.create_client(provider)
    user_store: UserStore = request.app.state.user_store
    try:
        user = await authenticate_oauth_callback(client, provider, request, user_store)
    except FederatedAuthError:
        logger.warning("OAuth login failed for provider %r", provider, exc_info=True)
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    return await run_in_threadpool(_login_redirect, request, user)


@router.get("/auth/{provider}", response_class=HTMLResponse)
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    Validates the provider name against the enabled provider list so a
    spoofed name cannot produce a redirect to an arbitrary client.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = get_callback_url(provider) or str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)
