"""
auth/dependencies.py -- Route guard helpers for FastAPI.

The only credential is the signed session cookie set by SessionManager.start().
Everything that needs the caller's identity goes through try_get_current_user(),
which delegates to app.state.sessions.

try_get_current_user() is the soft variant (returns None on failure).
is_authenticated() is its boolean form.
get_current_user() wraps it and raises HTTP 401 for JSON API routes. Web
routes redirect instead; see web.routes._require_auth().

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import SESSION_COOKIE


def get_session_token(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE)


def try_get_current_user(request: Request) -> User | None:
    """Return the session's User, or None for an anonymous request. Never raises
    for a missing, tampered, expired or destroyed session."""
    return request.app.state.sessions.restore(get_session_token(request))


def is_authenticated(request: Request) -> bool:
    return try_get_current_user(request) is not None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
