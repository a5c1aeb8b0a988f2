"""
api/routes/v1/auth.py -- JSON identity endpoints.

Routes:
  GET  /api/v1/auth/me         -- current session user (requires auth)
  GET  /api/v1/auth/providers  -- list enabled OAuth providers (public)

Login, registration and logout are browser form flows and live in
web/routes.py. These endpoints read the same session cookie.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import MeResponse, OAuthProviderInfo
from auth.dependencies import get_current_user
from auth.models import User
from auth.oauth import get_enabled_providers

# Auth policy:
# - GET /api/v1/auth/me:         requires auth (get_current_user)
# - GET /api/v1/auth/providers:  public -- login page needs it before auth
router = APIRouter()


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        has_local_password=current_user.has_local_password,
    )


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list if none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]
