"""
auth/tokens.py -- Password hashing, local login and session-token signing.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Work factor comes
       from Settings.bcrypt_rounds (default 10). verify_password() separates
       "wrong password" (returns False) from "stored digest is corrupt"
       (raises HashFormatError) so callers can log the latter as a server
       fault instead of a failed login.

  Local login: authenticate_user() raises the same InvalidCredentials for an
       unknown email, a federated-only account and a wrong password. The
       _DUMMY_HASH constant keeps the response time equal across those
       cases so timing does not reveal which emails exist [C1].

  Session tokens: the cookie carries a python-jose HS256 JWT whose only
       claims are the opaque server-side session id ("sid") and the expiry.
       Any tampering or expiry makes decode_session_token() return None, and
       the caller treats the request as anonymous.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import HashFormatError, InternalError, InvalidCredentials
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("secrets_app.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "secrets_session"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt)
# ---------------------------------------------------------------------------


# bcrypt reads at most 72 bytes of input. Newer bcrypt releases raise on
# longer input instead of ignoring the tail, so both hash and verify cut the
# encoded password to that length.
_BCRYPT_MAX_BYTES = 72


def _password_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt digest of the plaintext password.

    The salt is random per call, so hashing the same password twice yields
    two different digests. Only the first 72 bytes of the UTF-8 encoding are
    significant.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_password_bytes(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the digest, False on mismatch.

    Raises HashFormatError if the digest cannot be parsed. A mismatch never
    raises.
    """
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError as exc:
        raise HashFormatError("stored password digest is not a valid bcrypt hash") from exc


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("secrets_app_timing_dummy")


# ---------------------------------------------------------------------------
# Local authenticator [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User:
    """Verify an email/password pair and return the matching User.

    Raises InvalidCredentials for every authentication failure:
    - no user with that email
    - federated-only account (no local password, any input including "")
    - wrong password

    Raises InternalError if the stored digest is corrupt. StoreError from
    the lookup propagates unchanged.
    """
    user = store.find_by_email(email)
    if user is None or not user.has_local_password:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()
    try:
        valid = verify_password(password, user.password_hash)
    except HashFormatError as exc:
        logger.exception("Stored password digest is corrupt for user id=%s", user.id)
        raise InternalError("password verification failed") from exc
    if not valid:
        raise InvalidCredentials()
    return user


# ---------------------------------------------------------------------------
# Session token encode / decode
# ---------------------------------------------------------------------------


def create_session_token(session_id: str, expire_seconds: int = 0) -> str:
    """Sign an opaque session id into a JWT for the session cookie.

    Args:
        session_id:     Server-side session id (random, never derived from the user).
        expire_seconds: Token lifetime. If 0 (default), uses
                        Settings.session_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    payload = {
        "sid": session_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> str | None:
    """Verify a session token and return its session id, or None on any failure.

    Returning None (rather than raising) keeps the caller simple: an invalid,
    expired or tampered token is an anonymous request.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    if not isinstance(sid, str) or not sid:
        return None
    return sid


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the signed session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for the
        form endpoints.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
