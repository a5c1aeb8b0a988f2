"""
auth/sessions.py -- Server-side login sessions bound to a signed cookie.

A session is a row in the sessions table keyed by a random id. The row holds
a JSON snapshot of the full User record taken at login; the cookie holds only
the id, signed by auth.tokens.create_session_token(). The snapshot is
returned as-is on every request and never re-read from the users table, so a
secret changed after login is not visible through session.user until the
next login. Routes that must show current data (GET /secrets) query the store
by the session user's email.

Lifecycle:
  start()   -- new id, row inserted, cookie set on the response.
  load()    -- cookie -> id -> row -> Session, or None for anonymous.
  restore() -- load(), reduced to the User snapshot.
  destroy() -- row deleted. Unknown, expired and tampered tokens are a no-op.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from auth.models import Session, User
from auth.store import UserStore
from auth.tokens import create_session_token, decode_session_token, set_session_cookie

logger = logging.getLogger("secrets_app.auth.sessions")


class SessionManager:
    """Issue, restore and destroy login sessions.

    Usage:
        sessions = SessionManager(store, expire_seconds=3600)
        sessions.start(response, user)              # on successful login
        user = sessions.restore(request.cookies.get(SESSION_COOKIE))
        sessions.destroy(request.cookies.get(SESSION_COOKIE))
    """

    def __init__(self, store: UserStore, expire_seconds: int) -> None:
        self.store = store
        self.expire_seconds = expire_seconds

    @staticmethod
    def serialize(user: User) -> str:
        return json.dumps(asdict(user), sort_keys=True)

    @staticmethod
    def deserialize(blob: str) -> User:
        data = json.loads(blob)
        return User(
            id=data.get("id"),
            email=data["email"],
            password_hash=data.get("password_hash"),
            secret=data.get("secret"),
        )

    def start(self, response, user: User) -> str:
        """Bind a new session for user to the response cookie. Returns the session id."""
        session_id = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.expire_seconds)
        self.store.create_session(session_id, self.serialize(user), expires_at.isoformat())
        token = create_session_token(session_id, self.expire_seconds)
        set_session_cookie(response, token, self.expire_seconds)
        logger.info("Session started for user id=%s", user.id)
        return session_id

    def load(self, token: str | None) -> Session | None:
        """Return the live Session behind a token, or None if anonymous.

        A token that fails signature or expiry checks is never looked up. A
        row whose snapshot cannot be read is deleted.
        """
        if not token:
            return None
        session_id = decode_session_token(token)
        if session_id is None:
            logger.debug("Rejected session token with bad signature or expiry")
            return None
        row = self.store.get_session(session_id)
        if row is None:
            return None
        try:
            user = self.deserialize(row.data)
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable session %s", session_id[:8])
            self.store.delete_session(session_id)
            return None
        return Session(session_id=session_id, user=user, created_at=row.created_at, expires_at=row.expires_at)

    def restore(self, token: str | None) -> User | None:
        """Return the User snapshot bound to a session token, or None."""
        session = self.load(token)
        return session.user if session is not None else None

    def destroy(self, token: str | None) -> None:
        """Invalidate the session behind a token. Safe to call repeatedly."""
        if not token:
            return
        session_id = decode_session_token(token)
        if session_id is None:
            return
        if self.store.delete_session(session_id):
            logger.info("Session destroyed")

    def purge_expired(self) -> int:
        removed = self.store.purge_expired_sessions()
        if removed:
            logger.info("Purged %d expired sessions", removed)
        return removed
