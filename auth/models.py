"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and routes
do the work; these classes own the domain shape.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass

# Password markers written for accounts created through federated login.
# Each is the provider name, which can never parse as a bcrypt digest.
OAUTH_PASSWORD_SENTINELS: frozenset[str] = frozenset({"google"})


@dataclass
class User:
    """A row of the users table.

    email is the login identifier for both local and federated accounts and
    the only key used for per-user queries.

    password_hash is a bcrypt digest for locally registered users, or the
    provider sentinel (e.g. "google") for accounts created on first OAuth
    login. secret is None until the user submits one.
    """

    email: str
    id: int | None = None
    password_hash: str | None = None
    secret: str | None = None

    @property
    def has_local_password(self) -> bool:
        return self.password_hash is not None and self.password_hash not in OAUTH_PASSWORD_SENTINELS


@dataclass
class Session:
    """A server-side login session.

    user is a snapshot of the full User record taken at login. It is not
    refreshed from the store, so later secret updates are not reflected in
    it until the user logs in again.
    """

    session_id: str
    user: User
    created_at: str
    expires_at: str
