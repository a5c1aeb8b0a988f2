"""
auth/errors.py -- Exception taxonomy for the authentication subsystem.

Every error the auth layer raises derives from AuthError so the app can
install one handler per failure class. Messages are for logs only; route
handlers never copy them into a response.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication and credential store failures."""


class InvalidCredentials(AuthError):
    """Bad email/password pair, or a federated-only account trying local login.

    Deliberately carries no hint of which check failed (anti-enumeration).
    """


class UserAlreadyExists(AuthError):
    """An insert hit the UNIQUE(email) constraint."""


class FederatedAuthError(AuthError):
    """Token exchange, profile fetch or account resolution failed for an OAuth login."""


class HashFormatError(AuthError):
    """A stored password digest is not a parseable bcrypt hash."""


class StoreError(AuthError):
    """Connectivity or query failure in the credential store."""


class InternalError(AuthError):
    """Catch-all for unexpected failures. Detail is logged, never returned."""
