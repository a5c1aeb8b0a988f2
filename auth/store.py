"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Route, session and
authenticator code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Consistency:
  UNIQUE(email) is the only cross-request coordination. insert_user()
  translates the constraint violation into UserAlreadyExists so the
  federated find-or-create can treat a lost insert race as "found".
  secret updates are single-row UPDATEs keyed by email.

Error translation:
  IntegrityError on insert -> UserAlreadyExists.
  Any other SQLAlchemyError -> StoreError (original chained as __cause__).

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreError, UserAlreadyExists
from auth.models import User

logger = logging.getLogger("secrets_app.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password", Text),  # bcrypt digest, or provider sentinel for OAuth-only users
    Column("secret", Text),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("data", Text, nullable=False),  # JSON snapshot of the User row
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User rows and session rows.

    Usage:
        store = UserStore("sqlite:///secrets_app.db")
        user = store.insert_user("a@example.com", password_hash=hash_password("pw"))
        store.update_secret("a@example.com", "I like pineapple pizza")
        store.find_by_email("a@example.com").secret
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._errors("create schema"):
            _metadata.create_all(self.engine)

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        """Translate driver failures into StoreError.

        IntegrityError passes through untouched so insert_user() can map it
        to UserAlreadyExists.
        """
        try:
            yield
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StoreError(f"credential store failure during {action}") from exc

    @contextmanager
    def _connect(self, action: str) -> Iterator[Connection]:
        with self._errors(action), self.engine.connect() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by GET /api/v1/health."""
        try:
            with self._connect("ping") as conn:
                conn.execute(text("SELECT 1"))
        except StoreError:
            logger.warning("Credential store ping failed", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self._connect("find user") as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def insert_user(self, email: str, password_hash: str | None) -> User:
        """Insert a new user with no secret and return the stored record.

        Raises UserAlreadyExists if the email is taken, including when a
        concurrent request inserted the same email first.
        """
        try:
            with self._connect("insert user") as conn:
                result = conn.execute(_users.insert().values(email=email, password=password_hash))
                conn.commit()
        except IntegrityError as exc:
            raise UserAlreadyExists(f"email already registered: {email!r}") from exc
        return User(id=result.inserted_primary_key[0], email=email, password_hash=password_hash)

    def update_secret(self, email: str, secret: str) -> bool:
        """Overwrite the user's secret. Last write wins; no history is kept.

        Returns True if a row was updated, False if no user has that email.
        """
        with self._connect("update secret") as conn:
            result = conn.execute(_users.update().where(_users.c.email == email).values(secret=secret))
            conn.commit()
        return result.rowcount > 0

    def count_users(self, email: str | None = None) -> int:
        """Return the number of user rows, optionally restricted to one email."""
        query = "SELECT COUNT(*) FROM users"
        params: dict = {}
        if email is not None:
            query += " WHERE email = :email"
            params["email"] = email
        with self._connect("count users") as conn:
            result = conn.execute(text(query), params).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def create_session(self, session_id: str, data: str, expires_at: str) -> None:
        """Persist a session row. session_id is generated by the caller."""
        with self._connect("create session") as conn:
            conn.execute(
                _sessions.insert().values(
                    session_id=session_id,
                    data=data,
                    created_at=_now_iso(),
                    expires_at=expires_at,
                )
            )
            conn.commit()

    def get_session(self, session_id: str):
        """Return the live session row (data, created_at, expires_at), or None.

        Expired rows are treated as absent even before purge_expired_sessions()
        removes them. ISO 8601 UTC strings compare correctly as text.
        """
        with self._connect("get session") as conn:
            return conn.execute(
                _sessions.select().where((_sessions.c.session_id == session_id) & (_sessions.c.expires_at > _now_iso()))
            ).fetchone()

    def delete_session(self, session_id: str) -> bool:
        """Delete a session row. Returns False (not an error) if it did not exist."""
        with self._connect("delete session") as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.session_id == session_id))
            conn.commit()
        return result.rowcount > 0

    def purge_expired_sessions(self) -> int:
        """Delete all expired session rows. Returns number of rows removed."""
        with self._connect("purge sessions") as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _now_iso()))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password,
        secret=row.secret,
    )
