"""
auth/store.py -- SQLAlchemy Core persistence layer for login accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_principal is the mapper.
Route and engine code never touches SQL directly.

UserStore.get_by_username is the credential lookup handed to the
AuthenticationEngine. The engine never writes through it; account changes
(registration, password change, last_login) go through the other methods.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Any SQLAlchemyError is re-raised as StoreUnavailable, so a database outage
  during login is a 503 and not a "bad credentials" page.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import store_errors
from auth.models import Principal
from auth.remember_me import build_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DuplicateUsername(Exception):
    """Raised by create_user when the username is already taken."""


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal entities.

    Usage:
        store = UserStore()
        store.create_user(Principal(username="alice", password_hash=hash_password("secret")))
        principal = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///formlogin.db", timeout: float = 5.0) -> None:
        self.engine: Engine = build_engine(db_url, timeout)
        with store_errors("create users"):
            _metadata.create_all(self.engine)

    def has_users(self) -> bool:
        """Return True if at least one account exists."""
        with store_errors("count users"), self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def create_user(self, principal: Principal) -> int:
        """Insert a new account and return its assigned database ID.

        Raises DuplicateUsername if the username already exists. The UNIQUE
        constraint is the arbiter, so two concurrent registrations for the
        same name cannot both succeed.
        """
        with store_errors("create user"):
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _users.insert().values(
                            username=principal.username,
                            password_hash=principal.password_hash,
                            role=principal.role,
                            enabled=1 if principal.enabled else 0,
                            created_at=_now_iso(),
                        )
                    )
            except IntegrityError as exc:
                raise DuplicateUsername(principal.username) from exc
        return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> Principal | None:
        """Look up an account by exact username (case-sensitive). Returns None if not found."""
        with store_errors("look up user"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def update_password(self, username: str, password_hash: str) -> bool:
        """Replace the stored hash. Returns True if a row was updated.

        Callers must also revoke the user's remember-me series; a password
        change is meant to sign out every remembered browser.
        """
        with store_errors("update password"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(password_hash=password_hash)
            )
        return result.rowcount > 0

    def set_enabled(self, username: str, enabled: bool) -> bool:
        with store_errors("update user"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(enabled=1 if enabled else 0)
            )
        return result.rowcount > 0

    def update_last_login(self, username: str) -> None:
        """Stamp the current UTC timestamp as last_login.

        Called on every successful password or remember-me authentication.
        """
        with store_errors("update last_login"), self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.username == username).values(last_login=_now_iso()))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        role=row.role,
        enabled=bool(row.enabled),
        created_at=row.created_at,
        last_login=row.last_login,
    )
