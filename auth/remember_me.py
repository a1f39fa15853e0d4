"""
auth/remember_me.py -- Persistent remember-me tokens (SQLAlchemy Core).

Pattern: Repository + Data Mapper, same shape as auth/store.py.
PersistentTokenStore is the repository; _row_to_token is the mapper.

Token lifecycle:
  issue()        -- login with "remember me" ticked: new random series + value.
  validate()     -- returning browser presents (series, value). On success the
                    value is rotated under the same series and the new pair
                    goes back to the client.
  revoke()       -- logout on this device.
  revoke_all()   -- password change / log out everywhere.
  purge_expired()-- periodic sweep; idempotent, safe to run concurrently.

Security:
  [R1] Theft detection. A known series with the wrong value means somebody
       replayed an old cookie after the legitimate browser rotated it (or the
       other way round). The whole series is deleted so neither copy works.

  [R2] Rotation is compare-and-swap: the UPDATE is conditioned on the value
       that was just checked. Two requests racing with the same cookie cannot
       both succeed; the loser sees rowcount == 0.

  [R3] Only HMAC-SHA256(SECRET_KEY, value) is persisted. A leaked table does
       not yield usable cookies.

  [R4] Any SQLAlchemyError becomes StoreUnavailable (auth.errors), never
       TokenRejected. "Cannot check" must not look like "checked and denied".

Schema: table persistent_logins, the layout of the original JDBC token
repository (series primary key, username, token, last_used).

Cookie format: urlsafe base64 of "series:token_value".

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, MetaData, String, Table, create_engine, event, select, text
from sqlalchemy.engine import Engine

from auth.errors import StoreUnavailable, TokenRejected, store_errors
from auth.models import RememberMeToken

logger = logging.getLogger("formlogin.auth.remember_me")

# 16 random bytes, matching the original repository's series/token length.
_TOKEN_BYTES = 16

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_persistent_logins = Table(
    "persistent_logins",
    _metadata,
    Column("series", String(64), primary_key=True),
    Column("username", String(64), nullable=False, index=True),
    Column("token", String(64), nullable=False),  # HMAC-SHA256 hex [R3]
    Column("last_used", String(32), nullable=False),  # ISO 8601, UTC
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    # Fixed-width timestamps keep lexical order equal to chronological order.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL so the purge sweep does not block request-time reads."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str, timeout: float) -> Engine:
    """Create an engine whose connection checkout and lock waits are bounded by timeout."""
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})
        event.listen(engine, "connect", _set_sqlite_pragmas)
        return engine
    return create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PersistentTokenStore:
    """Repository for RememberMeToken records.

    Usage:
        store = PersistentTokenStore(secret_key=settings.secret_key)
        token = store.issue("alice")
        rotated = store.validate(token.series, token.token_value)
        store.revoke(rotated.series)
        store.close()
    """

    def __init__(
        self,
        secret_key: str,
        db_url: str = "sqlite:///formlogin.db",
        max_age_seconds: int = 1209600,
        timeout: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._secret = secret_key.encode("utf-8")
        self.max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock or _utcnow
        self.engine: Engine = build_engine(db_url, timeout)
        with store_errors("create persistent_logins"):
            _metadata.create_all(self.engine)

    def _digest(self, token_value: str) -> str:
        return hmac.new(self._secret, token_value.encode("utf-8"), hashlib.sha256).hexdigest()

    def _is_expired(self, last_used: str, now: datetime) -> bool:
        return datetime.fromisoformat(last_used) + self.max_age < now

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(self, username: str) -> RememberMeToken:
        """Create a new series for username and return it with the raw value."""
        token = RememberMeToken(
            series=secrets.token_urlsafe(_TOKEN_BYTES),
            token_value=secrets.token_urlsafe(_TOKEN_BYTES),
            username=username,
            last_used=self._clock(),
        )
        with store_errors("issue remember-me token"), self.engine.begin() as conn:
            conn.execute(
                _persistent_logins.insert().values(
                    series=token.series,
                    username=token.username,
                    token=self._digest(token.token_value),
                    last_used=_iso(token.last_used),
                )
            )
        logger.info("Issued remember-me series for %s", username)
        return token

    def validate(self, series: str, token_value: str) -> RememberMeToken:
        """Check a presented (series, value) pair and rotate the value.

        Returns the rotated token. Raises TokenRejected with reason
        "unknown_series", "cookie_theft", "expired" or "concurrent_rotation".

        The rejection is raised after the transaction commits so deletions of
        stolen or expired series are not rolled back.
        """
        now = self._clock()
        rejection: str | None = None
        new_value = secrets.token_urlsafe(_TOKEN_BYTES)
        username = ""

        with store_errors("validate remember-me token"), self.engine.begin() as conn:
            row = conn.execute(_persistent_logins.select().where(_persistent_logins.c.series == series)).fetchone()
            if row is None:
                rejection = "unknown_series"
            elif not hmac.compare_digest(row.token, self._digest(token_value)):
                # [R1]
                conn.execute(_persistent_logins.delete().where(_persistent_logins.c.series == series))
                rejection = "cookie_theft"
            elif self._is_expired(row.last_used, now):
                conn.execute(_persistent_logins.delete().where(_persistent_logins.c.series == series))
                rejection = "expired"
            else:
                # [R2] compare-and-swap on the value we just matched
                result = conn.execute(
                    _persistent_logins.update()
                    .where((_persistent_logins.c.series == series) & (_persistent_logins.c.token == row.token))
                    .values(token=self._digest(new_value), last_used=_iso(now))
                )
                if result.rowcount != 1:
                    rejection = "concurrent_rotation"
                username = row.username

        if rejection is not None:
            if rejection == "cookie_theft":
                logger.warning("Remember-me token mismatch for series owned by %s -- series revoked", row.username)
            else:
                logger.info("Remember-me token rejected (%s)", rejection)
            raise TokenRejected(rejection)

        return RememberMeToken(series=series, token_value=new_value, username=username, last_used=now)

    def get(self, series: str) -> RememberMeToken | None:
        """Return the persisted record for series. token_value holds the stored digest."""
        with store_errors("read remember-me token"), self.engine.connect() as conn:
            row = conn.execute(_persistent_logins.select().where(_persistent_logins.c.series == series)).fetchone()
        return _row_to_token(row) if row is not None else None

    def revoke(self, series: str) -> bool:
        """Delete one series. Returns True if a record was removed."""
        with store_errors("revoke remember-me token"), self.engine.begin() as conn:
            result = conn.execute(_persistent_logins.delete().where(_persistent_logins.c.series == series))
        return result.rowcount > 0

    def revoke_all(self, username: str) -> int:
        """Delete every series belonging to username. Returns the number removed."""
        with store_errors("revoke remember-me tokens"), self.engine.begin() as conn:
            result = conn.execute(_persistent_logins.delete().where(_persistent_logins.c.username == username))
        if result.rowcount:
            logger.info("Revoked %d remember-me series for %s", result.rowcount, username)
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete all records older than max age. Returns number of rows removed.

        ISO 8601 strings in UTC sort chronologically, so the cutoff comparison
        can run in SQL.
        """
        cutoff = _iso(self._clock() - self.max_age)
        with store_errors("purge remember-me tokens"), self.engine.begin() as conn:
            result = conn.execute(_persistent_logins.delete().where(_persistent_logins.c.last_used < cutoff))
        return result.rowcount

    def count_for_user(self, username: str) -> int:
        with store_errors("count remember-me tokens"), self.engine.connect() as conn:
            rows = conn.execute(
                select(_persistent_logins.c.series).where(_persistent_logins.c.username == username)
            ).fetchall()
        return len(rows)

    def ping(self) -> bool:
        """Return True if the backing database answers a trivial query."""
        try:
            with store_errors("ping"), self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            logger.exception("Token store health check failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_token(row) -> RememberMeToken:
    return RememberMeToken(
        series=row.series,
        token_value=row.token,
        username=row.username,
        last_used=datetime.fromisoformat(row.last_used),
    )


# ---------------------------------------------------------------------------
# Cookie codec
# ---------------------------------------------------------------------------


def encode_cookie(token: RememberMeToken) -> str:
    raw = f"{token.series}:{token.token_value}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cookie(value: str) -> tuple[str, str]:
    """Split a remember-me cookie into (series, token_value).

    Raises TokenRejected("malformed_cookie") unless the value decodes to
    exactly two non-empty parts.
    """
    padded = value.strip() + "=" * (-len(value.strip()) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise TokenRejected("malformed_cookie") from exc
    parts = decoded.split(":")
    if len(parts) != 2 or not all(parts):
        raise TokenRejected("malformed_cookie")
    return parts[0], parts[1]


def set_remember_me_cookie(response, token: RememberMeToken, name: str, max_age: int, secure: bool) -> None:
    """Write the remember-me cookie on a Starlette response.

    httponly=True: JS cannot read it (XSS mitigation).
    samesite="lax": not sent on cross-site POST.
    secure: only over HTTPS when SECURE_COOKIES=true.
    max_age: matches the server-side token validity.
    """
    response.set_cookie(
        name,
        value=encode_cookie(token),
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )


def clear_remember_me_cookie(response, name: str) -> None:
    response.delete_cookie(name, path="/")
