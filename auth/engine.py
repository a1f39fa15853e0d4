"""
auth/engine.py -- Authentication decision engine.

Every request passes through AuthenticationEngine.decide(), which returns one
of three outcomes:

  ALLOW          -- path is in the public allow-set. No session or cookie is
                    even looked at.
  AUTHENTICATED  -- a live session, or a valid remember-me cookie that has
                    just been turned into a new session.
  CHALLENGE      -- send the browser to the login entry point.

Collaborators are injected, not inherited:
  lookup(username) -> Principal | None     credential lookup (UserStore)
  verify(plain, password_hash) -> bool     password check (bcrypt)
  token_store                              PersistentTokenStore

The session argument is any mutable mapping. In the web app it is
Starlette's request.session; in unit tests it is a plain dict. The engine
keeps three keys in it: username, authenticated_at, last_seen.

Security:
  [C1] Unknown usernames still cost one bcrypt verification (dummy_hash) so
       response time does not reveal which accounts exist.
  [D1] reveal_user_not_found is an explicit opt-in. When off, unknown user
       and wrong password both produce "bad_credentials".
  [S1] Login clears the session before writing the identity (fixation).
  [S2] An idle session is cleared and handled as anonymous, never as an error.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from auth.errors import InvalidCredentials, SessionExpired, TokenRejected
from auth.models import Principal, RememberMeToken
from auth.policy import AuthorizationPolicy
from auth.remember_me import PersistentTokenStore, decode_cookie

logger = logging.getLogger("formlogin.auth.engine")

Lookup = Callable[[str], Optional[Principal]]
Verify = Callable[[str, str], bool]
Session = MutableMapping[str, Any]

SESSION_USER = "username"
SESSION_AUTHENTICATED_AT = "authenticated_at"
SESSION_LAST_SEEN = "last_seen"


class Outcome(str, Enum):
    ALLOW = "allow"
    AUTHENTICATED = "authenticated"
    CHALLENGE = "challenge"


@dataclass
class Decision:
    """Result of evaluating one request.

    remember_me is set when a cookie was consumed and rotated; the caller
    must send the new value back to the client. clear_remember_me is set when
    a presented cookie was rejected and should be deleted client-side.
    """

    outcome: Outcome
    principal: Principal | None = None
    remember_me: RememberMeToken | None = None
    clear_remember_me: bool = False
    session_expired: bool = False


@dataclass
class LoginResult:
    principal: Principal
    remember_me: RememberMeToken | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthenticationEngine:
    def __init__(
        self,
        policy: AuthorizationPolicy,
        lookup: Lookup,
        verify: Verify,
        token_store: PersistentTokenStore,
        *,
        session_idle_seconds: int = 1800,
        reveal_user_not_found: bool = False,
        dummy_hash: str | None = None,
        on_login: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy
        self._lookup = lookup
        self._verify = verify
        self._tokens = token_store
        self.session_idle = timedelta(seconds=session_idle_seconds)
        self.reveal_user_not_found = reveal_user_not_found
        self._dummy_hash = dummy_hash
        self._on_login = on_login
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Request decision
    # ------------------------------------------------------------------

    def decide(self, path: str, session: Session, remember_cookie: str | None = None) -> Decision:
        """Evaluate one request against the policy, the session and the remember-me cookie.

        Raises StoreUnavailable if the credential or token store cannot be
        reached. Every other failure mode is folded into CHALLENGE.
        """
        if not self.policy.requires_authentication(path):
            return Decision(Outcome.ALLOW)

        expired = False
        try:
            principal = self._session_principal(session)
        except SessionExpired:
            principal = None
            expired = True

        if principal is not None:
            return Decision(Outcome.AUTHENTICATED, principal=principal)

        if remember_cookie:
            try:
                principal, token = self._remember_me_login(session, remember_cookie)
            except TokenRejected as exc:
                logger.debug("Remember-me cookie rejected on %s: %s", path, exc.reason)
                return Decision(Outcome.CHALLENGE, clear_remember_me=True, session_expired=expired)
            return Decision(Outcome.AUTHENTICATED, principal=principal, remember_me=token)

        return Decision(Outcome.CHALLENGE, session_expired=expired)

    def current_principal(self, session: Session) -> Principal | None:
        """Return the session's principal, or None. Never consults the remember-me cookie."""
        try:
            return self._session_principal(session)
        except SessionExpired:
            return None

    # ------------------------------------------------------------------
    # Form login / logout
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> Principal:
        """Check a username/password pair. Raises InvalidCredentials on any failure."""
        principal = self._lookup(username)
        if principal is None:
            if self._dummy_hash is not None:
                self._verify(password, self._dummy_hash)  # [C1]
            raise InvalidCredentials("user_not_found" if self.reveal_user_not_found else "bad_credentials")
        if not self._verify(password, principal.password_hash):
            raise InvalidCredentials("bad_credentials")
        if not principal.enabled:
            raise InvalidCredentials("account_disabled")
        return principal

    def login(self, session: Session, username: str, password: str, remember: bool = False) -> LoginResult:
        """Authenticate and establish a session; issue a remember-me token when asked.

        On failure the session is left untouched and no token is created.
        """
        try:
            principal = self.authenticate(username, password)
        except InvalidCredentials as exc:
            logger.info("Login failed for %r (%s)", username, exc.code)
            raise
        self._establish(session, principal)
        token = self._tokens.issue(principal.username) if remember else None
        logger.info("Login succeeded for %s (remember_me=%s)", principal.username, token is not None)
        return LoginResult(principal=principal, remember_me=token)

    def logout(self, session: Session, remember_cookie: str | None = None) -> None:
        """End the session and revoke this device's remember-me series, whichever exist."""
        username = session.get(SESSION_USER)
        session.clear()
        if remember_cookie:
            try:
                series, _value = decode_cookie(remember_cookie)
            except TokenRejected:
                series = None
            if series is not None:
                self._tokens.revoke(series)
        if username:
            logger.info("Logout for %s", username)

    def logout_everywhere(self, session: Session, username: str) -> int:
        """End this session and revoke every remember-me series of username."""
        session.clear()
        return self._tokens.revoke_all(username)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _establish(self, session: Session, principal: Principal) -> None:
        now = self._clock().isoformat()
        session.clear()  # [S1]
        session[SESSION_USER] = principal.username
        session[SESSION_AUTHENTICATED_AT] = now
        session[SESSION_LAST_SEEN] = now
        if self._on_login is not None:
            self._on_login(principal.username)

    def _session_principal(self, session: Session) -> Principal | None:
        username = session.get(SESSION_USER)
        if not username:
            return None

        now = self._clock()
        try:
            last_seen = datetime.fromisoformat(session.get(SESSION_LAST_SEEN, ""))
        except ValueError:
            last_seen = None
        if last_seen is None or now - last_seen > self.session_idle:
            session.clear()  # [S2]
            logger.info("Session for %s expired", username)
            raise SessionExpired(username)

        principal = self._lookup(username)
        if principal is None or not principal.enabled:
            # account deleted or disabled since login
            session.clear()
            return None
        session[SESSION_LAST_SEEN] = now.isoformat()
        return principal

    def _remember_me_login(self, session: Session, cookie: str) -> tuple[Principal, RememberMeToken]:
        series, value = decode_cookie(cookie)
        token = self._tokens.validate(series, value)
        principal = self._lookup(token.username)
        if principal is None or not principal.enabled:
            self._tokens.revoke(series)
            raise TokenRejected("account_unavailable")
        self._establish(session, principal)
        logger.info("Remember-me login for %s", principal.username)
        return principal, token
