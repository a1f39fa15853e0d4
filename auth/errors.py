"""
auth/errors.py -- Exception hierarchy for authentication outcomes.

Security denials and infrastructure failures are separate branches so callers
can tell "deny access" from "cannot verify right now":

  InvalidCredentials -- user-visible; the login page shows a whitelisted
                        message for .code.
  TokenRejected      -- remember-me cookie is unknown, stale, expired or
                        malformed. Never shown to the user; the request just
                        falls back to anonymous.
  SessionExpired     -- idle session timed out. Treated as anonymous.
  StoreUnavailable   -- persistence failed or timed out. Surfaces as a
                        retryable 503, never as a login failure.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError


class AuthError(Exception):
    """Base class for all authentication errors."""


class InvalidCredentials(AuthError):
    """Username/password login failed.

    code is one of "bad_credentials", "user_not_found" (only when the
    disclosure policy allows it) or "account_disabled".
    """

    def __init__(self, code: str = "bad_credentials") -> None:
        super().__init__(code)
        self.code = code


class TokenRejected(AuthError):
    """A remember-me token failed validation."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SessionExpired(AuthError):
    """The session exceeded its idle timeout."""


class StoreUnavailable(AuthError):
    """The backing store could not be reached or timed out."""


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures raised inside the block into StoreUnavailable."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"{operation} failed: {exc.__class__.__name__}") from exc
