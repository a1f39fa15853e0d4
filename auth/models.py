"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
engine do the work.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Principal:
    """An identity that can log in with a username and password.

    password_hash is a bcrypt hash. The engine never inspects it -- it is
    handed to the password verifier as an opaque string.
    """

    username: str
    password_hash: str
    role: str = "user"
    id: int | None = None
    enabled: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class RememberMeToken:
    """One remembered login on one browser/device.

    series is stable for the lifetime of the remembered login. token_value is
    the secret half and changes on every successful use, so a stale value
    showing up again means the cookie was copied.

    Only the store sees the persisted form (an HMAC of token_value). Instances
    returned to callers carry the raw token_value for the client cookie.
    """

    series: str
    token_value: str
    username: str
    last_used: datetime
