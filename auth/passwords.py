"""
auth/passwords.py -- Password hashing and verification.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection builds a password longer than 72 bytes, which bcrypt 4.x rejects.

DUMMY_HASH enables timing equalization in the engine: a login for an unknown
username still pays for one bcrypt check, so response time does not reveal
whether the account exists [C1].
"""

from __future__ import annotations

import bcrypt


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt does not accept more than 72 bytes of input; the form layer
    rejects longer passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at import so the first login is not measurably slower.
DUMMY_HASH: str = hash_password("formlogin_timing_dummy")
