"""
auth/csrf.py -- Optional synchronizer-token CSRF protection.

Off by default: the original deployment disabled CSRF and relies on
SameSite=Lax cookies. Set CSRF_ENABLED=true to require a per-session token
on every state-changing form post.

The token lives in the signed session (not a separate cookie), is rendered
into forms as a hidden "_csrf" field, and may also be sent by scripts as an
X-CSRF-Token header.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional

from fastapi import Form, HTTPException, Request

from core.config import get_settings

SESSION_KEY = "csrf_token"
FORM_FIELD = "_csrf"
HEADER = "X-CSRF-Token"


def csrf_token(request: Request) -> str:
    """Return the session's CSRF token, creating one if needed.

    Exposed to templates as a Jinja2 global. Returns "" when CSRF is disabled
    so templates can render the hidden field unconditionally.
    """
    if not get_settings().csrf_enabled:
        return ""
    token = request.session.get(SESSION_KEY)
    if not token:
        token = secrets.token_hex(32)
        request.session[SESSION_KEY] = token
    return token


def csrf_protect(request: Request, submitted: Optional[str] = Form(None, alias=FORM_FIELD)) -> None:
    """FastAPI dependency: reject the request with 403 when the token is missing or wrong."""
    if not get_settings().csrf_enabled:
        return
    candidate = submitted or request.headers.get(HEADER, "")
    expected = request.session.get(SESSION_KEY, "")
    if not candidate or not expected or not hmac.compare_digest(candidate, expected):
        raise HTTPException(
            status_code=403,
            detail={"code": "csrf_failed", "message": "CSRF token missing or invalid."},
        )
