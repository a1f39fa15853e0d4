"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The authentication gate middleware (api/main.py) runs the engine for every
request and leaves the resolved Principal on request.state.principal. These
helpers read it back inside route handlers.

try_get_current_principal() is the soft variant (returns None).
get_current_principal() raises HTTP 401 if there is no principal.

Layer rule: no imports from web/. auth/dependencies.py may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.engine import AuthenticationEngine
from auth.models import Principal


def get_engine(request: Request) -> AuthenticationEngine:
    return request.app.state.auth_engine


def try_get_current_principal(request: Request) -> Principal | None:
    """Return the principal the gate resolved for this request, or None.

    On public paths the gate skips authentication entirely, so this falls
    back to the session (never the remember-me cookie) to let pages like
    /login render differently for a logged-in visitor.
    """
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return principal
    return get_engine(request).current_principal(request.session)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal
