"""
api/routes/v1/auth.py -- JSON view of the current authentication state.

Routes:
  GET /api/v1/auth/me  -- current principal (requires auth)

Login and logout are form posts handled by web/routes.py; API clients reuse
the same session and remember-me cookies.

Auth policy: /api/v1/auth/me is outside the public allow-set, so the
authentication gate answers unauthenticated calls with 401 before this
handler runs. get_current_principal() repeats the check for the case where
PROTECTED_DEFAULT=false turns the gate off.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MeResponse
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.remember_me import PersistentTokenStore

router = APIRouter()


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    token_store: PersistentTokenStore = request.app.state.token_store
    return MeResponse(
        username=principal.username,
        role=principal.role,
        last_login=principal.last_login,
        remembered_devices=token_store.count_for_user(principal.username),
    )
