"""
web/routes.py -- Jinja2 template routes for the formlogin web UI.

These routes serve server-rendered HTML and share app.state (engine, stores)
with the API routes.

Routes:
  GET  /                          -- redirect to the default success page
  GET  /login                     -- login form (error / expired / logout / registered flags)
  POST /login                     -- handle password login, optional remember-me
  GET  /logout                    -- logout (only while CSRF protection is off)
  POST /logout                    -- logout, revoke this device's remember-me series
  GET  /register                  -- registration form
  POST /register                  -- create a local account
  GET  /user                      -- default success page (auth required)
  POST /user/password             -- change password, revoke all remember-me series
  POST /user/logout-everywhere    -- revoke all remember-me series and log out

Authentication is enforced by the gate middleware before any handler here
runs; handlers for protected pages read the principal with
get_current_principal().
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from api.limiter import limiter
from auth.csrf import csrf_protect, csrf_token
from auth.dependencies import get_current_principal, get_engine, try_get_current_principal
from auth.errors import InvalidCredentials
from auth.models import Principal
from auth.passwords import hash_password
from auth.remember_me import PersistentTokenStore, clear_remember_me_cookie, set_remember_me_cookie
from auth.store import DuplicateUsername, UserStore
from core.config import get_settings

logger = logging.getLogger("formlogin.web")

_settings = get_settings()

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
templates.env.globals["csrf_token"] = csrf_token
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= on /login [M3]. The raw query param is never
# passed to templates, only the message from this dict.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid username or password.",
    "user_not_found": "No account exists with that username.",
    "account_disabled": "Your account has been disabled.",
    "true": "Invalid username or password.",
}

_NOTICES: dict[str, str] = {
    "expired": "Your session has expired. Please log in again.",
    "logout": "You have been logged out.",
    "registered": "Account created. Please log in.",
}

# bcrypt ignores everything past 72 bytes.
_MAX_PASSWORD_BYTES = 72
_MAX_USERNAME_LENGTH = 64
_TRUTHY = {"true", "on", "yes", "1"}


def _safe_next(next_url: Optional[str]) -> Optional[str]:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative URLs ("//attacker.com"),
    both of which would send the browser off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return None


def _login_redirect(**params: str) -> RedirectResponse:
    query = urlencode(params, safe="/")
    url = f"{_settings.login_url}?{query}" if query else _settings.login_url
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _password_problem(password: str, confirm: str) -> Optional[str]:
    if password != confirm:
        return "Passwords do not match."
    if len(password) < _settings.min_password_length:
        return f"Password must be at least {_settings.min_password_length} characters."
    if len(password.encode("utf-8")) > _MAX_PASSWORD_BYTES:
        return f"Password must be at most {_MAX_PASSWORD_BYTES} bytes."
    return None


# ---------------------------------------------------------------------------
# GET / -- landing
# ---------------------------------------------------------------------------


@router.get("/")
def index() -> RedirectResponse:
    return RedirectResponse(_settings.default_success_url, status_code=302)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page."""
    if try_get_current_principal(request) is not None:
        return RedirectResponse(_settings.default_success_url, status_code=302)

    params = request.query_params
    error_msg = _ERROR_MESSAGES.get(params.get("error", ""), None)
    notice = next((msg for flag, msg in _NOTICES.items() if params.get(flag) == "true"), None)
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "notice": notice,
            "next_url": _safe_next(params.get("next")) or "",
            "remember_me_parameter": _settings.remember_me_parameter,
        },
    )


@router.post("/login", response_class=HTMLResponse, dependencies=[Depends(csrf_protect)])
@limiter.limit(_settings.login_rate_limit)  # [H2] must sit BELOW @router so the registered endpoint is the limiting wrapper
def login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    remember_me: Optional[str] = Form(None, alias=_settings.remember_me_parameter),
    next_url: Optional[str] = Form(None, alias="next"),
) -> RedirectResponse:
    """Handle username/password login form submission.

    Failure redirects to /login?error=<code> with no session and no token.
    Success redirects to next (if safe) or the default success page and,
    when remember-me was ticked, sets the long-lived cookie.
    """
    target = _safe_next(next_url)
    try:
        result = get_engine(request).login(
            request.session,
            username,
            password,
            remember=(remember_me or "").lower() in _TRUTHY,
        )
    except InvalidCredentials as exc:
        params = {"error": exc.code}
        if target:
            params["next"] = target
        return _login_redirect(**params)

    resp = RedirectResponse(target or _settings.default_success_url, status_code=302)
    if result.remember_me is not None:
        set_remember_me_cookie(
            resp,
            result.remember_me,
            name=_settings.remember_me_cookie_name,
            max_age=_settings.remember_me_max_age_seconds,
            secure=_settings.secure_cookies,
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


def _logout(request: Request) -> RedirectResponse:
    cookie_name = _settings.remember_me_cookie_name
    get_engine(request).logout(request.session, request.cookies.get(cookie_name))
    resp = _login_redirect(logout="true")
    clear_remember_me_cookie(resp, cookie_name)
    return resp


@router.get("/logout")
def logout_get(request: Request) -> RedirectResponse:
    """Logout via a plain link. Refused while CSRF protection is on (state change over GET)."""
    if _settings.csrf_enabled:
        raise HTTPException(
            status_code=405,
            detail={"code": "method_not_allowed", "message": "Use POST /logout."},
            headers={"Allow": "POST"},
        )
    return _logout(request)


@router.post("/logout", dependencies=[Depends(csrf_protect)])
def logout_post(request: Request) -> RedirectResponse:
    """End the session, revoke this device's remember-me series and redirect to /login."""
    return _logout(request)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "register.html", {})


@router.post("/register", response_class=HTMLResponse, dependencies=[Depends(csrf_protect)])
def register_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
) -> HTMLResponse:
    """Create a local account with role "user".

    The UNIQUE constraint on username decides concurrent registrations for
    the same name; the loser gets the "already taken" form error.
    """
    user_store: UserStore = request.app.state.user_store
    username = username.strip()

    error_msg: Optional[str] = None
    if not username:
        error_msg = "Username is required."
    elif len(username) > _MAX_USERNAME_LENGTH:
        error_msg = f"Username must be at most {_MAX_USERNAME_LENGTH} characters."
    else:
        error_msg = _password_problem(password, confirm_password)

    if error_msg is None:
        try:
            user_store.create_user(Principal(username=username, password_hash=hash_password(password)))
        except DuplicateUsername:
            error_msg = "That username is already taken."

    if error_msg is not None:
        return templates.TemplateResponse(
            request,
            "register.html",
            {"error_msg": error_msg, "username": username},
            status_code=400,
        )

    logger.info("Registered new account %s", username)
    return _login_redirect(registered="true")


# ---------------------------------------------------------------------------
# Account pages (auth required)
# ---------------------------------------------------------------------------


def _render_user_page(
    request: Request,
    principal: Principal,
    error_msg: Optional[str] = None,
    notice: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    token_store: PersistentTokenStore = request.app.state.token_store
    return templates.TemplateResponse(
        request,
        "user.html",
        {
            "principal": principal,
            "remembered_devices": token_store.count_for_user(principal.username),
            "csrf_enabled": _settings.csrf_enabled,
            "error_msg": error_msg,
            "notice": notice,
        },
        status_code=status_code,
    )


@router.get("/user", response_class=HTMLResponse)
def user_home(request: Request, principal: Principal = Depends(get_current_principal)) -> HTMLResponse:
    return _render_user_page(request, principal)


@router.post("/user/password", response_class=HTMLResponse, dependencies=[Depends(csrf_protect)])
def change_password(
    request: Request,
    current_password: str = Form(...),
    new_password: str = Form(...),
    confirm_password: str = Form(...),
    principal: Principal = Depends(get_current_principal),
) -> HTMLResponse:
    """Change the password and revoke every remember-me series of the account.

    The current session stays valid; every other browser has to log in again.
    """
    try:
        get_engine(request).authenticate(principal.username, current_password)
    except InvalidCredentials:
        return _render_user_page(request, principal, error_msg="Current password is incorrect.", status_code=400)

    problem = _password_problem(new_password, confirm_password)
    if problem is not None:
        return _render_user_page(request, principal, error_msg=problem, status_code=400)

    user_store: UserStore = request.app.state.user_store
    token_store: PersistentTokenStore = request.app.state.token_store
    user_store.update_password(principal.username, hash_password(new_password))
    token_store.revoke_all(principal.username)
    logger.info("Password changed for %s", principal.username)

    resp = _render_user_page(request, principal, notice="Password changed. Other devices have been signed out.")
    clear_remember_me_cookie(resp, _settings.remember_me_cookie_name)
    return resp


@router.post("/user/logout-everywhere", dependencies=[Depends(csrf_protect)])
def logout_everywhere(request: Request, principal: Principal = Depends(get_current_principal)) -> RedirectResponse:
    """Revoke all remember-me series for the account and end this session."""
    revoked = get_engine(request).logout_everywhere(request.session, principal.username)
    logger.info("Logout everywhere for %s (%d series revoked)", principal.username, revoked)
    resp = _login_redirect(logout="true")
    clear_remember_me_cookie(resp, _settings.remember_me_cookie_name)
    return resp
