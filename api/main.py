"""
api/main.py -- FastAPI application entry point for formlogin.

Install deps:  pip install -e .
Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one log line per request with latency
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SessionMiddleware     -- signed session cookie; populates request.session
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  6. authentication_gate   -- runs AuthenticationEngine.decide() per request

Starlette's add_middleware() prepends to the stack, so the LAST registration
is the OUTERMOST layer. The registrations below therefore appear innermost
first. The gate must sit inside SessionMiddleware because it reads and writes
request.session.

Lifespan builds the stores and the engine on startup, runs the remember-me
expiry sweep in the background, and disposes everything on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.engine import AuthenticationEngine, Outcome
from auth.errors import StoreUnavailable
from auth.passwords import DUMMY_HASH, verify_password
from auth.policy import AuthorizationPolicy
from auth.remember_me import PersistentTokenStore, clear_remember_me_cookie, set_remember_me_cookie
from auth.store import UserStore
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("formlogin.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_auth_engine(
    settings: Settings,
    user_store: UserStore,
    token_store: PersistentTokenStore,
    clock: Callable[[], datetime] | None = None,
) -> AuthenticationEngine:
    """Assemble the decision engine from settings and the two stores."""
    return AuthenticationEngine(
        policy=AuthorizationPolicy.from_patterns(settings.public_patterns, settings.protected_default),
        lookup=user_store.get_by_username,
        verify=verify_password,
        token_store=token_store,
        session_idle_seconds=settings.session_idle_seconds,
        reveal_user_not_found=settings.reveal_user_not_found,
        dummy_hash=DUMMY_HASH,
        on_login=user_store.update_last_login,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Delete expired remember-me tokens every `interval` seconds.

    validate() already rejects and deletes expired tokens lazily; the sweep
    only keeps the table from accumulating series nobody comes back for.
    A failed sweep is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(app.state.token_store.purge_expired)
        except StoreUnavailable:
            logger.warning("Remember-me purge skipped -- token store unavailable")
            continue
        except Exception:
            logger.exception("Remember-me purge failed")
            continue
        if removed:
            logger.info("Purged %d expired remember-me tokens", removed)


async def _stop_task(task: asyncio.Task) -> None:
    """Cancel a background task and wait for it to finish unwinding."""
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("formlogin starting up")
    app.state.user_store = UserStore(settings.database_url, timeout=settings.store_timeout_seconds)
    app.state.token_store = PersistentTokenStore(
        secret_key=settings.secret_key,
        db_url=settings.database_url,
        max_age_seconds=settings.remember_me_max_age_seconds,
        timeout=settings.store_timeout_seconds,
    )
    app.state.auth_engine = build_auth_engine(settings, app.state.user_store, app.state.token_store)
    logger.info(
        "Auth initialized (public_patterns=%d, csrf_enabled=%s, reveal_user_not_found=%s)",
        len(settings.public_patterns),
        settings.csrf_enabled,
        settings.reveal_user_not_found,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.token_purge_interval_seconds))

    yield

    await _stop_task(app.state.purge_task)
    app.state.token_store.close()
    app.state.user_store.close()
    logger.info("formlogin shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="formlogin",
    description="Form login with persistent remember-me tokens.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Authentication gate (innermost middleware)
# ---------------------------------------------------------------------------


def _store_unavailable_response() -> JSONResponse:
    response = JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="store_unavailable",
                message="Authentication is temporarily unavailable. Please retry.",
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = "5"
    return response


def _challenge_response(path: str, session_expired: bool) -> JSONResponse | RedirectResponse:
    """Build the response for an unauthenticated request to a protected path.

    API clients get a 401 envelope; browsers are sent to the login page with
    the original path in next= so they come back after logging in.
    """
    if path.startswith("/api/"):
        return JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="unauthorized", message="Authentication required.")
            ).model_dump(),
        )
    query = {"next": path}
    if session_expired:
        query["expired"] = "true"
    return RedirectResponse(f"{_settings.login_url}?{urlencode(query, safe='/')}", status_code=302)


def _sets_cookie(response, name: str) -> bool:
    return any(header.startswith(f"{name}=") for header in response.headers.getlist("set-cookie"))


@app.middleware("http")
async def authentication_gate(request: Request, call_next):
    """Run the decision engine and either challenge or pass the request through.

    On AUTHENTICATED the principal is left on request.state.principal for
    route dependencies. A remember-me cookie consumed on this request is
    replaced with its rotated value on the way out.
    """
    engine: AuthenticationEngine = request.app.state.auth_engine
    cookie_name = _settings.remember_me_cookie_name
    path = request.url.path
    try:
        decision = await run_in_threadpool(engine.decide, path, request.session, request.cookies.get(cookie_name))
    except StoreUnavailable:
        logger.exception("Authentication store unavailable on %s %s", request.method, path)
        return _store_unavailable_response()

    if decision.outcome is Outcome.CHALLENGE:
        response = _challenge_response(path, decision.session_expired)
        if decision.clear_remember_me:
            clear_remember_me_cookie(response, cookie_name)
        return response

    request.state.principal = decision.principal
    response = await call_next(request)
    # A handler that revoked the series (password change, log out
    # everywhere) has already deleted the cookie; keep that deletion.
    if decision.remember_me is not None and not _sets_cookie(response, cookie_name):
        set_remember_me_cookie(
            response,
            decision.remember_me,
            name=cookie_name,
            max_age=_settings.remember_me_max_age_seconds,
            secure=_settings.secure_cookies,
        )
    return response


app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie=_settings.session_cookie_name,
    max_age=None,  # browser-session cookie; idle timeout is enforced by the engine
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Request logging middleware (outermost)
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Return 503 when a store fails inside a route handler.

    Distinct from 401/302 on purpose: the client should retry, not re-login.
    """
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _store_unavailable_response()


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a dict, use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Public (in the default allow-set) and never rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and per-component status."""
    database = "ok" if request.app.state.token_store.ping() else "error"
    components = {"app": "ok", "database": database}
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
