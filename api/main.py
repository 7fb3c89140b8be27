"""
api/main.py -- FastAPI application entry point for the Master Auth backend.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the client origin
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- holds the OAuth state between redirect and callback

Lifespan builds every service once (store, token service, email queue, auth,
TOTP, WebAuthn, OAuth registry), stores them on app.state, and tears them
down symmetrically. Services receive their configuration at construction;
nothing reads the environment at request time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.security import router as security_router
from auth.oauth import build_oauth_registry
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from auth.totp import TwoFactorService
from auth.webauthn import WebAuthnService
from core.config import Settings, get_settings
from core.errors import AppError
from mail.queue import EmailQueue
from mail.transport import MailTransport, SmtpTransport

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("masterauth.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_app_state(
    app: FastAPI,
    cfg: Settings,
    store: UserStore,
    transport: MailTransport | None = None,
    oauth=None,
) -> None:
    """Construct every service and attach it to app.state.

    The email queue is created here but started by the caller, because
    starting it needs a running event loop.
    """
    tokens = TokenService.from_settings(cfg)
    queue = EmailQueue.from_settings(transport or SmtpTransport.from_settings(cfg), cfg)
    auth_service = AuthService(store, tokens, queue, cfg.client_url, bcrypt_rounds=cfg.bcrypt_rounds)

    app.state.settings = cfg
    app.state.user_store = store
    app.state.token_service = tokens
    app.state.email_queue = queue
    app.state.auth_service = auth_service
    app.state.two_factor_service = TwoFactorService.from_settings(store, auth_service, cfg)
    app.state.webauthn_service = WebAuthnService.from_settings(store, cfg)
    app.state.oauth = oauth if oauth is not None else build_oauth_registry(cfg)


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- every service depends on it.
      2. Services second -- built from settings, no I/O.
      3. Email workers last -- they need the running loop.
    """
    logger.info("Master Auth API starting up")
    store = UserStore(settings.database_url)
    init_app_state(app, settings, store)
    await app.state.email_queue.start()
    logger.info("Auth services initialized")

    yield

    await app.state.email_queue.stop()
    store.close()
    logger.info("Master Auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Master Auth API",
    description="Registration, email verification, JWT sessions, OAuth, TOTP and passkeys.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value in this session between the
# authorization redirect and the callback (CSRF protection for the code flow).
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    same_site="lax",
    https_only=settings.secure_cookies,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
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
app.include_router(security_router, prefix="/api/v1", tags=["Security"])
# The client router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the same {status, message, statusCode} envelope so
# clients parse errors uniformly.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, status_code=status_code).model_dump(by_alias=True),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed input is a BadRequest (400), reported with the first failing field."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Request validation failed."
    return _error(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only; the client receives a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No auth and no rate limit -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and database reachability."""
    try:
        db_ok = request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        db_ok = False
    body = HealthResponse(version=VERSION, database="ok" if db_ok else "unavailable")
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump(by_alias=True))
