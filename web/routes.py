"""
web/routes.py -- Client-side routes: session intake, form posts and session-backed actions.

These routes play the part of the first-party web client. They hold the
user's tokens in the Session Carrier cookie and reach the backend only over
HTTP through the Request Gateway -- they never import the backend's services.

Routes:
  GET    /api/auth                          -- OAuth intake: token pair -> session cookie (user via getUser)
  POST   /api/auth                          -- replace the session's token pair
  DELETE /api/auth                          -- delete the session cookie
  POST   /signup                            -- form: register, redirect to /signin
  POST   /signin                            -- form: sign in (may redirect to /verify or /otp-verify)
  POST   /verify                            -- form: confirm email token
  POST   /otp-verify                        -- form: finish sign-in with a TOTP code
  POST   /logout                            -- revoke refresh tokens, clear cookie, redirect /signin
  GET    /api/user                          -- current identity (via gateway); resyncs the snapshot
  GET    /api/security/2fa/generate         -- TOTP setup data (via gateway)
  POST   /api/security/2fa/verify           -- enable 2FA (via gateway)
  POST   /api/security/2fa/off              -- disable 2FA (via gateway)
  GET    /api/security/webauthn/register    -- passkey creation options (via gateway)
  POST   /api/security/webauthn/register    -- bind a passkey (via gateway)
  GET    /api/security/webauthn/authenticate -- passkey request options (via gateway)
  POST   /api/security/webauthn/authenticate -- verify a passkey assertion (via gateway)

Every handler ends with carrier.flush() so cookie changes made anywhere in the
request (including a gateway refresh or teardown) reach the browser.

Form posts redirect with an ?error= code from a fixed whitelist. Backend
messages are never reflected into redirect URLs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Body, FastAPI, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from web.gateway import GatewayError, RequestGateway
from web.session import Session, SessionCarrier, SessionUser, session_from_payload

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.web")

router = APIRouter()


def init_client_state(app: FastAPI, settings: Settings, http_client: httpx.AsyncClient) -> None:
    """Attach the Session Carrier and Request Gateway to app.state."""
    carrier = SessionCarrier.from_settings(settings)
    app.state.session_carrier = carrier
    app.state.gateway = RequestGateway.from_settings(settings, carrier, http_client)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _carrier(request: Request) -> SessionCarrier:
    return request.app.state.session_carrier


def _gateway(request: Request) -> RequestGateway:
    return request.app.state.gateway


def _redirect(request: Request, path: str, **params: str) -> Response:
    query = {k: v for k, v in params.items() if v}
    url = f"{path}?{urlencode(query)}" if query else path
    return _carrier(request).flush(request, RedirectResponse(url, status_code=303))


def _json(request: Request, content: Any, status_code: int = 200) -> Response:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return _carrier(request).flush(request, resp)


def _error_json(request: Request, exc: GatewayError) -> Response:
    return _json(request, exc.to_dict(), status_code=exc.status_code)


async def _proxy(request: Request, method: str, path: str, json: Any = None) -> Response:
    """Run an authenticated backend call and relay its body or error envelope."""
    try:
        body = await _gateway(request).call(request, method, path, json=json)
    except GatewayError as exc:
        return _error_json(request, exc)
    return _json(request, body)


# ---------------------------------------------------------------------------
# Session intake (OAuth callback target) and token maintenance
# ---------------------------------------------------------------------------


@router.get("/api/auth")
async def oauth_intake(
    request: Request,
    accessToken: Optional[str] = None,
    refreshToken: Optional[str] = None,
    email: Optional[str] = None,
    twoFactorEnabled: Optional[str] = None,
) -> Response:
    """Establish the session from the backend's OAuth redirect and move on.

    Only the token pair is taken from the query string. The user snapshot
    comes from the backend's answer for that access token, so a crafted link
    cannot plant a role or verification state. With twoFactorEnabled=true no
    tokens are present; the user continues at the OTP step instead.
    """
    if twoFactorEnabled == "true" and email:
        return _redirect(request, "/otp-verify", email=email)
    if not (accessToken and refreshToken):
        return _redirect(request, "/signin", error="oauth_failed")

    try:
        user = await _gateway(request).fetch_user(accessToken)
    except GatewayError as exc:
        logger.info("OAuth intake rejected: backend answered %d for the supplied token", exc.status_code)
        return _redirect(request, "/signin", error="oauth_failed")

    _carrier(request).create(request, Session(user=user, access_token=accessToken, refresh_token=refreshToken))
    return _redirect(request, "/")


@router.post("/api/auth")
def update_tokens(request: Request, body: dict = Body(...)) -> Response:
    """Replace the session's token pair, keeping the user snapshot."""
    access, refresh = body.get("accessToken"), body.get("refreshToken")
    if not isinstance(access, str) or not isinstance(refresh, str) or not access or not refresh:
        return _error_json(request, GatewayError(400, "accessToken and refreshToken are required."))
    if _carrier(request).update(request, access, refresh) is None:
        return _error_json(request, GatewayError(401, "Unauthorized"))
    return _json(request, {"status": "success", "message": "Session updated."})


@router.delete("/api/auth")
def delete_session(request: Request) -> Response:
    _carrier(request).destroy(request)
    return _json(request, {"status": "success", "message": "Session deleted."})


# ---------------------------------------------------------------------------
# Form posts
# ---------------------------------------------------------------------------


def _error_code(exc: GatewayError, default: str) -> str:
    if exc.status_code == 409:
        return "exists"
    if exc.status_code == 429:
        return "rate_limited"
    if exc.status_code >= 500:
        return "unavailable"
    return default


@router.post("/signup")
async def signup(
    request: Request,
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
) -> Response:
    try:
        await _gateway(request).call(
            request,
            "POST",
            "/auth/signup",
            json={"name": name, "email": email, "password": password},
            authenticated=False,
        )
    except GatewayError as exc:
        return _redirect(request, "/signup", error=_error_code(exc, "invalid"))
    return _redirect(request, "/signin", message="check_email")


@router.post("/signin")
async def signin(request: Request, email: str = Form(...), password: str = Form(...)) -> Response:
    try:
        body = await _gateway(request).call(
            request, "POST", "/auth/signin", json={"email": email, "password": password}, authenticated=False
        )
    except GatewayError as exc:
        return _redirect(request, "/signin", error=_error_code(exc, "bad_credentials"))

    if body.get("twoFactorRequired"):
        return _redirect(request, "/otp-verify", email=body.get("email") or email)
    if body.get("verifyEmail") or not body.get("accessToken"):
        return _redirect(request, "/verify", message="check_email")

    _carrier(request).create(request, session_from_payload(body))
    return _redirect(request, "/")


@router.post("/verify")
async def verify_email(request: Request, token: str = Form(...)) -> Response:
    try:
        await _gateway(request).call(request, "POST", "/auth/verify", json={"token": token}, authenticated=False)
    except GatewayError as exc:
        code = "already_verified" if exc.status_code == 400 else _error_code(exc, "invalid_token")
        return _redirect(request, "/verify", error=code)
    return _redirect(request, "/signin", message="verified")


@router.post("/otp-verify")
async def otp_verify(request: Request, email: str = Form(...), code: str = Form(...)) -> Response:
    try:
        body = await _gateway(request).call(
            request, "POST", "/security/twoFaLogin", json={"email": email, "code": code}, authenticated=False
        )
    except GatewayError as exc:
        return _redirect(request, "/otp-verify", error=_error_code(exc, "invalid_code"), email=email)
    _carrier(request).create(request, session_from_payload(body))
    return _redirect(request, "/")


@router.post("/logout")
async def logout(request: Request) -> Response:
    """Revoke the refresh tokens server-side when possible, then drop the cookie."""
    if _carrier(request).read(request) is not None:
        try:
            await _gateway(request).call(request, "POST", "/auth/signout")
        except GatewayError as exc:
            logger.info("Sign-out call failed with %d; clearing the session anyway", exc.status_code)
    _carrier(request).destroy(request)
    return _redirect(request, "/signin")


# ---------------------------------------------------------------------------
# Session-backed actions
# ---------------------------------------------------------------------------


@router.get("/api/user")
async def current_user(request: Request) -> Response:
    """Relay the backend identity and resync the session's user snapshot with it."""
    try:
        body = await _gateway(request).call(request, "GET", "/auth/getUser")
    except GatewayError as exc:
        return _error_json(request, exc)
    try:
        _carrier(request).update_user(request, SessionUser.from_claims(body))
    except (KeyError, TypeError, ValueError):
        logger.warning("getUser returned a body without a user projection; snapshot left as is")
    return _json(request, body)


@router.get("/api/security/2fa/generate")
async def two_factor_generate(request: Request) -> Response:
    return await _proxy(request, "GET", "/security/generate")


@router.post("/api/security/2fa/verify")
async def two_factor_verify(request: Request, body: dict = Body(...)) -> Response:
    return await _proxy(request, "POST", "/security/verify", json={"code": body.get("code")})


@router.post("/api/security/2fa/off")
async def two_factor_off(request: Request, body: dict = Body(...)) -> Response:
    return await _proxy(request, "POST", "/security/off", json={"code": body.get("code")})


@router.get("/api/security/webauthn/register")
async def webauthn_register_options(request: Request) -> Response:
    return await _proxy(request, "GET", "/security/generateRegister")


@router.post("/api/security/webauthn/register")
async def webauthn_register(request: Request, body: dict = Body(...)) -> Response:
    return await _proxy(request, "POST", "/security/verifyRegister", json=body)


@router.get("/api/security/webauthn/authenticate")
async def webauthn_authenticate_options(request: Request) -> Response:
    return await _proxy(request, "GET", "/security/startAuthenticate")


@router.post("/api/security/webauthn/authenticate")
async def webauthn_authenticate(request: Request, body: dict = Body(...)) -> Response:
    return await _proxy(request, "POST", "/security/verifyAuthenticate", json=body)
