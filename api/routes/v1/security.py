"""
api/routes/v1/security.py -- Two-factor (TOTP) and passkey (WebAuthn) endpoints.

Routes:
  GET  /api/v1/security/generate              -- TOTP secret + QR code (requires auth)
  POST /api/v1/security/verify                -- confirm a code, enable 2FA (requires auth)
  POST /api/v1/security/off                   -- confirm a code, disable 2FA (requires auth)
  POST /api/v1/security/twoFaLogin            -- second login step: {email, code} -> tokens
  GET  /api/v1/security/generateRegister      -- passkey creation options (requires auth)
  POST /api/v1/security/verifyRegister        -- bind a passkey (requires auth)
  GET  /api/v1/security/startAuthenticate     -- passkey request options (requires auth)
  POST /api/v1/security/verifyAuthenticate    -- verify a passkey assertion (requires auth)

twoFaLogin is the only public route here. It is rate-limited per client
address because a 6-digit code space is small.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import TWO_FACTOR_LIMIT, limiter
from api.models import (
    CodeRequest,
    MessageResponse,
    PublicUser,
    SigninResponse,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from auth.dependencies import get_current_user
from auth.models import User, public_user
from auth.totp import TwoFactorService
from auth.webauthn import WebAuthnService

router = APIRouter()


def _json(model) -> JSONResponse:
    return JSONResponse(content=model.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# TOTP
# ---------------------------------------------------------------------------


@router.get("/security/generate", response_model=TwoFactorSetupResponse)
def generate_two_factor(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the (possibly pre-existing) secret and its otpauth QR code."""
    service: TwoFactorService = request.app.state.two_factor_service
    setup = service.generate(current_user.id)
    resp = _json(TwoFactorSetupResponse(**setup))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/security/verify", response_model=TwoFactorStatusResponse)
def enable_two_factor(
    request: Request, body: CodeRequest, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    service: TwoFactorService = request.app.state.two_factor_service
    service.verify(current_user.id, body.code)
    return _json(TwoFactorStatusResponse(message="Two-factor authentication enabled.", two_factor_enabled=True))


@router.post("/security/off", response_model=TwoFactorStatusResponse)
def disable_two_factor(
    request: Request, body: CodeRequest, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    service: TwoFactorService = request.app.state.two_factor_service
    service.disable(current_user.id, body.code)
    return _json(TwoFactorStatusResponse(message="Two-factor authentication disabled.", two_factor_enabled=False))


@limiter.limit(TWO_FACTOR_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/security/twoFaLogin", response_model=SigninResponse)
def two_factor_login(request: Request, body: TwoFactorLoginRequest) -> JSONResponse:
    """Finish a sign-in that stopped at two_factor_required."""
    service: TwoFactorService = request.app.state.two_factor_service
    outcome = service.login_with_code(body.email, body.code)
    resp = _json(
        SigninResponse(
            message="Signed in.",
            user=PublicUser(**public_user(outcome.user)),
            access_token=outcome.access_token,
            refresh_token=outcome.refresh_token,
        )
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# WebAuthn
# ---------------------------------------------------------------------------


@router.get("/security/generateRegister")
def webauthn_registration_options(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    service: WebAuthnService = request.app.state.webauthn_service
    return service.generate_registration_challenge(current_user.id)


@router.post("/security/verifyRegister", response_model=MessageResponse)
def webauthn_verify_registration(
    request: Request,
    body: dict = Body(...),
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    service: WebAuthnService = request.app.state.webauthn_service
    service.verify_registration(current_user.id, body)
    return _json(MessageResponse(message="Passkey registered."))


@router.get("/security/startAuthenticate")
def webauthn_authentication_options(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    service: WebAuthnService = request.app.state.webauthn_service
    return service.generate_authentication_challenge(current_user.id)


@router.post("/security/verifyAuthenticate", response_model=MessageResponse)
def webauthn_verify_authentication(
    request: Request,
    body: dict = Body(...),
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    service: WebAuthnService = request.app.state.webauthn_service
    service.verify_authentication(current_user.id, body)
    return _json(MessageResponse(message="verified"))
