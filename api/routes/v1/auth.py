"""
api/routes/v1/auth.py -- Account, session and OAuth REST endpoints.

Routes:
  POST  /api/v1/auth/signup                -- register; queues verification email; 201
  POST  /api/v1/auth/verify                -- confirm email from an action token
  POST  /api/v1/auth/signin                -- password login (may stop at email check or 2FA)
  POST  /api/v1/auth/refresh               -- exchange refresh token for a new pair
  POST  /api/v1/auth/signout               -- revoke every refresh token (requires auth)
  POST  /api/v1/auth/forgot                -- email a password reset link (always 200)
  POST  /api/v1/auth/reset                 -- set a new password from a reset token
  GET   /api/v1/auth/getUser               -- current identity (requires auth)
  GET   /api/v1/auth/providers             -- enabled OAuth providers (public)
  GET   /api/v1/auth/users                 -- list users (admin only)
  PATCH /api/v1/auth/users/{id}            -- change role/name (admin only)
  GET   /api/v1/auth/{provider}/login      -- redirect to the OAuth provider
  GET   /api/v1/auth/{provider}/callback   -- OAuth callback; redirects to the client intake

Security:
  Sign-in, sign-up, forgot and reset are rate-limited per client address.
  AuthService.login() equalizes timing for unknown emails -- never inline the
  lookup and password check here.
  Cache-Control: no-store on every response that carries tokens.
  OAuth failures redirect to the client's sign-in page; they never surface as
  raw errors in the browser.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import LOGIN_LIMIT, SIGNUP_LIMIT, limiter
from api.models import (
    ForgotPasswordRequest,
    MessageResponse,
    OAuthProviderInfo,
    PublicUser,
    ResetPasswordRequest,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    TokenPairResponse,
    TokenRequest,
    UserPatch,
)
from auth.dependencies import get_current_user, require_roles
from auth.models import User, public_user
from auth.oauth import get_enabled_providers, get_oauth_profile
from auth.service import AuthService, LoginOutcome
from core.errors import BadRequest, NotFound

logger = logging.getLogger("masterauth.api.auth")

# Auth policy:
# - signup, verify, signin, refresh, forgot, reset, providers: public
# - {provider}/login, {provider}/callback:                   public (browser redirects)
# - signout, getUser:                                         requires auth (get_current_user)
# - users, users/{id}:                                        requires role admin
router = APIRouter()


def _json(model, status_code: int = 200, no_store: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=model.model_dump(by_alias=True))
    if no_store:
        resp.headers["Cache-Control"] = "no-store"
    return resp


def _public(user: User) -> PublicUser:
    return PublicUser(**public_user(user))


def _signin_body(outcome: LoginOutcome) -> SigninResponse:
    if outcome.status == "verify_email":
        return SigninResponse(
            message="Check your email address and verify your account.",
            verify_email=True,
        )
    if outcome.status == "two_factor_required":
        return SigninResponse(
            message="Two-factor authentication required.",
            two_factor_required=True,
            email=outcome.user.email,
        )
    return SigninResponse(
        message="Signed in.",
        user=_public(outcome.user),
        access_token=outcome.access_token,
        refresh_token=outcome.refresh_token,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(SIGNUP_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", status_code=201, response_model=MessageResponse)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create a password account. A verification link is emailed asynchronously."""
    service: AuthService = request.app.state.auth_service
    service.register(body.name, body.email, body.password)
    return _json(
        MessageResponse(message="Check your email address to verify your account."),
        status_code=201,
    )


@router.post("/auth/verify", response_model=MessageResponse)
def verify_email(request: Request, body: TokenRequest) -> JSONResponse:
    service: AuthService = request.app.state.auth_service
    service.verify_email(body.token)
    return _json(MessageResponse(message="Your email was successfully verified."))


@limiter.limit(LOGIN_LIMIT)  # brute-force mitigation
@router.post("/auth/signin", response_model=SigninResponse)
def signin(request: Request, body: SigninRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same 400. A correct password
    on an unverified account re-sends the verification email instead of
    issuing tokens; with 2FA enabled the client must finish at
    /security/twoFaLogin.
    """
    service: AuthService = request.app.state.auth_service
    outcome = service.login(body.email, body.password)
    return _json(_signin_body(outcome), no_store=True)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: TokenRequest) -> JSONResponse:
    service: AuthService = request.app.state.auth_service
    access, refresh_token = service.refresh(body.token)
    return _json(TokenPairResponse(access_token=access, refresh_token=refresh_token), no_store=True)


@limiter.limit(SIGNUP_LIMIT)
@router.post("/auth/forgot", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Always answers 200 so the response does not reveal whether the email exists."""
    service: AuthService = request.app.state.auth_service
    service.forgot_password(body.email)
    return _json(MessageResponse(message="If that account exists, a reset link has been sent."))


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/reset", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    service: AuthService = request.app.state.auth_service
    service.reset_password(body.token, body.password)
    return _json(MessageResponse(message="Your password has been reset. Please sign in."))


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers so the client can render its buttons."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/getUser", response_model=PublicUser)
def get_user(current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the projection of the identity behind the bearer token."""
    return _json(_public(current_user))


@router.post("/auth/signout", response_model=MessageResponse)
def signout(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke every refresh token issued to the caller.

    Access tokens are stateless and stay valid until they expire.
    """
    service: AuthService = request.app.state.auth_service
    service.revoke_sessions(current_user.id)
    return _json(MessageResponse(message="Signed out."))


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[PublicUser])
def list_users(request: Request, current_user: User = Depends(require_roles("admin"))) -> JSONResponse:
    users = request.app.state.user_store.list_users()
    return JSONResponse(content=[_public(u).model_dump(by_alias=True) for u in users])


@router.patch("/auth/users/{user_id}", response_model=PublicUser)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_roles("admin")),
) -> JSONResponse:
    """Change a user's role or display name. Admin only.

    An admin cannot change their own role, so the last admin cannot lock
    everyone out of administration by accident.
    """
    store = request.app.state.user_store
    target = store.get_by_id(user_id)
    if target is None:
        raise NotFound("User not found")

    updates: dict = {}
    if body.role is not None and body.role != target.role:
        if target.id == current_user.id:
            raise BadRequest("You cannot change your own role.")
        updates["role"] = body.role
    if body.name is not None:
        updates["name"] = body.name
    if not updates:
        raise BadRequest("No fields to update.")

    store.update_user(user_id, **updates)
    logger.info("User %s updated by admin %s: %s", user_id, current_user.id, sorted(updates))
    return _json(_public(store.get_by_id(user_id)))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _oauth_error_redirect(request: Request) -> RedirectResponse:
    client_url = request.app.state.settings.client_url.rstrip("/")
    return RedirectResponse(f"{client_url}/signin?error=oauth_failed", status_code=302)


@router.get("/auth/{provider}/login")
async def oauth_login(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    Only registered providers are accepted, so a spoofed provider name cannot
    turn this into an open redirect.
    """
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        return _oauth_error_redirect(request)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and hand the session to the client.

    Flow:
      1. Exchange the authorization code (authlib checks the state parameter).
      2. Normalize the provider profile -- unverified emails are rejected.
      3. Find or create the local identity.
      4. 2FA enabled: redirect to the client intake with twoFactorEnabled=true
         and no tokens. Otherwise issue a pair and pass it, with the public
         profile, as query parameters.
    """
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        return _oauth_error_redirect(request)

    try:
        token = await client.authorize_access_token(request)
        profile = await get_oauth_profile(client, provider, token)
    except (OAuthError, ValueError, httpx.HTTPError):
        logger.warning("OAuth login failed for provider %r", provider, exc_info=True)
        return _oauth_error_redirect(request)

    service: AuthService = request.app.state.auth_service
    user = service.login_with_oauth(profile)
    intake = request.app.state.settings.client_url.rstrip("/") + "/api/auth"

    if user.two_factor_enabled:
        params = {"twoFactorEnabled": "true", "email": user.email}
    else:
        session = service.issue_session(user)
        params = {
            "accessToken": session["access_token"],
            "refreshToken": session["refresh_token"],
            "userId": str(user.id),
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "isVerified": user.is_verified or "",
            "profilePicture": user.profile_picture or "",
        }
    resp = RedirectResponse(f"{intake}?{urlencode(params)}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp
