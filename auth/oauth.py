"""
auth/oauth.py -- Authlib OAuth provider registry and profile normalization.

build_oauth_registry() registers only the providers whose client ID and
secret are both configured. The registry is built once by the application
lifespan and stored on app.state.oauth, so tests can swap in a mock.

Security notes:
  Email verification is mandatory. get_oauth_profile() raises ValueError if
  the provider does not confirm the email is verified. An unverified GitHub
  email could belong to an attacker who added a victim's address without
  confirming it, and OAuth identities are created already verified.

  The OAuth state parameter (CSRF protection) is handled by authlib through
  Starlette SessionMiddleware, which keeps it between the authorization
  redirect and the callback.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.auth.oauth")

PROVIDER_LABELS = {"github": "GitHub", "google": "Google"}


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Return an authlib registry holding every configured provider."""
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every provider with credentials configured."""
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": PROVIDER_LABELS["github"]})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": PROVIDER_LABELS["google"]})
    return providers


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalize a provider token response into an OAuthProfile.

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "github" or "google".
        token:    The token dict returned by authlib after code exchange.

    Raises:
        ValueError: If a verified email cannot be confirmed. The caller must
            treat this as an authentication failure and redirect to the
            client's sign-in page with an error.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider == "google":
        return _get_google_profile(token)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """Build a profile from GitHub's REST API.

    GitHub does not include the email in the access token. Two API calls are
    required:
      1. GET /user -- numeric user ID (stable subject), display name, avatar.
      2. GET /user/emails -- to find the primary verified email.

    Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    return OAuthProfile(
        provider="github",
        provider_id=str(profile["id"]),
        email=email,
        name=profile.get("name") or profile.get("login") or email.split("@", 1)[0],
        avatar_url=profile.get("avatar_url"),
    )


def _get_google_profile(token: dict) -> OAuthProfile:
    """Build a profile from the id_token claims authlib parsed into token["userinfo"].

    Google omitting email_verified is treated as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            "google OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")

    return OAuthProfile(
        provider="google",
        provider_id=str(subject_id),
        email=email,
        name=userinfo.get("name") or email.split("@", 1)[0],
        avatar_url=userinfo.get("picture"),
    )
