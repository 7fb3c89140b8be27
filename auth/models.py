"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; password hashing lives in auth/tokens.py as free functions rather
than as methods on the record.

Layer rule: no imports from api/, web/, or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ROLES = ("admin", "moderator", "user")


@dataclass
class WebAuthnCredential:
    """An authenticator bound to a user.

    credential_id and public_key are base64url strings (no padding), the same
    encoding the browser uses for PublicKeyCredential.id. credential_id is
    unique across the whole system so assertions can be routed by it.
    """

    credential_id: str
    public_key: str
    sign_count: int = 0
    transports: list[str] = field(default_factory=list)
    user_id: int | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class User:
    """Represents an identity record.

    hashed_password is None for OAuth-only users (they have no local password).
    oauth_provider / oauth_subject are None for password accounts.

    is_verified holds the ISO timestamp of email confirmation; None means the
    address has not been confirmed yet. Once set it is never cleared.

    two_factor_secret is generated on the first setup attempt and kept even
    when two_factor_enabled goes back to False, so re-enabling reuses it.

    webauthn_challenge is the single outstanding ceremony challenge. A new
    ceremony overwrites it; every verification clears it.

    token_version is embedded in refresh tokens. Bumping it revokes every
    refresh token issued before the bump.
    """

    email: str
    name: str
    role: str = "user"  # "admin", "moderator", "user"
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    oauth_provider: str | None = None  # "google", "github"
    oauth_subject: str | None = None  # provider's stable user ID
    profile_picture: str | None = None
    is_verified: str | None = None
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    webauthn_challenge: str | None = None
    webauthn_credentials: list[WebAuthnCredential] = field(default_factory=list)
    token_version: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class OAuthProfile:
    """Provider-attested identity returned after a successful code exchange."""

    provider: str
    provider_id: str
    email: str
    name: str
    avatar_url: str | None = None


def public_user(user: User) -> dict:
    """Return the projection of a user that may leave the server.

    The password hash, TOTP secret, WebAuthn challenge and token version are
    never part of it.
    """
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "is_verified": user.is_verified,
        "profile_picture": user.profile_picture,
        "two_factor_enabled": user.two_factor_enabled,
    }
