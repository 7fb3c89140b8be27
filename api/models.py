"""
API request and response models for the Master Auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, isVerified, ...). Every model accepts
either spelling on input (populate_by_name) and routes serialize with
by_alias=True.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
TOTP_PATTERN = r"^\d{6}$"

# bcrypt ignores everything past 72 bytes; keep passwords well inside that.
PASSWORD_MIN = 6
PASSWORD_MAX = 64


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(CamelModel):
    """Request body for POST /api/v1/auth/signup."""

    name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()


class SigninRequest(CamelModel):
    email: str = Field(max_length=320)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class TokenRequest(CamelModel):
    """Body of POST /auth/verify and POST /auth/refresh."""

    token: str = Field(min_length=1, max_length=4096)


class ForgotPasswordRequest(CamelModel):
    email: str = Field(max_length=320)


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1, max_length=4096)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class CodeRequest(CamelModel):
    """A current 6-digit TOTP code."""

    code: str = Field(pattern=TOTP_PATTERN)


class TwoFactorLoginRequest(CamelModel):
    email: str = Field(max_length=320)
    code: str = Field(pattern=TOTP_PATTERN)


class UserPatch(CamelModel):
    """Request body for PATCH /api/v1/auth/users/{id}."""

    role: Optional[Literal["admin", "moderator", "user"]] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PublicUser(CamelModel):
    """The only view of an identity that leaves the server."""

    id: int
    name: str
    email: str
    role: str
    is_verified: Optional[str] = None
    profile_picture: Optional[str] = None
    two_factor_enabled: bool = False


class MessageResponse(CamelModel):
    status: str = "success"
    message: str


class SigninResponse(CamelModel):
    """Body of a sign-in attempt.

    Carries tokens only when every factor has been satisfied. Otherwise one
    of verify_email / two_factor_required is set and the tokens are absent.
    """

    status: str = "success"
    message: str
    user: Optional[PublicUser] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    verify_email: bool = False
    two_factor_required: bool = False
    email: Optional[str] = None


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str


class TwoFactorSetupResponse(CamelModel):
    message: str = "Scan the QR code or enter the secret key"
    secret_key: str
    qr_code_image: str
    otpauth_url: str


class TwoFactorStatusResponse(CamelModel):
    message: str
    two_factor_enabled: bool


class OAuthProviderInfo(CamelModel):
    name: str
    label: str


class HealthResponse(CamelModel):
    status: str = "ok"
    version: str
    database: str = "ok"


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    model_config = ConfigDict(populate_by_name=True)

    status: str = "error"
    message: str
    status_code: int = Field(alias="statusCode")
