"""
auth/totp.py -- Time-based one-time password second factor.

Standard RFC 6238 TOTP via pyotp: 30 second step, 6 digits, SHA-1, and no
extra skew window (valid_window=0) -- a code is accepted only during its own
step.

Secret lifecycle:
  generate() creates the base32 secret lazily on the first setup attempt and
  returns the same secret on every later attempt, enabled or not. Disabling
  2FA keeps the secret, so re-enabling shows the same QR code.

State transitions go through UserStore.set_two_factor_enabled(), a
conditional UPDATE, so two concurrent confirmations cannot both succeed.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import base64
import io
import logging
from typing import TYPE_CHECKING

import pyotp
import qrcode

from auth.service import AuthService, LoginOutcome
from auth.store import UserStore
from core.errors import BadRequest, Conflict, NotFound

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.auth.totp")

ALREADY_ENABLED = "Two-factor authentication is already enabled."
ALREADY_DISABLED = "Two-factor authentication is already disabled."
INVALID_CODE = "Invalid code."


def qr_data_url(uri: str) -> str:
    """Render `uri` as a PNG QR code and return it as a data: URL."""
    image = qrcode.make(uri)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def check_code(secret: str | None, code: str) -> bool:
    """Return True if `code` is the current TOTP for `secret`."""
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(code.strip(), valid_window=0)


class TwoFactorService:
    def __init__(
        self,
        store: UserStore,
        auth: AuthService,
        issuer: str = "Master Auth",
        label_prefix: str = "MA-",
    ) -> None:
        self.store = store
        self.auth = auth
        self.issuer = issuer
        self.label_prefix = label_prefix

    @classmethod
    def from_settings(cls, store: UserStore, auth: AuthService, settings: Settings) -> "TwoFactorService":
        return cls(store, auth, issuer=settings.totp_issuer, label_prefix=settings.totp_label_prefix)

    def generate(self, user_id: int) -> dict:
        """Return {secret_key, qr_code_image, otpauth_url} for the setup screen.

        Raises Conflict(400) when 2FA is already on.
        """
        user = self.auth.get_user(user_id)
        if user.two_factor_enabled:
            raise Conflict(ALREADY_ENABLED, status_code=400)
        secret = user.two_factor_secret or self.store.ensure_two_factor_secret(user.id, pyotp.random_base32())
        uri = pyotp.TOTP(secret).provisioning_uri(name=f"{self.label_prefix}{user.name}", issuer_name=self.issuer)
        return {"secret_key": secret, "qr_code_image": qr_data_url(uri), "otpauth_url": uri}

    def verify(self, user_id: int, code: str) -> None:
        """Confirm the authenticator app and switch 2FA on."""
        user = self.auth.get_user(user_id)
        if user.two_factor_enabled:
            raise Conflict(ALREADY_ENABLED, status_code=400)
        if not user.two_factor_secret:
            raise BadRequest("Generate a two-factor secret first.")
        if not check_code(user.two_factor_secret, code):
            raise BadRequest(INVALID_CODE)
        if not self.store.set_two_factor_enabled(user.id, True):
            raise Conflict(ALREADY_ENABLED, status_code=400)
        logger.info("Two-factor enabled for user %s", user.id)

    def disable(self, user_id: int, code: str) -> None:
        """Switch 2FA off after checking a current code. The secret is kept."""
        user = self.auth.get_user(user_id)
        if not user.two_factor_enabled:
            raise Conflict(ALREADY_DISABLED, status_code=400)
        if not check_code(user.two_factor_secret, code):
            raise BadRequest(INVALID_CODE)
        if not self.store.set_two_factor_enabled(user.id, False):
            raise Conflict(ALREADY_DISABLED, status_code=400)
        logger.info("Two-factor disabled for user %s", user.id)

    def login_with_code(self, email: str, code: str) -> LoginOutcome:
        """Second login step: exchange email + current code for a token pair."""
        user = self.store.get_by_email(email)
        if user is None:
            raise NotFound("User not found")
        if not user.two_factor_enabled:
            raise BadRequest("Two-factor authentication is not enabled for this account.")
        if not check_code(user.two_factor_secret, code):
            raise BadRequest(INVALID_CODE)
        return self.auth.complete_login(user)
