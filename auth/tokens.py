"""
auth/tokens.py -- JWT issuance/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Three token families, each signed with its own
       secret so that a leak of one cannot forge another:
         access  -- short-lived bearer credential, payload {userId}
         refresh -- long-lived, only mints new pairs, payload {userId, ver}
         action  -- single purpose ("verify" or "reset"), payload {userId, purpose}
       Every token also carries a "typ" claim. Verification failures of any
       kind (bad signature, expiry, wrong family, wrong purpose) raise
       InvalidToken, which the HTTP layer renders as 401 -- never a 500.

  Refresh tokens are stateless. The "ver" claim is compared against the
       user's token_version by the caller; bumping that column revokes every
       refresh token issued before the bump.

  Passwords: bcrypt used directly with a fixed cost factor (10 rounds by
       default). hash_password / compare_password are free functions on plain
       strings; identity records stay plain data.

Layer rule: no imports from api/, web/, or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.errors import InvalidToken

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.auth.tokens")

_ALGORITHM = "HS256"

ACTION_PURPOSES = ("verify", "reset")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------

DEFAULT_BCRYPT_ROUNDS = 10


def hash_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def compare_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB -- treat as a mismatch, not a server error.
        return False


# Timing equalization: login runs bcrypt against this when the email is
# unknown, so response time does not reveal whether an account exists.
DUMMY_HASH: str = hash_password("masterauth_timing_dummy")


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies the three token families.

    Configuration is supplied at construction; nothing here reads settings at
    call time. Build one per application with TokenService.from_settings().
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        action_secret: str,
        access_ttl: int = 3600,
        refresh_ttl: int = 7 * 24 * 3600,
        action_ttl: int = 24 * 3600,
    ) -> None:
        if len({access_secret, refresh_secret, action_secret}) != 3:
            raise ValueError("access, refresh and action tokens need distinct secrets")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._action_secret = action_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.action_ttl = action_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            action_secret=settings.jwt_action_secret,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            action_ttl=settings.action_token_expire_seconds,
        )

    # -- access -----------------------------------------------------------

    def issue_access(self, user_id: int, expire_seconds: int = 0) -> str:
        """Encode a signed access token for user_id.

        expire_seconds overrides the configured lifetime; tests use negative
        values to mint already-expired tokens.
        """
        ttl = expire_seconds or self.access_ttl
        return self._encode({"userId": user_id, "typ": "access"}, self._access_secret, ttl)

    def verify_access(self, token: str) -> int:
        """Return the userId carried by a valid access token. Raises InvalidToken."""
        payload = self._decode(token, self._access_secret, "access")
        return payload["userId"]

    # -- refresh ----------------------------------------------------------

    def issue_refresh(self, user_id: int, token_version: int = 0, expire_seconds: int = 0) -> str:
        ttl = expire_seconds or self.refresh_ttl
        return self._encode({"userId": user_id, "ver": token_version, "typ": "refresh"}, self._refresh_secret, ttl)

    def verify_refresh(self, token: str) -> tuple[int, int]:
        """Return (userId, token_version) from a valid refresh token. Raises InvalidToken."""
        payload = self._decode(token, self._refresh_secret, "refresh")
        return payload["userId"], int(payload.get("ver", 0))

    def issue_pair(self, user_id: int, token_version: int = 0) -> tuple[str, str]:
        """Return a fresh (access, refresh) pair."""
        return self.issue_access(user_id), self.issue_refresh(user_id, token_version)

    # -- action -----------------------------------------------------------

    def issue_action_token(self, user_id: int, purpose: str, expire_seconds: int = 0) -> str:
        """Encode a single-purpose token ("verify" or "reset")."""
        if purpose not in ACTION_PURPOSES:
            raise ValueError(f"Unknown action token purpose: {purpose!r}")
        ttl = expire_seconds or self.action_ttl
        return self._encode({"userId": user_id, "purpose": purpose, "typ": "action"}, self._action_secret, ttl)

    def verify_action_token(self, token: str, purpose: str) -> int:
        """Return the userId if the token is valid AND was issued for `purpose`."""
        payload = self._decode(token, self._action_secret, "action")
        if payload.get("purpose") != purpose:
            raise InvalidToken("Token was not issued for this action.")
        return payload["userId"]

    # -- internals --------------------------------------------------------

    @staticmethod
    def _encode(claims: dict, secret: str, ttl: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {**claims, "iat": now, "exp": now + timedelta(seconds=ttl)}
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    @staticmethod
    def _decode(token: str, secret: str, family: str) -> dict:
        if not token:
            raise InvalidToken("Token is required.")
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            logger.debug("Rejected expired %s token", family)
            raise InvalidToken("Token has expired.") from exc
        except JWTError as exc:
            logger.debug("Rejected %s token: %s", family, exc)
            raise InvalidToken("Invalid token.") from exc
        if payload.get("typ") != family or "userId" not in payload:
            logger.debug("Rejected token presented as %s (typ=%r)", family, payload.get("typ"))
            raise InvalidToken("Invalid token.")
        return payload
