"""
web/session.py -- Session Carrier: the client's signed session cookie.

The cookie holds the token pair and a snapshot of the public user projection:

    {"user": {id, name, email, role, isVerified, profilePicture},
     "accessToken": ..., "refreshToken": ..., "exp": ...}

encoded as an HS256 JWT (python-jose) signed with SESSION_SECRET_KEY, a key
the backend never sees. The cookie is httponly, secure (configurable for local
http), samesite=strict and expires after seven days.

Handlers never touch cookies directly. create / update / update_user / destroy record a
pending operation on request.state; read() sees pending operations first so
later code in the same request observes the new tokens; flush() writes the
pending operation onto the outgoing response.

read() never raises. A missing, tampered or expired cookie reads as None and
the caller takes the unauthenticated path.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from fastapi import Request, Response
from jose import JWTError, jwt

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.web.session")

_ALGORITHM = "HS256"
_PENDING_ATTR = "session_pending"
_DELETED = object()


@dataclass
class SessionUser:
    id: int
    name: str
    email: str
    role: str = "user"
    is_verified: Optional[str] = None
    profile_picture: Optional[str] = None

    def to_claims(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "isVerified": self.is_verified,
            "profilePicture": self.profile_picture,
        }

    @classmethod
    def from_claims(cls, data: dict) -> "SessionUser":
        return cls(
            id=int(data["id"]),
            name=data["name"],
            email=data["email"],
            role=data.get("role") or "user",
            is_verified=data.get("isVerified") or None,
            profile_picture=data.get("profilePicture") or None,
        )


@dataclass
class Session:
    user: SessionUser
    access_token: str
    refresh_token: str


class SessionCarrier:
    """Reads and writes the session cookie for one client application."""

    def __init__(
        self,
        secret: str,
        cookie_name: str = "session",
        max_age: int = 7 * 24 * 3600,
        secure: bool = True,
    ) -> None:
        if not secret:
            raise ValueError("SessionCarrier needs a signing secret")
        self._secret = secret
        self.cookie_name = cookie_name
        self.max_age = max_age
        self.secure = secure

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionCarrier":
        return cls(
            secret=settings.session_secret_key,
            cookie_name=settings.session_cookie_name,
            max_age=settings.session_max_age_seconds,
            secure=settings.secure_cookies,
        )

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode(self, session: Session) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "user": session.user.to_claims(),
            "accessToken": session.access_token,
            "refreshToken": session.refresh_token,
            "iat": now,
            "exp": now + timedelta(seconds=self.max_age),
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def decode(self, value: str | None) -> Session | None:
        """Return the session in `value`, or None if it is missing or invalid."""
        if not value:
            return None
        try:
            claims = jwt.decode(value, self._secret, algorithms=[_ALGORITHM])
            return Session(
                user=SessionUser.from_claims(claims["user"]),
                access_token=claims["accessToken"],
                refresh_token=claims["refreshToken"],
            )
        except (JWTError, KeyError, TypeError, ValueError):
            logger.info("Discarding invalid session cookie")
            return None

    # ------------------------------------------------------------------
    # Request-scoped operations
    # ------------------------------------------------------------------

    def read(self, request: Request) -> Session | None:
        pending = getattr(request.state, _PENDING_ATTR, None)
        if pending is _DELETED:
            return None
        if pending is not None:
            return pending
        return self.decode(request.cookies.get(self.cookie_name))

    def create(self, request: Request, session: Session) -> None:
        setattr(request.state, _PENDING_ATTR, session)

    def update(self, request: Request, access_token: str, refresh_token: str) -> Session | None:
        """Swap in a new token pair, keeping the user snapshot. Returns None without a session."""
        current = self.read(request)
        if current is None:
            return None
        updated = replace(current, access_token=access_token, refresh_token=refresh_token)
        self.create(request, updated)
        return updated

    def update_user(self, request: Request, user: SessionUser) -> Session | None:
        """Replace the user snapshot, keeping the tokens. Returns None without a session."""
        current = self.read(request)
        if current is None:
            return None
        if current.user == user:
            return current
        updated = replace(current, user=user)
        self.create(request, updated)
        return updated

    def destroy(self, request: Request) -> None:
        setattr(request.state, _PENDING_ATTR, _DELETED)

    def flush(self, request: Request, response: Response) -> Response:
        """Apply the pending operation (if any) to `response` and return it."""
        pending = getattr(request.state, _PENDING_ATTR, None)
        if pending is _DELETED:
            response.delete_cookie(
                self.cookie_name, path="/", secure=self.secure, httponly=True, samesite="strict"
            )
        elif pending is not None:
            response.set_cookie(
                self.cookie_name,
                self.encode(pending),
                max_age=self.max_age,
                path="/",
                secure=self.secure,
                httponly=True,
                samesite="strict",
            )
        return response


def session_from_payload(payload: dict) -> Session:
    """Build a Session from a backend sign-in body ({user, accessToken, refreshToken})."""
    return Session(
        user=SessionUser.from_claims(payload["user"]),
        access_token=payload["accessToken"],
        refresh_token=payload["refreshToken"],
    )
