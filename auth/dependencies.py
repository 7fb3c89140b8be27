"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and roles.

The backend accepts exactly one credential: an access token in the
Authorization: Bearer header. The client's session cookie is never sent here.

get_current_user() runs before any handler that needs the identity:
  1. No Bearer header            -> 401
  2. Token invalid or expired    -> 401
  3. User no longer exists       -> 401 (covers deleted accounts)
  4. Otherwise the User is attached to request.state.user and returned.

require_roles(*roles) composes on top of it and fails with 403 when the
identity's role is not listed.

Layer rule: no imports from web/. auth/dependencies.py may import from fastapi
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import ROLES, User
from core.errors import Forbidden, InvalidToken, Unauthorized


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require a valid access token. Raises Unauthorized (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Unauthorized")

    tokens = request.app.state.token_service
    try:
        user_id = tokens.verify_access(token)
    except InvalidToken as exc:
        raise Unauthorized(exc.message) from exc

    user = request.app.state.user_store.get_by_id(user_id)
    if user is None:
        raise Unauthorized("Unauthorized")
    request.state.user = user
    return user


def require_roles(*roles: str) -> Callable[..., User]:
    """Return a dependency that admits only users holding one of `roles`.

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(user: User = Depends(require_roles("admin"))): ...
    """
    unknown = set(roles) - set(ROLES)
    if unknown:
        raise ValueError(f"Unknown roles: {sorted(unknown)!r}")

    def _check(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise Forbidden()
        return user

    return _check
