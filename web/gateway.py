"""
web/gateway.py -- Request Gateway: the client's single path to the backend.

Every authenticated backend call goes through RequestGateway.call(), which
implements the refresh-and-retry protocol:

  1. Attach the session's access token as a Bearer header.
  2. On 401, refresh exactly once with the session's refresh token.
       success -> persist the new pair through the SessionCarrier and retry
                  the original call once with the new access token
       failure -> destroy the session and raise the ORIGINAL 401
  3. Any other failure raises GatewayError with the backend's status and
     message. There is never a second refresh or a second retry.

Concurrent requests from one session that hit 401 together must not each
refresh. Refreshes are serialized per refresh token with an asyncio.Lock,
and a finished result is cached briefly so the waiters reuse it instead of
presenting an already-rotated token.

Network failures surface as GatewayError(502) so the UI layer never sees a
raw httpx exception.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import Request

from core.errors import AppError
from web.session import SessionCarrier, SessionUser

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.web.gateway")

# How long a completed refresh is reused by requests that raced on the same token.
_REFRESH_REUSE_SECONDS = 30.0


class GatewayError(AppError):
    """A backend call failed. Carries the backend's status code and message."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or "Request failed.", status_code=status_code)


class RequestGateway:
    def __init__(self, base_url: str, carrier: SessionCarrier, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.carrier = carrier
        self._client = client
        self._locks: dict[str, asyncio.Lock] = {}
        self._refreshed: dict[str, tuple[float, tuple[str, str] | None]] = {}
        self.refresh_calls = 0

    @classmethod
    def from_settings(cls, settings: Settings, carrier: SessionCarrier, client: httpx.AsyncClient) -> "RequestGateway":
        return cls(settings.api_url, carrier, client)

    async def call(
        self,
        request: Request,
        method: str,
        path: str,
        json: Any = None,
        authenticated: bool = True,
    ) -> Any:
        """Perform a backend call and return its decoded JSON body.

        Raises GatewayError for every non-2xx outcome.
        """
        if not authenticated:
            return self._body_or_raise(await self._send(method, path, json))

        session = self.carrier.read(request)
        if session is None:
            raise GatewayError(401, "Unauthorized")

        resp = await self._send(method, path, json, session.access_token)
        if resp.status_code != 401:
            return self._body_or_raise(resp)

        original = GatewayError(401, _message(resp))
        pair = await self._refresh(session.refresh_token)
        if pair is None:
            self.carrier.destroy(request)
            raise original

        access, refresh = pair
        self.carrier.update(request, access, refresh)
        retry = await self._send(method, path, json, access)
        return self._body_or_raise(retry)

    async def fetch_user(self, access_token: str) -> SessionUser:
        """Ask the backend who `access_token` belongs to. No refresh is attempted."""
        body = self._body_or_raise(await self._send("GET", "/auth/getUser", access_token=access_token))
        try:
            return SessionUser.from_claims(body)
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayError(502, "The authentication service returned a malformed user.") from exc

    # ------------------------------------------------------------------
    # Refresh (deduplicated per refresh token)
    # ------------------------------------------------------------------

    async def _refresh(self, refresh_token: str) -> tuple[str, str] | None:
        self._prune()
        lock = self._locks.setdefault(refresh_token, asyncio.Lock())
        async with lock:
            cached = self._refreshed.get(refresh_token)
            if cached is not None:
                return cached[1]
            pair = await self._request_refresh(refresh_token)
            self._refreshed[refresh_token] = (time.monotonic(), pair)
            return pair

    async def _request_refresh(self, refresh_token: str) -> tuple[str, str] | None:
        self.refresh_calls += 1
        try:
            resp = await self._client.post(f"{self.base_url}/auth/refresh", json={"token": refresh_token})
        except httpx.HTTPError:
            logger.warning("Token refresh failed: backend unreachable", exc_info=True)
            return None
        if resp.status_code != 200:
            logger.info("Token refresh rejected with %d", resp.status_code)
            return None
        try:
            body = resp.json()
            return body["accessToken"], body["refreshToken"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Token refresh returned a malformed body")
            return None

    def _prune(self) -> None:
        cutoff = time.monotonic() - _REFRESH_REUSE_SECONDS
        for token, (stamp, _pair) in list(self._refreshed.items()):
            if stamp < cutoff:
                del self._refreshed[token]
                lock = self._locks.get(token)
                if lock is not None and not lock.locked():
                    del self._locks[token]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(self, method: str, path: str, json: Any = None, access_token: str | None = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        try:
            return await self._client.request(method, f"{self.base_url}{path}", json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Backend call %s %s failed: %s", method, path, exc)
            raise GatewayError(502, "The authentication service is unavailable.") from exc

    @staticmethod
    def _body_or_raise(resp: httpx.Response) -> Any:
        if resp.is_success:
            try:
                return resp.json()
            except ValueError:
                return {}
        raise GatewayError(resp.status_code, _message(resp))


def _message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or "Request failed."
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.reason_phrase or "Request failed."
