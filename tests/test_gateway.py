"""Unit tests for web/gateway.py -- the Request Gateway refresh-and-retry protocol.

The backend is an httpx.MockTransport handler, so every request the gateway
makes is observable.

Covers:
- bearer header attached from the session; unauthenticated calls send none
- 401 -> one refresh -> session updated -> one retry
- failed refresh destroys the session and raises the original 401;
  the next call behaves as unauthenticated
- a retried call that fails again is not refreshed a second time
- concurrent 401s on one session share a single refresh
- non-401 errors and network failures become GatewayError
"""

import asyncio
import json

import httpx
import pytest
from fastapi import Request

from web.gateway import GatewayError, RequestGateway
from web.session import Session, SessionCarrier, SessionUser

BASE = "http://backend.test/api/v1"


class Backend:
    """Scripted backend: accepts `valid_access`, rotates on `valid_refresh`."""

    def __init__(self, valid_access="fresh-access", valid_refresh="refresh-1", refresh_status=200):
        self.valid_access = valid_access
        self.valid_refresh = valid_refresh
        self.refresh_status = refresh_status
        self.calls: list[tuple[str, str, str | None]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        auth = request.headers.get("authorization")
        self.calls.append((request.method, request.url.path, auth))
        if request.url.path == "/api/v1/auth/refresh":
            token = json.loads(request.content)["token"]
            if self.refresh_status != 200 or token != self.valid_refresh:
                return httpx.Response(401, json={"status": "error", "message": "Invalid token.", "statusCode": 401})
            return httpx.Response(200, json={"accessToken": self.valid_access, "refreshToken": "refresh-2"})
        if request.url.path == "/api/v1/auth/signup":
            return httpx.Response(409, json={"status": "error", "message": "User already exists", "statusCode": 409})
        if auth != f"Bearer {self.valid_access}":
            return httpx.Response(401, json={"status": "error", "message": "Token has expired.", "statusCode": 401})
        return httpx.Response(200, json={"id": 1, "email": "ann@example.com"})

    def count(self, path: str) -> int:
        return sum(1 for _m, p, _a in self.calls if p == path)


def make_request(carrier: SessionCarrier, session: Session | None) -> Request:
    headers = []
    if session is not None:
        headers.append((b"cookie", f"session={carrier.encode(session)}".encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "query_string": b"", "headers": headers})


def make_session(access="stale-access", refresh="refresh-1") -> Session:
    return Session(SessionUser(id=1, name="Ann", email="ann@example.com"), access, refresh)


def run(coro):
    return asyncio.run(coro)


async def _call(backend, session, *paths, carrier=None):
    carrier = carrier or SessionCarrier("k" * 32)
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        gateway = RequestGateway(BASE, carrier, client)
        request = make_request(carrier, session)
        results = []
        for path in paths:
            results.append(await gateway.call(request, "GET", path))
        return gateway, carrier, request, results


class TestAuthenticatedCalls:
    def test_valid_token_passes_through(self):
        backend = Backend()
        gateway, _c, _r, results = run(_call(backend, make_session(access="fresh-access"), "/auth/getUser"))
        assert results == [{"id": 1, "email": "ann@example.com"}]
        assert backend.calls == [("GET", "/api/v1/auth/getUser", "Bearer fresh-access")]
        assert gateway.refresh_calls == 0

    def test_no_session_is_unauthorized_without_backend_call(self):
        backend = Backend()
        with pytest.raises(GatewayError) as exc:
            run(_call(backend, None, "/auth/getUser"))
        assert exc.value.status_code == 401
        assert backend.calls == []

    def test_expired_access_refreshes_once_and_retries(self):
        backend = Backend()
        gateway, carrier, request, results = run(_call(backend, make_session(), "/auth/getUser"))
        assert results == [{"id": 1, "email": "ann@example.com"}]
        assert gateway.refresh_calls == 1
        assert backend.count("/api/v1/auth/refresh") == 1
        assert backend.count("/api/v1/auth/getUser") == 2
        session = carrier.read(request)
        assert (session.access_token, session.refresh_token) == ("fresh-access", "refresh-2")
        assert session.user.email == "ann@example.com"

    def test_failed_refresh_destroys_session(self):
        backend = Backend(refresh_status=401)
        carrier = SessionCarrier("k" * 32)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
                gateway = RequestGateway(BASE, carrier, client)
                request = make_request(carrier, make_session())
                with pytest.raises(GatewayError) as first:
                    await gateway.call(request, "GET", "/auth/getUser")
                with pytest.raises(GatewayError) as second:
                    await gateway.call(request, "GET", "/auth/getUser")
                return request, first.value, second.value

        request, first, second = run(scenario())
        assert first.status_code == 401
        assert first.message == "Token has expired."
        assert carrier.read(request) is None
        assert second.status_code == 401
        assert backend.count("/api/v1/auth/refresh") == 1
        assert backend.count("/api/v1/auth/getUser") == 1

    def test_retry_failure_is_not_refreshed_again(self):
        # The refreshed token is still rejected: exactly one refresh, one retry.
        backend = Backend(valid_access="never-issued")
        backend_refresh_access = "rotated-but-rejected"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v1/auth/refresh":
                backend.calls.append((request.method, request.url.path, None))
                return httpx.Response(200, json={"accessToken": backend_refresh_access, "refreshToken": "refresh-2"})
            return backend(request)

        with pytest.raises(GatewayError) as exc:
            run(_call(handler, make_session(), "/auth/getUser"))
        assert exc.value.status_code == 401
        assert backend.count("/api/v1/auth/refresh") == 1
        assert backend.count("/api/v1/auth/getUser") == 2

    def test_concurrent_401s_share_one_refresh(self):
        backend = Backend()
        carrier = SessionCarrier("k" * 32)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
                gateway = RequestGateway(BASE, carrier, client)
                requests = [make_request(carrier, make_session()) for _ in range(3)]
                results = await asyncio.gather(*(gateway.call(r, "GET", "/auth/getUser") for r in requests))
                return gateway, requests, results

        gateway, requests, results = run(scenario())
        assert all(r["id"] == 1 for r in results)
        assert gateway.refresh_calls == 1
        assert backend.count("/api/v1/auth/refresh") == 1
        assert all(carrier.read(r).access_token == "fresh-access" for r in requests)


class TestErrors:
    def test_unauthenticated_call_relays_backend_error(self):
        backend = Backend()
        carrier = SessionCarrier("k" * 32)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
                gateway = RequestGateway(BASE, carrier, client)
                await gateway.call(make_request(carrier, None), "POST", "/auth/signup", json={}, authenticated=False)

        with pytest.raises(GatewayError) as exc:
            run(scenario())
        assert exc.value.status_code == 409
        assert exc.value.message == "User already exists"
        assert backend.calls[0][2] is None

    def test_network_failure_is_502(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError) as exc:
            run(_call(handler, make_session(), "/auth/getUser"))
        assert exc.value.status_code == 502

    def test_unreachable_refresh_destroys_session(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v1/auth/refresh":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(401, json={"message": "Token has expired."})

        carrier = SessionCarrier("k" * 32)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                gateway = RequestGateway(BASE, carrier, client)
                request = make_request(carrier, make_session())
                try:
                    await gateway.call(request, "GET", "/auth/getUser")
                except GatewayError as exc:
                    return request, exc
                raise AssertionError("expected GatewayError")

        request, exc = run(scenario())
        assert exc.status_code == 401
        assert carrier.read(request) is None
