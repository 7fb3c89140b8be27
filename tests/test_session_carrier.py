"""Unit tests for web/session.py -- the Session Carrier cookie.

Covers:
- encode/decode round trip; tampered, foreign-key and expired cookies read as None
- read() sees pending create/update/destroy before the cookie
- update() keeps the user snapshot and returns None without a session
- update_user() swaps the snapshot and keeps the tokens
- flush() writes httponly/samesite=strict cookies, or a deletion
"""

from fastapi import Request, Response

from web.session import Session, SessionCarrier, SessionUser, session_from_payload


def make_request(cookie: str | None = None, name: str = "session") -> Request:
    headers = [(b"cookie", f"{name}={cookie}".encode())] if cookie else []
    return Request({"type": "http", "method": "GET", "path": "/", "query_string": b"", "headers": headers})


def make_session(access: str = "access-1", refresh: str = "refresh-1") -> Session:
    user = SessionUser(id=3, name="Ann", email="ann@example.com", role="moderator", is_verified="2024-01-01T00:00:00")
    return Session(user=user, access_token=access, refresh_token=refresh)


def cookie_value(response: Response, name: str = "session") -> str:
    header = next(h for h in response.headers.getlist("set-cookie") if h.startswith(f"{name}="))
    return header.split(";", 1)[0].split("=", 1)[1]


class TestEncoding:
    def test_round_trip(self):
        carrier = SessionCarrier("k" * 32)
        session = carrier.decode(carrier.encode(make_session()))
        assert session == make_session()

    def test_tampered_cookie(self):
        carrier = SessionCarrier("k" * 32)
        value = carrier.encode(make_session())
        assert carrier.decode(value[:-2] + ("AA" if value[-2:] != "AA" else "BB")) is None

    def test_other_key(self):
        assert SessionCarrier("k" * 32).decode(SessionCarrier("j" * 32).encode(make_session())) is None

    def test_expired_cookie(self):
        carrier = SessionCarrier("k" * 32, max_age=-1)
        assert carrier.decode(carrier.encode(make_session())) is None

    def test_garbage_and_missing(self):
        carrier = SessionCarrier("k" * 32)
        assert carrier.decode("not-a-jwt") is None
        assert carrier.decode(None) is None


class TestRequestOperations:
    def test_read_from_cookie(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        assert carrier.read(request).user.email == "ann@example.com"

    def test_no_cookie(self):
        assert SessionCarrier("k" * 32).read(make_request()) is None

    def test_pending_create_wins_over_cookie(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        carrier.create(request, make_session(access="access-2"))
        assert carrier.read(request).access_token == "access-2"

    def test_update_keeps_user(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        updated = carrier.update(request, "access-9", "refresh-9")
        assert updated.user == make_session().user
        assert (carrier.read(request).access_token, carrier.read(request).refresh_token) == ("access-9", "refresh-9")

    def test_update_without_session(self):
        carrier = SessionCarrier("k" * 32)
        assert carrier.update(make_request(), "a", "r") is None

    def test_update_user_keeps_tokens(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        promoted = SessionUser(id=3, name="Ann", email="ann@example.com", role="admin", is_verified="2024-01-01T00:00:00")
        updated = carrier.update_user(request, promoted)
        assert updated.user.role == "admin"
        assert (updated.access_token, updated.refresh_token) == ("access-1", "refresh-1")
        assert carrier.read(request).user == promoted

    def test_update_user_unchanged_snapshot_writes_nothing(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        carrier.update_user(request, make_session().user)
        assert carrier.flush(request, Response()).headers.getlist("set-cookie") == []

    def test_update_user_without_session(self):
        assert SessionCarrier("k" * 32).update_user(make_request(), make_session().user) is None

    def test_destroy_hides_cookie(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        carrier.destroy(request)
        assert carrier.read(request) is None


class TestFlush:
    def test_flush_sets_cookie(self):
        carrier = SessionCarrier("k" * 32, secure=False)
        request = make_request()
        carrier.create(request, make_session())
        response = carrier.flush(request, Response())
        attrs = [a.strip() for a in response.headers["set-cookie"].lower().split(";")[1:]]
        assert "httponly" in attrs
        assert "samesite=strict" in attrs
        assert "path=/" in attrs
        assert "secure" not in attrs
        assert carrier.decode(cookie_value(response)) == make_session()

    def test_flush_secure_flag(self):
        carrier = SessionCarrier("k" * 32, secure=True)
        request = make_request()
        carrier.create(request, make_session())
        header = carrier.flush(request, Response()).headers["set-cookie"].lower()
        assert "secure" in [a.strip() for a in header.split(";")[1:]]

    def test_flush_deletes_cookie(self):
        carrier = SessionCarrier("k" * 32)
        request = make_request(carrier.encode(make_session()))
        carrier.destroy(request)
        header = carrier.flush(request, Response()).headers["set-cookie"].lower()
        assert header.startswith('session=""') or header.startswith("session=;")
        assert "max-age=0" in header

    def test_flush_without_changes(self):
        carrier = SessionCarrier("k" * 32)
        assert "set-cookie" not in carrier.flush(make_request(), Response()).headers


def test_session_from_signin_payload():
    payload = {
        "user": {"id": 3, "name": "Ann", "email": "ann@example.com", "role": "user", "isVerified": None},
        "accessToken": "a",
        "refreshToken": "r",
    }
    session = session_from_payload(payload)
    assert session.user.id == 3
    assert session.user.is_verified is None
    assert (session.access_token, session.refresh_token) == ("a", "r")
