"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_credential are the mappers. Services and route code
never touch SQL directly.

Concurrency:
  The store is the only shared mutable resource. Coordination happens through
  single conditional UPDATE statements, never through in-process locks:
    - mark_verified():            WHERE is_verified IS NULL
    - ensure_two_factor_secret(): WHERE two_factor_secret IS NULL
    - set_two_factor_enabled():   WHERE two_factor_enabled = <expected>
  Each returns whether this caller won the transition, so two concurrent
  requests cannot both enable 2FA.

  The WebAuthn challenge column holds one value per user. A second ceremony
  started before the first is verified overwrites it.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Layer rule: no imports from api/, web/, or mail/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import User, WebAuthnCredential

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default="user"),
    Column("oauth_provider", String(30)),  # "google", "github"
    Column("oauth_subject", Text),  # provider's stable user ID
    Column("profile_picture", Text),
    Column("is_verified", String(32)),  # ISO 8601 timestamp, NULL = unverified
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_secret", String(64)),  # base32
    Column("webauthn_challenge", Text),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_credentials = Table(
    "webauthn_credentials",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("credential_id", String(512), nullable=False, unique=True),  # base64url
    Column("public_key", Text, nullable=False),  # base64url COSE key
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("transports", Text, nullable=False, server_default="[]"),  # JSON list
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and WebAuthnCredential entities.

    Usage:
        store = UserStore("sqlite:///masterauth.db")
        user_id = store.create_user(User(email="a@x.com", name="A", hashed_password=hash_password("pw")))
        user = store.get_by_email("a@x.com")
        store.close()
    """

    _MUTABLE_FIELDS = {"name", "role", "profile_picture", "hashed_password"}

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key, credentials included. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, row)

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (stored lower-cased). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, row)

    def get_by_oauth_or_email(self, provider: str, subject: str, email: str) -> User | None:
        """Find the identity matching (provider, subject) OR email.

        A linked provider identity wins over an email match when both exist.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(
                    or_(
                        (_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject),
                        _users.c.email == email.strip().lower(),
                    )
                )
            ).fetchall()
            if not rows:
                return None
            linked = [r for r in rows if r.oauth_provider == provider and r.oauth_subject == subject]
            return self._hydrate(conn, linked[0] if linked else rows[0])

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Credentials are not loaded."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_credential(self, credential_id: str) -> WebAuthnCredential | None:
        """Look up a bound authenticator by its credential id (any user)."""
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.credential_id == credential_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a Conflict -- it also covers the race where two
        registrations for one email pass the existence check together.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    profile_picture=user.profile_picture,
                    is_verified=user.is_verified,
                    two_factor_enabled=1 if user.two_factor_enabled else 0,
                    two_factor_secret=user.two_factor_secret,
                    token_version=user.token_version,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update plain profile fields (name, role, profile_picture, hashed_password).

        Returns True if a row was updated, False if user_id was not found.
        Unknown field names raise ValueError.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    def link_oauth(self, user_id: int, provider: str, subject: str) -> None:
        """Associate a provider identity with an existing record."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(oauth_provider=provider, oauth_subject=subject, updated_at=_now_iso())
            )

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and their bound authenticators."""
        with self.engine.begin() as conn:
            conn.execute(_credentials.delete().where(_credentials.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def mark_verified(self, user_id: int) -> bool:
        """Stamp the verification time once. Returns False if already verified or missing."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.is_verified.is_(None)))
                .values(is_verified=now, updated_at=now)
            )
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    def bump_token_version(self, user_id: int) -> int:
        """Increment token_version, revoking all refresh tokens issued so far. Returns the new value."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(token_version=_users.c.token_version + 1, updated_at=_now_iso())
            )
            return conn.execute(select(_users.c.token_version).where(_users.c.id == user_id)).scalar() or 0

    # ------------------------------------------------------------------
    # Two-factor state
    # ------------------------------------------------------------------

    def ensure_two_factor_secret(self, user_id: int, candidate: str) -> str:
        """Persist candidate as the TOTP secret unless one exists; return the stored secret.

        Concurrent first-time setups converge on whichever secret was written
        first, so the QR code every caller shows matches what is stored.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.two_factor_secret.is_(None)))
                .values(two_factor_secret=candidate, updated_at=_now_iso())
            )
            return conn.execute(select(_users.c.two_factor_secret).where(_users.c.id == user_id)).scalar()

    def set_two_factor_enabled(self, user_id: int, enabled: bool) -> bool:
        """Flip two_factor_enabled to `enabled` if it currently holds the opposite value.

        Returns False when the flag already had the requested value, which the
        caller reports as a redundant state change.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.two_factor_enabled == (0 if enabled else 1)))
                .values(two_factor_enabled=1 if enabled else 0, updated_at=_now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # WebAuthn state
    # ------------------------------------------------------------------

    def set_challenge(self, user_id: int, challenge: str | None) -> None:
        """Store (or clear, with None) the user's outstanding ceremony challenge."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(webauthn_challenge=challenge))

    def add_credential(self, user_id: int, credential: WebAuthnCredential) -> bool:
        """Append an authenticator and clear the challenge in one transaction.

        Returns False (and still clears the challenge) if the credential id is
        already bound, to this user or anyone else. Existing entries are never
        overwritten.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _credentials.insert().values(
                        user_id=user_id,
                        credential_id=credential.credential_id,
                        public_key=credential.public_key,
                        sign_count=credential.sign_count,
                        transports=json.dumps(list(credential.transports)),
                        created_at=_now_iso(),
                    )
                )
                conn.execute(_users.update().where(_users.c.id == user_id).values(webauthn_challenge=None))
        except IntegrityError:
            self.set_challenge(user_id, None)
            return False
        return True

    def update_sign_count(self, credential_id: str, sign_count: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.credential_id == credential_id)
                .values(sign_count=sign_count)
            )

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hydrate(self, conn, row) -> User:
        user = _row_to_user(row)
        cred_rows = conn.execute(
            _credentials.select().where(_credentials.c.user_id == user.id).order_by(_credentials.c.id)
        ).fetchall()
        user.webauthn_credentials = [_row_to_credential(r) for r in cred_rows]
        return user


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=row.role,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        profile_picture=row.profile_picture,
        is_verified=row.is_verified,
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        webauthn_challenge=row.webauthn_challenge,
        token_version=row.token_version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_credential(row) -> WebAuthnCredential:
    return WebAuthnCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        sign_count=row.sign_count,
        transports=json.loads(row.transports or "[]"),
        created_at=row.created_at,
    )
