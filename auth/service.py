"""
auth/service.py -- Password authentication, email verification, token refresh,
password reset and OAuth identity resolution.

AuthService is constructed once per application with its collaborators
(store, token service, email queue, client URL) and stored on app.state.
Every method raises a core.errors type on failure; none of them know about
HTTP.

Login outcomes:
  A login with correct credentials does not always yield tokens:
    - unverified email  -> a fresh verification email is queued and the caller
                           is told to check their inbox (no tokens)
    - 2FA enabled       -> the caller is told a second factor is required
                           (no tokens; /security/twoFaLogin completes it)
    - otherwise         -> access + refresh tokens and the public projection

Account enumeration:
  Unknown email and wrong password produce the identical error, and both run
  bcrypt so their timing matches.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth.models import OAuthProfile, User, public_user
from auth.store import UserStore
from auth.tokens import DEFAULT_BCRYPT_ROUNDS, DUMMY_HASH, TokenService, compare_password, hash_password
from core.errors import BadRequest, Conflict, InvalidToken, NotFound
from mail.queue import EmailJob
from mail.templates import RESET_SUBJECT, VERIFY_SUBJECT, render_reset_email, render_verify_email

logger = logging.getLogger("masterauth.auth.service")

INVALID_CREDENTIALS = "Invalid credentials"


class EmailDispatcher(Protocol):
    def enqueue(self, job: EmailJob) -> None: ...


@dataclass
class LoginOutcome:
    """Result of a password (or second-factor) login attempt."""

    status: str  # "authenticated" | "verify_email" | "two_factor_required"
    user: User
    access_token: str | None = None
    refresh_token: str | None = None


class AuthService:
    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        mailer: EmailDispatcher,
        client_url: str,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.mailer = mailer
        self.client_url = client_url.rstrip("/")
        self.bcrypt_rounds = bcrypt_rounds

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str) -> User:
        """Create a password account and queue its verification email.

        Raises Conflict if the email is taken. Email delivery problems never
        fail the registration.
        """
        if self.store.get_by_email(email) is not None:
            raise Conflict("User already exists")
        user = User(
            email=email,
            name=name.strip(),
            hashed_password=hash_password(password, self.bcrypt_rounds),
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError as exc:
            # Concurrent registration for the same email won the insert.
            raise Conflict("User already exists") from exc
        logger.info("Registered user %s", user.id)
        self._send_verification(user)
        return self.store.get_by_id(user.id) or user

    def verify_email(self, token: str) -> None:
        """Confirm an email address from a verify-purpose action token.

        Raises InvalidToken (401) for bad/expired/wrong-purpose tokens and
        BadRequest if the account is already verified.
        """
        user_id = self.tokens.verify_action_token(token, "verify")
        user = self.store.get_by_id(user_id)
        if user is None:
            raise InvalidToken("Invalid token.")
        if user.is_verified or not self.store.mark_verified(user_id):
            raise BadRequest("User already verified")
        logger.info("Verified email for user %s", user_id)

    # ------------------------------------------------------------------
    # Login, sessions and refresh
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> LoginOutcome:
        user = self.store.get_by_email(email)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt.
            compare_password(password, DUMMY_HASH)
            raise BadRequest(INVALID_CREDENTIALS)
        if not compare_password(password, user.hashed_password):
            raise BadRequest(INVALID_CREDENTIALS)

        if not user.is_verified:
            self._send_verification(user)
            return LoginOutcome(status="verify_email", user=user)
        if user.two_factor_enabled:
            return LoginOutcome(status="two_factor_required", user=user)
        return self.complete_login(user)

    def complete_login(self, user: User) -> LoginOutcome:
        """Issue a token pair for a user who has passed every required factor."""
        access, refresh = self.tokens.issue_pair(user.id, user.token_version)
        self.store.update_last_login(user.id)
        return LoginOutcome(status="authenticated", user=user, access_token=access, refresh_token=refresh)

    def issue_session(self, user: User) -> dict:
        """Return {user, access_token, refresh_token} for a fully authenticated user."""
        outcome = self.complete_login(user)
        return {
            "user": public_user(user),
            "access_token": outcome.access_token,
            "refresh_token": outcome.refresh_token,
        }

    def refresh(self, refresh_token: str) -> tuple[str, str]:
        """Mint a new (access, refresh) pair from a valid refresh token.

        The presented refresh token stays valid until it expires or the user's
        token_version is bumped (sign-out, password reset).
        """
        user_id, version = self.tokens.verify_refresh(refresh_token)
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User does not exist")
        if version != user.token_version:
            raise InvalidToken("Session has been revoked.")
        return self.tokens.issue_pair(user.id, user.token_version)

    def revoke_sessions(self, user_id: int) -> None:
        """Invalidate every refresh token issued to user_id so far."""
        self.store.bump_token_version(user_id)
        logger.info("Revoked refresh tokens for user %s", user_id)

    def get_user(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Queue a reset link if a password account exists. Silent otherwise."""
        user = self.store.get_by_email(email)
        if user is None or user.hashed_password is None:
            return
        token = self.tokens.issue_action_token(user.id, "reset")
        url = f"{self.client_url}/reset?{urlencode({'token': token})}"
        self.mailer.enqueue(EmailJob(to=user.email, subject=RESET_SUBJECT, html=render_reset_email(url, user.name)))

    def reset_password(self, token: str, password: str) -> None:
        """Replace the password hash and revoke existing refresh tokens."""
        user_id = self.tokens.verify_action_token(token, "reset")
        if not self.store.update_user(user_id, hashed_password=hash_password(password, self.bcrypt_rounds)):
            raise InvalidToken("Invalid token.")
        self.store.bump_token_version(user_id)
        logger.info("Password reset for user %s", user_id)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def login_with_oauth(self, profile: OAuthProfile) -> User:
        """Resolve a provider-attested profile to a local identity, creating it if absent.

        Lookup matches (provider, provider_id) OR email. A new identity is
        created verified (the provider attested the email) and without a
        password. An unverified match loses any password it carries, since
        that password was never confirmed by its owner.
        """
        user = self.store.get_by_oauth_or_email(profile.provider, profile.provider_id, profile.email)
        if user is None:
            new_user = User(
                email=profile.email,
                name=profile.name or profile.email.split("@", 1)[0],
                oauth_provider=profile.provider,
                oauth_subject=profile.provider_id,
                profile_picture=profile.avatar_url,
                is_verified=datetime.now(timezone.utc).isoformat(),
            )
            try:
                user_id = self.store.create_user(new_user)
            except IntegrityError:
                # A concurrent callback created the same email first.
                user = self.store.get_by_email(profile.email)
                if user is None:
                    raise
                return user
            logger.info("Created OAuth identity %s via %s", user_id, profile.provider)
            return self.store.get_by_id(user_id) or new_user

        if not user.is_verified and user.hashed_password is not None:
            # Nobody ever confirmed this password; the provider only vouches for the email.
            self.store.update_user(user.id, hashed_password=None)
            self.store.bump_token_version(user.id)
            logger.warning("Dropped unconfirmed password for user %s on %s sign-in", user.id, profile.provider)
            user = self.store.get_by_id(user.id) or user
        if user.oauth_subject is None and user.hashed_password is None:
            self.store.link_oauth(user.id, profile.provider, profile.provider_id)
        if not user.is_verified:
            self.store.mark_verified(user.id)
        return self.store.get_by_id(user.id) or user

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _send_verification(self, user: User) -> None:
        token = self.tokens.issue_action_token(user.id, "verify")
        url = f"{self.client_url}/verify?{urlencode({'token': token})}"
        self.mailer.enqueue(EmailJob(to=user.email, subject=VERIFY_SUBJECT, html=render_verify_email(url, user.name)))
