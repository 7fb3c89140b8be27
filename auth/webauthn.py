"""
auth/webauthn.py -- Passkey registration and authentication ceremonies.

Built on py_webauthn. Every ceremony is bound to an already authenticated
identity: registration attaches an authenticator to the caller's account and
authentication proves possession of one (step-up), it never logs anyone in
from scratch.

Per-user state machine:

    Idle --generate_*_challenge()--> ChallengeIssued --verify_*()--> Idle

The challenge lives in users.webauthn_challenge (base64url). Verification
clears it whether it passes or fails. Starting a second ceremony before the
first is verified overwrites the first challenge, so clients must run one
ceremony at a time per user. The options' timeout is only enforced by the
browser.

Credential ids and public keys are stored base64url-encoded without padding,
matching PublicKeyCredential.id as sent by the browser.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidAuthenticatorDataStructure,
    InvalidCBORData,
    InvalidJSONStructure,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.models import User, WebAuthnCredential
from auth.store import UserStore
from core.errors import BadRequest, NotFound

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("masterauth.auth.webauthn")

# Everything py_webauthn (or a malformed browser payload) can raise while
# parsing and verifying a response.
_VERIFICATION_ERRORS = (
    InvalidRegistrationResponse,
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    InvalidCBORData,
    InvalidAuthenticatorDataStructure,
    KeyError,
    TypeError,
    ValueError,
)

_SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

NOT_REGISTERED = "Authenticator is not registered with this account"


def _descriptors(credentials: list[WebAuthnCredential]) -> list[PublicKeyCredentialDescriptor]:
    known = {t.value for t in AuthenticatorTransport}
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(c.credential_id),
            transports=[AuthenticatorTransport(t) for t in c.transports if t in known] or None,
        )
        for c in credentials
    ]


class WebAuthnService:
    def __init__(
        self,
        store: UserStore,
        rp_id: str,
        rp_name: str,
        origin: str,
        registration_timeout_ms: int = 30_000,
        authentication_timeout_ms: int = 60_000,
    ) -> None:
        self.store = store
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.registration_timeout_ms = registration_timeout_ms
        self.authentication_timeout_ms = authentication_timeout_ms

    @classmethod
    def from_settings(cls, store: UserStore, settings: Settings) -> "WebAuthnService":
        return cls(
            store,
            rp_id=settings.webauthn_rp_id,
            rp_name=settings.webauthn_rp_name,
            origin=settings.webauthn_origin,
            registration_timeout_ms=settings.webauthn_registration_timeout_ms,
            authentication_timeout_ms=settings.webauthn_authentication_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def generate_registration_challenge(self, user_id: int) -> dict:
        """Build creation options for the browser and persist their challenge.

        Authenticators already bound to the account are excluded so the same
        device cannot be registered twice.
        """
        user = self._load(user_id)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=str(user.id).encode("utf-8"),
            user_name=user.email,
            user_display_name=user.name,
            timeout=self.registration_timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            exclude_credentials=_descriptors(user.webauthn_credentials),
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.DISCOURAGED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            supported_pub_key_algs=_SUPPORTED_ALGORITHMS,
        )
        self.store.set_challenge(user.id, bytes_to_base64url(options.challenge))
        return json.loads(options_to_json(options))

    def verify_registration(self, user_id: int, response: dict) -> WebAuthnCredential | None:
        """Verify an attestation response and bind the new authenticator.

        Returns the stored credential, or None when the authenticator was
        already bound to this account (a retried submission). Raises
        BadRequest when verification fails or no ceremony is in progress.
        """
        user = self._load(user_id)
        if not user.webauthn_challenge:
            raise BadRequest("No registration in progress.")
        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(user.webauthn_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except _VERIFICATION_ERRORS as exc:
            self.store.set_challenge(user.id, None)
            logger.info("WebAuthn registration failed for user %s: %s", user.id, exc)
            raise BadRequest("Registration verification failed.") from exc

        credential_id = bytes_to_base64url(verified.credential_id)
        if any(c.credential_id == credential_id for c in user.webauthn_credentials):
            self.store.set_challenge(user.id, None)
            return None

        transports = (response.get("response") or {}).get("transports") or []
        credential = WebAuthnCredential(
            credential_id=credential_id,
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=verified.sign_count,
            transports=[str(t) for t in transports],
            user_id=user.id,
        )
        if not self.store.add_credential(user.id, credential):
            # Bound to a different account.
            raise BadRequest("Authenticator is already registered.")
        logger.info("Bound WebAuthn credential to user %s", user.id)
        return credential

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def generate_authentication_challenge(self, user_id: int) -> dict:
        """Build request options allowing only this account's authenticators."""
        user = self._load(user_id)
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.authentication_timeout_ms,
            allow_credentials=_descriptors(user.webauthn_credentials),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self.store.set_challenge(user.id, bytes_to_base64url(options.challenge))
        return json.loads(options_to_json(options))

    def verify_authentication(self, user_id: int, response: dict) -> WebAuthnCredential:
        """Verify an assertion from one of the account's authenticators.

        An unknown credential id is rejected before any signature check. On
        success the stored signature counter is advanced.
        """
        user = self._load(user_id)
        credential_id = response.get("id") if isinstance(response, dict) else None
        credential = next((c for c in user.webauthn_credentials if c.credential_id == credential_id), None)
        if credential is None:
            self.store.set_challenge(user.id, None)
            raise BadRequest(NOT_REGISTERED)
        if not user.webauthn_challenge:
            raise BadRequest("No authentication in progress.")

        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(user.webauthn_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(credential.public_key),
                credential_current_sign_count=credential.sign_count,
                require_user_verification=False,
            )
        except _VERIFICATION_ERRORS as exc:
            self.store.set_challenge(user.id, None)
            logger.info("WebAuthn authentication failed for user %s: %s", user.id, exc)
            raise BadRequest("Verification failed.") from exc

        self.store.set_challenge(user.id, None)
        self.store.update_sign_count(credential.credential_id, verified.new_sign_count)
        credential.sign_count = verified.new_sign_count
        return credential

    def _load(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user
