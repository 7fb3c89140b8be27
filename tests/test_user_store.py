"""Unit tests for auth/store.py -- UserStore persistence and conditional updates.

Covers:
- create/get round trip with email normalisation
- duplicate email raises IntegrityError
- mark_verified() stamps once and never clears
- ensure_two_factor_secret() keeps the first secret written
- set_two_factor_enabled() only flips from the opposite value
- add_credential() rejects a credential id bound anywhere and clears the challenge
- get_by_oauth_or_email() prefers the linked provider identity
- bump_token_version() and delete_user()
"""

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import User, WebAuthnCredential, public_user

from conftest import make_user


class TestUserRecords:
    def test_create_and_lookup(self, store):
        uid = store.create_user(User(email="  Alice@Example.COM ", name="Alice", hashed_password="h"))
        user = store.get_by_id(uid)
        assert user.email == "alice@example.com"
        assert user.role == "user"
        assert user.is_verified is None
        assert user.two_factor_enabled is False
        assert store.get_by_email("ALICE@example.com").id == uid

    def test_missing_user(self, store):
        assert store.get_by_id(999) is None
        assert store.get_by_email("nobody@example.com") is None

    def test_duplicate_email(self, store):
        store.create_user(User(email="dup@example.com", name="A"))
        with pytest.raises(IntegrityError):
            store.create_user(User(email="DUP@example.com", name="B"))

    def test_update_user_rejects_unknown_fields(self, store):
        uid = make_user(store, "u@example.com")
        with pytest.raises(ValueError):
            store.update_user(uid, two_factor_enabled=True)

    def test_update_user_missing(self, store):
        assert store.update_user(12345, name="x") is False

    def test_list_users_sorted_by_email(self, store):
        make_user(store, "b@example.com")
        make_user(store, "a@example.com")
        assert [u.email for u in store.list_users()] == ["a@example.com", "b@example.com"]

    def test_delete_user_removes_credentials(self, store):
        uid = make_user(store, "gone@example.com")
        store.add_credential(uid, WebAuthnCredential(credential_id="cred-x", public_key="pk"))
        assert store.delete_user(uid)
        assert store.get_by_id(uid) is None
        assert store.get_credential("cred-x") is None

    def test_public_projection_hides_secrets(self, store):
        uid = make_user(store, "p@example.com")
        store.ensure_two_factor_secret(uid, "SECRET")
        data = public_user(store.get_by_id(uid))
        assert set(data) == {"id", "name", "email", "role", "is_verified", "profile_picture", "two_factor_enabled"}


class TestConditionalUpdates:
    def test_mark_verified_once(self, store):
        uid = make_user(store, "v@example.com", verified=False)
        assert store.mark_verified(uid) is True
        stamp = store.get_by_id(uid).is_verified
        assert stamp
        assert store.mark_verified(uid) is False
        assert store.get_by_id(uid).is_verified == stamp

    def test_two_factor_secret_is_set_once(self, store):
        uid = make_user(store, "t@example.com")
        assert store.ensure_two_factor_secret(uid, "FIRST") == "FIRST"
        assert store.ensure_two_factor_secret(uid, "SECOND") == "FIRST"

    def test_two_factor_flag_flips_only_from_opposite(self, store):
        uid = make_user(store, "t2@example.com")
        assert store.set_two_factor_enabled(uid, False) is False
        assert store.set_two_factor_enabled(uid, True) is True
        assert store.set_two_factor_enabled(uid, True) is False
        assert store.get_by_id(uid).two_factor_enabled is True

    def test_bump_token_version(self, store):
        uid = make_user(store, "tv@example.com")
        assert store.bump_token_version(uid) == 1
        assert store.bump_token_version(uid) == 2
        assert store.get_by_id(uid).token_version == 2


class TestCredentials:
    def test_add_credential_clears_challenge(self, store):
        uid = make_user(store, "w@example.com")
        store.set_challenge(uid, "challenge-1")
        cred = WebAuthnCredential(credential_id="cred-1", public_key="pk-1", transports=["internal"])
        assert store.add_credential(uid, cred) is True
        user = store.get_by_id(uid)
        assert user.webauthn_challenge is None
        assert [c.credential_id for c in user.webauthn_credentials] == ["cred-1"]
        assert user.webauthn_credentials[0].transports == ["internal"]

    def test_credential_id_unique_across_users(self, store):
        first = make_user(store, "one@example.com")
        second = make_user(store, "two@example.com")
        store.add_credential(first, WebAuthnCredential(credential_id="shared", public_key="pk-a"))
        store.set_challenge(second, "challenge-2")
        assert store.add_credential(second, WebAuthnCredential(credential_id="shared", public_key="pk-b")) is False
        assert store.get_by_id(second).webauthn_challenge is None
        assert store.get_credential("shared").public_key == "pk-a"
        assert store.get_credential("shared").user_id == first

    def test_update_sign_count(self, store):
        uid = make_user(store, "s@example.com")
        store.add_credential(uid, WebAuthnCredential(credential_id="c", public_key="pk"))
        store.update_sign_count("c", 9)
        assert store.get_credential("c").sign_count == 9


class TestOAuthLookup:
    def test_linked_identity_wins_over_email_match(self, store):
        by_email = make_user(store, "same@example.com")
        linked = store.create_user(
            User(email="other@example.com", name="L", oauth_provider="github", oauth_subject="gh-1")
        )
        assert by_email != linked
        found = store.get_by_oauth_or_email("github", "gh-1", "same@example.com")
        assert found.id == linked

    def test_email_match_when_not_linked(self, store):
        uid = make_user(store, "match@example.com")
        assert store.get_by_oauth_or_email("google", "g-1", "MATCH@example.com").id == uid

    def test_no_match(self, store):
        assert store.get_by_oauth_or_email("google", "g-1", "none@example.com") is None

    def test_link_oauth(self, store):
        uid = store.create_user(User(email="l@example.com", name="L"))
        store.link_oauth(uid, "google", "g-7")
        user = store.get_by_id(uid)
        assert (user.oauth_provider, user.oauth_subject) == ("google", "g-7")
