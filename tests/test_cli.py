"""Unit tests for main.py -- the administration CLI.

Covers:
- create_admin() makes a verified admin and returns None for a taken email
- set_role() changes roles, reports missing accounts, rejects unknown roles
- main() without a command prints help and exits 1
"""

import pytest

from auth.tokens import compare_password
from main import create_admin, main, set_role

from conftest import make_user


def test_create_admin(store):
    uid = create_admin(store, "Root@Example.com", "Root", "long-password", rounds=4)
    user = store.get_by_id(uid)
    assert user.role == "admin"
    assert user.is_verified
    assert user.email == "root@example.com"
    assert compare_password("long-password", user.hashed_password)


def test_create_admin_taken_email(store):
    make_user(store, "root@example.com")
    assert create_admin(store, "root@example.com", "Root", "long-password", rounds=4) is None


def test_create_admin_name_defaults_to_local_part(store):
    uid = create_admin(store, "ops@example.com", "  ", "long-password", rounds=4)
    assert store.get_by_id(uid).name == "ops"


def test_set_role(store):
    uid = make_user(store, "mod@example.com")
    assert set_role(store, "mod@example.com", "moderator") is True
    assert store.get_by_id(uid).role == "moderator"


def test_set_role_missing_account(store):
    assert set_role(store, "ghost@example.com", "admin") is False


def test_set_role_unknown_role(store):
    make_user(store, "x@example.com")
    with pytest.raises(ValueError):
        set_role(store, "x@example.com", "root")


def test_main_without_command(capsys):
    assert main([]) == 1
    assert "create-admin" in capsys.readouterr().out
