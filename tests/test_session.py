"""Tests for AuthSession."""

import json
import os

import pytest

from errors import AuthError, DataError, ValidationError
from helpers.fakes import make_user
from session import AuthSession


class TestSignIn:
    def test_sign_in_binds_backend_and_notifies(self, backend):
        make_user(backend, "asha@college.edu", role="student")
        auth = AuthSession(backend)
        auth.init()
        events = []
        auth.add_listener(lambda s: events.append(s.current_session()))

        user = auth.sign_in(" asha@college.edu ", "password123")

        assert user.email == "asha@college.edu"
        assert backend.bound_token == f"id-{user.user_id}"
        assert events == [user]

    def test_wrong_password_is_auth_error(self, backend):
        make_user(backend, "asha@college.edu")
        auth = AuthSession(backend)
        with pytest.raises(AuthError) as info:
            auth.sign_in("asha@college.edu", "wrong-password")
        assert info.value.code == "INVALID_LOGIN_CREDENTIALS"
        assert auth.current_session() is None

    def test_invalid_email_never_reaches_backend(self, backend):
        auth = AuthSession(backend)
        with pytest.raises(ValidationError):
            auth.sign_in("not-an-email", "password123")
        assert backend.calls["sign_in"] == 0

    def test_sign_out_clears_session(self, signed_in, backend):
        auth = signed_in("student")
        auth.sign_out()
        assert auth.current_session() is None
        assert backend.bound_token is None


class TestSignUp:
    def test_sign_up_creates_profile_and_student_role(self, backend):
        auth = AuthSession(backend)
        user = auth.sign_up("new@college.edu", "password123", "  New Student ")

        profile = backend.tables["profiles"][user.user_id]
        assert profile["name"] == "New Student"
        assert profile["department_id"] is None
        roles = backend.rows("user_roles")
        assert [(r["user_id"], r["role"]) for r in roles] == [(user.user_id, "student")]
        assert auth.has_role("student")

    def test_existing_email_is_auth_error(self, backend):
        make_user(backend, "taken@college.edu")
        with pytest.raises(AuthError) as info:
            AuthSession(backend).sign_up("taken@college.edu", "password123", "Someone")
        assert "already exists" in info.value.message

    def test_short_password_rejected_locally(self, backend):
        with pytest.raises(ValidationError):
            AuthSession(backend).sign_up("new@college.edu", "short", "Someone")
        assert backend.calls["sign_up"] == 0

    def test_profile_failure_is_reported(self, backend):
        backend.fail_on[("upsert", "profiles")] = DataError("Failed to save to profiles.")
        with pytest.raises(DataError):
            AuthSession(backend).sign_up("new@college.edu", "password123", "Someone")


class TestRoles:
    def test_has_role_asks_backend_each_time(self, signed_in, backend):
        auth = signed_in("staff")
        assert auth.has_role("staff")
        assert auth.has_role("staff")
        assert backend.calls[("select", "user_roles")] == 2

    def test_first_role_row_wins(self, signed_in, backend):
        auth = signed_in("staff")
        backend.seed("user_roles", "later", user_id=auth.user.user_id, role="admin",
                     created_at="2025-01-01 00:00:00.000000")

        assert auth.fetch_role() == "staff"
        assert not auth.has_role("admin")

    def test_signed_out_has_no_role(self, backend):
        auth = AuthSession(backend)
        assert auth.fetch_role() is None
        assert not auth.has_role("student")


class TestTokenRenewal:
    def test_session_is_the_backend_token_refresher(self, backend):
        auth = AuthSession(backend)
        assert backend.token_refresher == auth.renew

    def test_renew_trades_the_refresh_token(self, signed_in, backend):
        auth = signed_in("student")
        old = auth.user.id_token

        token = auth.renew()

        assert token != old
        assert auth.user.id_token == token
        assert auth.user.refresh_token == f"refresh-{auth.user.user_id}"
        assert backend.calls["refresh"] == 1

    def test_refused_refresh_signs_out(self, signed_in, backend):
        auth = signed_in("student")
        events = []
        auth.add_listener(lambda s: events.append(s.current_session()))
        # account removed by an admin while signed in
        backend.accounts.clear()

        with pytest.raises(AuthError):
            auth.renew()

        assert auth.current_session() is None
        assert backend.bound_token is None
        assert events == [None]

    def test_renew_without_session_is_auth_error(self, backend):
        with pytest.raises(AuthError):
            AuthSession(backend).renew()
        assert backend.calls["refresh"] == 0


class TestPersistence:
    def test_init_without_token_file_ends_loading(self, backend):
        auth = AuthSession(backend)
        seen = []
        auth.add_listener(lambda s: seen.append(s.loading))
        assert auth.loading

        assert auth.init() is None
        assert seen == [False]

    def test_session_is_restored_from_token_file(self, backend, tmp_path):
        token_file = str(tmp_path / "session.json")
        make_user(backend, "asha@college.edu", role="student")
        AuthSession(backend, token_file=token_file).sign_in("asha@college.edu", "password123")
        assert os.path.exists(token_file)

        restored = AuthSession(backend, token_file=token_file)
        user = restored.init()

        assert user is not None
        assert user.email == "asha@college.edu"
        assert not restored.loading

    def test_expired_token_is_forgotten(self, backend, tmp_path):
        token_file = tmp_path / "session.json"
        token_file.write_text(json.dumps({"refresh_token": "refresh-gone", "email": "x@college.edu"}))

        auth = AuthSession(backend, token_file=str(token_file))

        assert auth.init() is None
        assert not token_file.exists()
        assert not auth.loading

    def test_sign_out_removes_token_file(self, backend, tmp_path):
        token_file = str(tmp_path / "session.json")
        make_user(backend, "asha@college.edu")
        auth = AuthSession(backend, token_file=token_file)
        auth.sign_in("asha@college.edu", "password123")
        auth.sign_out()
        assert not os.path.exists(token_file)
