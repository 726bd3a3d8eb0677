"""Tests for the Firebase REST helpers and backend error mapping."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from google.api_core import exceptions as google_exceptions

import firebase_client
from errors import AuthError, DataError, PermissionDeniedError
from firebase_client import FirebaseBackend, firebase_error_code, map_firebase_error


def http_error(message, status=400):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = {"error": {"message": message}}
    return requests.exceptions.HTTPError(response=response)


def ok_response(body):
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = body
    return response


def failing_response(exc):
    response = MagicMock()
    response.raise_for_status.side_effect = exc
    return response


class TestErrorMapping:
    def test_code_is_parsed_from_detail(self):
        exc = http_error("WEAK_PASSWORD : Password should be at least 6 characters")
        assert firebase_error_code(exc) == "WEAK_PASSWORD"

    def test_known_codes_get_friendly_text(self):
        assert map_firebase_error(http_error("EMAIL_EXISTS"), "signup").startswith("An account with this email")
        assert map_firebase_error(http_error("INVALID_LOGIN_CREDENTIALS"), "login") == "Invalid email or password."

    def test_unknown_code_is_readable(self):
        assert map_firebase_error(http_error("QUOTA_EXCEEDED"), "login") == "Server error: Quota Exceeded"

    def test_non_http_error_is_generic(self):
        assert map_firebase_error(ValueError("x"), "login") == firebase_client.GENERIC_AUTH_ERROR


class TestAuthRequests:
    @patch("firebase_client.requests.post")
    def test_sign_in_returns_tokens(self, post):
        post.return_value = ok_response({"localId": "u1", "idToken": "id", "refreshToken": "r"})

        data = firebase_client.signin_with_email_password("a@b.edu", "password123")

        assert data["localId"] == "u1"
        url = post.call_args[0][0]
        assert "accounts:signInWithPassword" in url
        assert post.call_args[1]["json"]["returnSecureToken"] is True

    @patch("firebase_client.requests.post")
    def test_rejected_sign_in_raises_auth_error(self, post):
        post.return_value = failing_response(http_error("EMAIL_NOT_FOUND"))

        with pytest.raises(AuthError) as info:
            firebase_client.signin_with_email_password("a@b.edu", "password123")
        assert info.value.code == "EMAIL_NOT_FOUND"
        assert info.value.message == "No account found with this email. Please sign up."

    @patch("firebase_client.requests.post")
    def test_network_failure_is_generic_auth_error(self, post):
        post.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(AuthError) as info:
            firebase_client.signup_with_email_password("a@b.edu", "password123")
        assert info.value.message == firebase_client.GENERIC_AUTH_ERROR

    @patch("firebase_client.requests.post")
    def test_refresh_posts_form_data(self, post):
        post.return_value = ok_response({"user_id": "u1", "id_token": "id2", "refresh_token": "r2"})

        data = firebase_client.refresh_id_token("r1")

        assert data["id_token"] == "id2"
        assert post.call_args[1]["data"] == {"grant_type": "refresh_token", "refresh_token": "r1"}


class TestBackendCalls:
    def test_permission_denied_is_classified(self):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")

        def refuse():
            raise google_exceptions.PermissionDenied("Missing or insufficient permissions.")

        with pytest.raises(PermissionDeniedError):
            backend._call("save to comments", refuse)

    def test_unauthenticated_is_auth_error(self):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")

        def expired():
            raise google_exceptions.Unauthenticated("token expired")

        with pytest.raises(AuthError):
            backend._call("load complaints", expired)

    def test_other_api_errors_are_data_errors(self):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")

        def unavailable():
            raise google_exceptions.ServiceUnavailable("try later")

        with pytest.raises(DataError) as info:
            backend._call("load complaints", unavailable)
        assert info.value.message == "Failed to load complaints."

    def test_empty_in_filter_short_circuits(self):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")
        assert backend.select("profiles", [("id", "in", [])]) == []

    def test_no_user_and_no_service_account_asks_for_sign_in(self):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")
        with pytest.raises(AuthError):
            backend.db


class TestTranscribe:
    @patch("firebase_client.requests.post")
    def test_text_from_either_shape(self, post):
        backend = FirebaseBackend(project_id="p", transcribe_url="https://speech.test/transcribe")
        post.return_value = ok_response({"text": "hello"})
        assert backend.transcribe(b"\x00\x01") == "hello"
        post.return_value = ok_response({"data": {"text": "nested"}})
        assert backend.transcribe(b"\x00\x01") == "nested"
        assert post.call_args[1]["json"] == {"audio": "AAE="}

    @patch("firebase_client.requests.post")
    def test_service_error_is_data_error(self, post):
        backend = FirebaseBackend(project_id="p", transcribe_url="https://speech.test/transcribe")
        post.return_value = ok_response({"error": "unsupported format"})
        with pytest.raises(DataError):
            backend.transcribe(b"\x00")

    def test_not_configured(self):
        backend = FirebaseBackend(project_id="p", transcribe_url="")
        backend.transcribe_url = ""
        with pytest.raises(DataError):
            backend.transcribe(b"\x00")


class TestTokenRenewal:
    def _bound(self, refresher):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")
        backend._id_token = "old-token"
        backend._db = MagicMock()
        backend.token_refresher = refresher
        return backend

    @patch("firebase_client.firestore.Client")
    def test_expired_token_is_refreshed_and_call_retried(self, client):
        refresher = MagicMock(return_value="new-token")
        backend = self._bound(refresher)
        func = MagicMock(side_effect=[google_exceptions.Unauthenticated("expired"), ["row"]])

        assert backend._call("load complaints", func) == ["row"]

        refresher.assert_called_once_with()
        assert func.call_count == 2
        assert backend._id_token == "new-token"
        assert backend._db is client.return_value
        assert client.call_args[1]["credentials"].token == "new-token"

    @patch("firebase_client.firestore.Client")
    def test_retry_happens_once(self, client):
        refresher = MagicMock(return_value="new-token")
        backend = self._bound(refresher)
        func = MagicMock(side_effect=google_exceptions.Unauthenticated("expired"))

        with pytest.raises(AuthError) as info:
            backend._call("load complaints", func)
        assert info.value.message == firebase_client.SESSION_EXPIRED
        assert func.call_count == 2
        refresher.assert_called_once_with()

    def test_refused_refresh_is_auth_error(self):
        refresher = MagicMock(side_effect=AuthError("Your session has expired. Please sign in again."))
        backend = self._bound(refresher)
        func = MagicMock(side_effect=google_exceptions.Unauthenticated("expired"))

        with pytest.raises(AuthError):
            backend._call("load complaints", func)
        assert func.call_count == 1

    def test_no_bound_user_is_not_refreshed(self):
        refresher = MagicMock()
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")
        backend.token_refresher = refresher

        with pytest.raises(AuthError):
            backend._call("load complaints", MagicMock(side_effect=google_exceptions.Unauthenticated("x")))
        refresher.assert_not_called()

    @patch("firebase_client.firestore.Client")
    def test_token_renewed_by_another_call_is_reused(self, client):
        refresher = MagicMock()
        backend = self._bound(refresher)

        def expire_after_renewal():
            if backend._id_token == "old-token":
                backend._id_token = "renewed-elsewhere"
                raise google_exceptions.Unauthenticated("expired")
            return "ok"

        assert backend._call("load complaints", expire_after_renewal) == "ok"
        refresher.assert_not_called()


class TestCommit:
    def _backend(self):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")
        backend._db = MagicMock()
        return backend

    def test_writes_go_into_one_batch(self):
        backend = self._backend()
        db = backend._db
        db.collection.return_value.document.return_value.id = "new-id"
        batch = db.batch.return_value

        results = backend.commit([
            ("update", "complaints", "c1", {"status": "resolved"}),
            ("insert", "complaint_status_log", {"complaint_id": "c1", "status": "resolved"}),
            ("upsert", "notification_preferences", "u1", {"new_comments": False}),
            ("delete", "user_roles", "r1"),
        ])

        db.batch.assert_called_once_with()
        batch.commit.assert_called_once_with()
        assert batch.update.call_args[0][1] == {"status": "resolved"}
        inserted = batch.set.call_args_list[0][0][1]
        assert inserted["complaint_id"] == "c1" and "created_at" in inserted
        assert batch.set.call_args_list[1][1] == {"merge": True}
        assert batch.delete.call_count == 1
        assert results[0] is None
        assert results[1]["id"] == "new-id"
        assert results[2] is None and results[3] is None

    def test_failed_commit_is_data_error(self):
        backend = self._backend()
        backend._db.batch.return_value.commit.side_effect = google_exceptions.NotFound("no document c1")

        with pytest.raises(DataError) as info:
            backend.commit([
                ("update", "complaints", "c1", {"status": "resolved"}),
                ("insert", "complaint_status_log", {"complaint_id": "c1"}),
            ])
        assert info.value.message == "Failed to save to complaint_status_log, complaints."


class TestSubscribe:
    def _listen(self, on_insert, on_ack=None):
        backend = FirebaseBackend(project_id="p", service_account_path="missing.json")
        backend._db = MagicMock()
        query = backend._db.collection.return_value.where.return_value
        handle = backend.subscribe("messages", {"complaint_id": "c1"}, on_insert, on_ack)
        callback = query.on_snapshot.call_args[0][0]
        return backend, handle, callback, query

    @staticmethod
    def change(kind, doc_id, **data):
        doc = MagicMock()
        doc.id = doc_id
        doc.to_dict.return_value = data
        change = MagicMock()
        change.type.name = kind
        change.document = doc
        return change

    def test_first_snapshot_only_acknowledges(self):
        on_insert, on_ack = MagicMock(), MagicMock()
        _, handle, callback, query = self._listen(on_insert, on_ack)

        assert handle is query.on_snapshot.return_value
        callback([], [self.change("ADDED", "m0", content="already there")], None)

        on_ack.assert_called_once_with()
        on_insert.assert_not_called()

    def test_later_added_changes_are_inserts(self):
        on_insert = MagicMock()
        _, _, callback, _ = self._listen(on_insert)
        callback([], [], None)

        callback([], [
            self.change("ADDED", "m1", content="hello"),
            self.change("MODIFIED", "m0", content="edited"),
            self.change("REMOVED", "m2", content="gone"),
        ], None)

        on_insert.assert_called_once_with({"content": "hello", "id": "m1"})

    def test_callback_errors_are_logged(self, caplog):
        on_insert = MagicMock(side_effect=RuntimeError("view is gone"))
        _, _, callback, _ = self._listen(on_insert)
        callback([], [], None)

        with caplog.at_level("ERROR", logger="firebase_client"):
            callback([], [self.change("ADDED", "m1", content="hello")], None)

        assert "Error in messages snapshot callback" in caplog.text

    def test_unsubscribe_stops_the_watch(self):
        backend, handle, _, _ = self._listen(MagicMock())
        backend.unsubscribe(handle)
        handle.unsubscribe.assert_called_once_with()
