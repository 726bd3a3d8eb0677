# firebase_client.py
import base64
import logging
import os
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote

import firebase_admin
import requests
from firebase_admin import credentials, firestore, storage
from google.api_core import exceptions as google_exceptions
from google.oauth2.credentials import Credentials as UserCredentials

import settings
from errors import AuthError, DataError, PermissionDeniedError
from models import now_str

logger = logging.getLogger(__name__)

Where = Union[Dict[str, Any], Iterable[Tuple[str, str, Any]], None]

# -------------------------------------------------------
# REST AUTH ENDPOINTS (Signup/Login/Refresh)
# -------------------------------------------------------
FIREBASE_REST_SIGNUP = "https://identitytoolkit.googleapis.com/v1/accounts:signUp?key={key}"
FIREBASE_REST_SIGNIN = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithPassword?key={key}"
FIREBASE_REST_REFRESH = "https://securetoken.googleapis.com/v1/token?key={key}"
FIREBASE_STORAGE_UPLOAD = "https://firebasestorage.googleapis.com/v0/b/{bucket}/o?uploadType=media&name={name}"
FIREBASE_STORAGE_OBJECT = "https://firebasestorage.googleapis.com/v0/b/{bucket}/o/{name}?alt=media&token={token}"

GENERIC_AUTH_ERROR = "Something went wrong while contacting the server. Please try again."
SESSION_EXPIRED = "Your session has expired. Please sign in again."

AUTH_ERROR_MESSAGES = {
    "login": {
        "EMAIL_NOT_FOUND": "No account found with this email. Please sign up.",
        "INVALID_PASSWORD": "Incorrect password. Please try again.",
        "INVALID_LOGIN_CREDENTIALS": "Invalid email or password.",
        "USER_DISABLED": "This account has been disabled. Contact support.",
        "INVALID_EMAIL": "Invalid email address format.",
        "EMAIL_NOT_VERIFIED": "Please confirm your email address before signing in.",
        "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts. Try again later.",
    },
    "signup": {
        "EMAIL_EXISTS": "An account with this email already exists. Try logging in.",
        "INVALID_EMAIL": "Invalid email address format.",
        "OPERATION_NOT_ALLOWED": "Password sign-in is disabled for this project.",
        "WEAK_PASSWORD": "Password is too weak. Use at least 8 characters.",
        "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts. Try again later.",
    },
    "refresh": {
        "TOKEN_EXPIRED": "Your session has expired. Please sign in again.",
        "INVALID_REFRESH_TOKEN": "Your session has expired. Please sign in again.",
        "USER_DISABLED": "This account has been disabled. Contact support.",
        "USER_NOT_FOUND": "This account no longer exists.",
    },
}


# -------------------------------------------------------
# Firebase error mapping
# -------------------------------------------------------
def firebase_error_code(exc: Exception) -> Optional[str]:
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        try:
            data = exc.response.json()
        except ValueError:
            return None
        message = data.get("error", {}).get("message") or ""
        # "WEAK_PASSWORD : Password should be at least 6 characters"
        return message.split(":")[0].strip().upper() or None
    return None


def map_firebase_error(exc: Exception, context: str) -> str:
    """
    Convert Firebase HTTP errors into user-friendly messages.
    context: "login", "signup" or "refresh"
    """
    code = firebase_error_code(exc)
    if not code:
        return GENERIC_AUTH_ERROR
    mapping = AUTH_ERROR_MESSAGES.get(context, {})
    return mapping.get(code, "Server error: " + code.replace("_", " ").title())


def _auth_post(url: str, context: str, **kwargs) -> Dict[str, Any]:
    try:
        resp = requests.post(url, timeout=settings.HTTP_TIMEOUT, **kwargs)
        resp.raise_for_status()
    except requests.exceptions.HTTPError as exc:
        code = firebase_error_code(exc)
        logger.warning("Auth %s rejected: %s", context, code)
        raise AuthError(map_firebase_error(exc, context), code=code) from exc
    except requests.exceptions.RequestException as exc:
        logger.warning("Auth %s failed: %s", context, exc)
        raise AuthError(GENERIC_AUTH_ERROR) from exc
    return resp.json()


# -------------------------------------------------------
# AUTH HELPERS
# -------------------------------------------------------
def signup_with_email_password(email: str, password: str):
    payload = {
        "email": email,
        "password": password,
        "returnSecureToken": True,
    }
    return _auth_post(FIREBASE_REST_SIGNUP.format(key=settings.FIREBASE_API_KEY), "signup", json=payload)


def signin_with_email_password(email: str, password: str):
    payload = {
        "email": email,
        "password": password,
        "returnSecureToken": True,
    }
    return _auth_post(FIREBASE_REST_SIGNIN.format(key=settings.FIREBASE_API_KEY), "login", json=payload)


def refresh_id_token(refresh_token: str):
    """Exchange a stored refresh token for a fresh ID token (snake_case keys)."""
    payload = {"grant_type": "refresh_token", "refresh_token": refresh_token}
    return _auth_post(FIREBASE_REST_REFRESH.format(key=settings.FIREBASE_API_KEY), "refresh", data=payload)


# -------------------------------------------------------
# QUERY HELPERS
# -------------------------------------------------------
def _conditions(where: Where) -> List[Tuple[str, str, Any]]:
    if not where:
        return []
    if isinstance(where, dict):
        return [(k, "==", v) for k, v in where.items()]
    return list(where)


def _apply_where(query, where: Where):
    for field_path, op, value in _conditions(where):
        query = query.where(filter=firestore.FieldFilter(field_path, op, value))
    return query


def _row(doc) -> Dict[str, Any]:
    data = doc.to_dict() or {}
    data["id"] = doc.id
    return data


class FirebaseBackend:
    """
    Tables are Firestore collections; realtime is Firestore snapshot
    listeners; auth is the Identity Toolkit REST API.

    After sign-in the backend is bound to the user's ID token so that every
    read and write is checked by the project's security rules. Without a
    bound user it falls back to the service account (operator tooling only:
    the Admin SDK bypasses security rules).

    ID tokens expire after an hour. When a call is rejected as
    unauthenticated, `token_refresher` (set by the session) is asked for a
    new ID token, the client is rebound and the call is retried once.
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        service_account_path: Optional[str] = None,
        storage_bucket: Optional[str] = None,
        transcribe_url: Optional[str] = None,
    ):
        self.project_id = project_id or settings.FIREBASE_PROJECT_ID
        self.service_account_path = service_account_path or settings.SERVICE_ACCOUNT_PATH
        self.storage_bucket = storage_bucket or settings.STORAGE_BUCKET
        self.transcribe_url = transcribe_url or settings.TRANSCRIBE_URL
        self._db = None
        self._id_token: Optional[str] = None
        self.token_refresher: Optional[Callable[[], str]] = None
        self._renew_lock = threading.Lock()

    # ---------------- connection ----------------
    def bind_user(self, id_token: str):
        self._id_token = id_token
        self._db = firestore.Client(project=self.project_id, credentials=UserCredentials(token=id_token))
        logger.debug("Firestore client bound to signed-in user")

    def unbind_user(self):
        if self._db is not None and self._id_token is not None:
            try:
                self._db.close()
            except Exception:
                logger.debug("Ignoring error while closing Firestore client", exc_info=True)
        self._db = None
        self._id_token = None

    def _service_client(self):
        if not os.path.exists(self.service_account_path):
            raise AuthError("Please sign in to continue.")
        if not firebase_admin._apps:
            cred = credentials.Certificate(self.service_account_path)
            options = {"storageBucket": self.storage_bucket} if self.storage_bucket else None
            firebase_admin.initialize_app(cred, options)
        return firestore.client()

    @property
    def db(self):
        if self._db is None:
            self._db = self._service_client()
        return self._db

    def _renew_token(self, rejected: Optional[str]) -> bool:
        """Rebind with a fresh ID token. False when there is nothing to renew."""
        if rejected is None or self.token_refresher is None:
            return False
        with self._renew_lock:
            if self._id_token != rejected:
                # another call already renewed it
                return self._id_token is not None
            try:
                id_token = self.token_refresher()
            except AuthError as exc:
                logger.warning("Could not refresh the ID token: %s", exc)
                return False
            if not id_token:
                return False
            self.bind_user(id_token)
        logger.info("ID token refreshed")
        return True

    def _call(self, what: str, func: Callable[[], Any], retry: bool = True):
        token = self._id_token
        try:
            return func()
        except google_exceptions.PermissionDenied as exc:
            logger.warning("Backend refused to %s: %s", what, exc)
            raise PermissionDeniedError(f"You are not allowed to {what}.") from exc
        except google_exceptions.Unauthenticated as exc:
            if retry and self._renew_token(token):
                return self._call(what, func, retry=False)
            raise AuthError(SESSION_EXPIRED) from exc
        except google_exceptions.GoogleAPIError as exc:
            raise DataError(f"Failed to {what}.", cause=exc) from exc

    # ---------------- auth ----------------
    def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        return signup_with_email_password(email, password)

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        return signin_with_email_password(email, password)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        return refresh_id_token(refresh_token)

    # ---------------- tables ----------------
    def select(
        self,
        table: str,
        where: Where = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        for _, op, value in _conditions(where):
            if op == "in" and not value:
                return []

        def run():
            query = _apply_where(self.db.collection(table), where)
            if order_by:
                direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
                query = query.order_by(order_by, direction=direction)
            if limit:
                query = query.limit(limit)
            return [_row(d) for d in query.stream()]

        return self._call(f"load {table}", run)

    def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        def run():
            doc = self.db.collection(table).document(row_id).get()
            return _row(doc) if doc.exists else None

        return self._call(f"load {table}", run)

    def insert(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(data)
        payload.setdefault("created_at", now_str())

        def run():
            _, ref = self.db.collection(table).add(payload)
            return {**payload, "id": ref.id}

        return self._call(f"save to {table}", run)

    def update(self, table: str, row_id: str, data: Dict[str, Any]) -> None:
        self._call(f"update {table}", lambda: self.db.collection(table).document(row_id).update(data))

    def upsert(self, table: str, row_id: str, data: Dict[str, Any]) -> None:
        self._call(
            f"save to {table}",
            lambda: self.db.collection(table).document(row_id).set(data, merge=True),
        )

    def delete(self, table: str, row_id: str) -> None:
        # Firestore treats deleting a missing document as success
        self._call(f"delete from {table}", lambda: self.db.collection(table).document(row_id).delete())

    def commit(self, writes: List[Tuple]) -> List[Optional[Dict[str, Any]]]:
        """
        Apply several writes as one batch: either all of them land or none.

        Each write is ("insert", table, data), ("update", table, row_id, data),
        ("upsert", table, row_id, data) or ("delete", table, row_id). Returns
        one entry per write, the new row for inserts and None otherwise.
        """
        tables = sorted({write[1] for write in writes})

        def run():
            batch = self.db.batch()
            results = []
            for kind, table, *args in writes:
                collection = self.db.collection(table)
                if kind == "insert":
                    payload = dict(args[0])
                    payload.setdefault("created_at", now_str())
                    ref = collection.document()
                    batch.set(ref, payload)
                    results.append({**payload, "id": ref.id})
                    continue
                if kind == "update":
                    batch.update(collection.document(args[0]), args[1])
                elif kind == "upsert":
                    batch.set(collection.document(args[0]), args[1], merge=True)
                elif kind == "delete":
                    batch.delete(collection.document(args[0]))
                else:
                    raise ValueError(f"Unknown write {kind!r}")
                results.append(None)
            batch.commit()
            return results

        return self._call(f"save to {', '.join(tables)}", run)

    # ---------------- realtime ----------------
    def subscribe(
        self,
        table: str,
        where: Where,
        on_insert: Callable[[Dict[str, Any]], None],
        on_ack: Optional[Callable[[], None]] = None,
    ):
        """
        Listen for inserts. The first snapshot carries the existing rows and
        serves as the subscription acknowledgement; only later ADDED
        changes are reported as inserts.
        """
        state = {"acked": False}

        def on_snapshot(docs, changes, read_time):
            try:
                if not state["acked"]:
                    state["acked"] = True
                    if on_ack:
                        on_ack()
                    return
                for change in changes:
                    if change.type.name == "ADDED":
                        on_insert(_row(change.document))
            except Exception:
                logger.exception("Error in %s snapshot callback", table)

        return self._call(
            f"listen to {table}",
            lambda: _apply_where(self.db.collection(table), where).on_snapshot(on_snapshot),
        )

    def unsubscribe(self, handle) -> None:
        handle.unsubscribe()

    # ---------------- storage ----------------
    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Upload a file and return a URL anyone with the link can read."""
        if not self.storage_bucket:
            raise DataError("File uploads are not configured.")
        if self._id_token is None:
            def run_admin():
                blob = storage.bucket(self.storage_bucket).blob(path)
                blob.upload_from_string(data, content_type=content_type)
                blob.make_public()
                return blob.public_url

            return self._call("upload the file", run_admin)

        url = FIREBASE_STORAGE_UPLOAD.format(bucket=self.storage_bucket, name=quote(path, safe=""))
        try:
            resp = requests.post(
                url,
                data=data,
                headers={"Content-Type": content_type, "Authorization": f"Firebase {self._id_token}"},
                timeout=settings.HTTP_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise DataError("Failed to upload the file.", cause=exc) from exc
        token = (resp.json().get("downloadTokens") or "").split(",")[0]
        return FIREBASE_STORAGE_OBJECT.format(
            bucket=self.storage_bucket, name=quote(path, safe=""), token=token
        )

    # ---------------- transcription ----------------
    def transcribe(self, audio: bytes) -> str:
        if not self.transcribe_url:
            raise DataError("Voice input is not configured.")
        payload = {"audio": base64.b64encode(audio).decode("ascii")}
        try:
            resp = requests.post(self.transcribe_url, json=payload, timeout=settings.HTTP_TIMEOUT)
            resp.raise_for_status()
            body = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise DataError("Failed to transcribe audio.", cause=exc) from exc
        if body.get("error"):
            raise DataError(f"Failed to transcribe audio: {body['error']}")
        text = body.get("text")
        if text is None:
            text = (body.get("data") or {}).get("text")
        return text or ""
