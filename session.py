# session.py
import json
import logging
import os
import threading
from typing import Callable, List, Optional

from errors import AuthError, CrtsError
from forms import validate_sign_in, validate_sign_up
from models import STUDENT, Session, effective_role, now_str

logger = logging.getLogger(__name__)


class AuthSession:
    """
    Lifecycle-scoped auth state: created once, `init()` on app start,
    `teardown()` on exit. Listeners are called whenever `loading` or `user`
    changes.

    The role is never cached here for gating purposes; `has_role()` asks the
    backend every time it is called.
    """

    def __init__(self, backend, token_file: Optional[str] = None):
        self.backend = backend
        self.token_file = token_file
        self.loading = True
        self.user: Optional[Session] = None
        self._listeners: List[Callable[["AuthSession"], None]] = []
        self._lock = threading.Lock()
        backend.token_refresher = self.renew

    # ---------------- listeners ----------------
    def add_listener(self, callback: Callable[["AuthSession"], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def _notify(self):
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(self)
            except Exception:
                logger.exception("Session listener failed")

    # ---------------- lifecycle ----------------
    def init(self) -> Optional[Session]:
        """Restore a persisted session, if any. Always ends the loading state."""
        try:
            stored = self._read_token()
            if stored:
                data = self.backend.refresh(stored["refresh_token"])
                self._establish(
                    user_id=data["user_id"],
                    email=stored.get("email", ""),
                    id_token=data["id_token"],
                    refresh_token=data["refresh_token"],
                    notify=False,
                )
                logger.info("Restored session for %s", self.user.email)
        except AuthError as exc:
            logger.info("Stored session not restored: %s", exc)
            self._forget_token()
        finally:
            self.loading = False
            self._notify()
        return self.user

    def teardown(self):
        self.sign_out()
        with self._lock:
            self._listeners.clear()

    # ---------------- auth operations ----------------
    def sign_in(self, email: str, password: str) -> Session:
        email, password = validate_sign_in(email, password)
        res = self.backend.sign_in(email, password)
        return self._establish(
            user_id=res["localId"],
            email=res.get("email") or email,
            id_token=res["idToken"],
            refresh_token=res.get("refreshToken"),
        )

    def sign_up(self, email: str, password: str, name: str) -> Session:
        email, password, name = validate_sign_up(email, password, name)
        res = self.backend.sign_up(email, password)
        session = self._establish(
            user_id=res["localId"],
            email=res.get("email") or email,
            id_token=res["idToken"],
            refresh_token=res.get("refreshToken"),
        )
        try:
            self.backend.upsert("profiles", session.user_id, {
                "name": name,
                "email": session.email,
                "department_id": None,
                "register_number": None,
                "created_at": now_str(),
            })
            self.backend.insert("user_roles", {"user_id": session.user_id, "role": STUDENT})
        except CrtsError:
            logger.exception("Account created but profile setup failed for %s", session.email)
            raise
        return session

    def sign_out(self):
        had_user = self.user is not None
        self.user = None
        self.backend.unbind_user()
        self._forget_token()
        if had_user:
            logger.info("Signed out")
            self._notify()

    def current_session(self) -> Optional[Session]:
        return self.user

    def renew(self) -> str:
        """
        Trade the refresh token for a new ID token once the old one expired.
        The backend calls this and rebinds itself. A refresh the provider
        refuses ends the session.
        """
        user = self.user
        if user is None or not user.refresh_token:
            raise AuthError("Your session has expired. Please sign in again.")
        try:
            data = self.backend.refresh(user.refresh_token)
        except AuthError:
            logger.info("Refresh refused for %s, signing out", user.email)
            self.sign_out()
            raise
        user.id_token = data["id_token"]
        user.refresh_token = data.get("refresh_token") or user.refresh_token
        self._save_token()
        return user.id_token

    # ---------------- roles ----------------
    def fetch_role(self) -> Optional[str]:
        user = self.user
        if user is None:
            return None
        rows = self.backend.select("user_roles", {"user_id": user.user_id})
        role = effective_role(rows)
        if len(rows) > 1:
            logger.warning("User %s has %d role rows, using %r", user.user_id, len(rows), role)
        user.role = role
        return role

    def has_role(self, role: str) -> bool:
        if self.user is None:
            return False
        return self.fetch_role() == role

    # ---------------- internals ----------------
    def _establish(self, user_id, email, id_token, refresh_token, notify=True) -> Session:
        self.backend.bind_user(id_token)
        self.user = Session(user_id=user_id, email=email, id_token=id_token, refresh_token=refresh_token)
        self.loading = False
        self._save_token()
        if notify:
            self._notify()
        return self.user

    def _read_token(self):
        if not self.token_file or not os.path.exists(self.token_file):
            return None
        try:
            with open(self.token_file, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            logger.warning("Unreadable session file %s", self.token_file)
            return None
        return data if data.get("refresh_token") else None

    def _save_token(self):
        if not self.token_file or not self.user or not self.user.refresh_token:
            return
        try:
            fd = os.open(self.token_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"refresh_token": self.user.refresh_token, "email": self.user.email}, fh)
        except OSError:
            logger.warning("Could not persist session to %s", self.token_file, exc_info=True)

    def _forget_token(self):
        if self.token_file and os.path.exists(self.token_file):
            try:
                os.remove(self.token_file)
            except OSError:
                logger.warning("Could not remove %s", self.token_file)
