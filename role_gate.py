# role_gate.py
import enum
import logging
import threading
from typing import Callable, Optional

from errors import PermissionDeniedError

logger = logging.getLogger(__name__)

SIGN_IN_ROUTE = "auth"

_UNSET = object()


class RenderDecision(str, enum.Enum):
    PLACEHOLDER = "placeholder"
    REDIRECT = "redirect"
    RENDER = "render"


class RoleGate:
    """
    Route guard for one protected view.

    Shows a placeholder until both the session and (when a role is
    required) the role check have settled, then either renders or redirects
    to the sign-in surface. A failed or errored check also redirects to
    sign-in; there is no separate "forbidden" page.

    Role checks run through `runner` and are keyed by (user, role). A check
    that was superseded (role changed, user changed, gate closed) is
    discarded when it completes.
    """

    def __init__(self, session, runner, required_role: Optional[str] = None,
                 on_change: Optional[Callable[[RenderDecision], None]] = None):
        self.session = session
        self.runner = runner
        self.redirect_to = SIGN_IN_ROUTE
        self.denied: Optional[PermissionDeniedError] = None
        self._required_role = required_role
        self._on_change = on_change
        self._lock = threading.Lock()
        self._generation = 0
        self._check_key = None
        self._granted: Optional[bool] = None
        self._closed = False
        self._decision = RenderDecision.PLACEHOLDER
        self._remove_listener = session.add_listener(self._on_session_change)

    @property
    def required_role(self) -> Optional[str]:
        return self._required_role

    @property
    def decision(self) -> RenderDecision:
        return self._decision

    @property
    def closed(self) -> bool:
        return self._closed

    def guard(self, required_role=_UNSET) -> RenderDecision:
        """
        Decide for the current navigation. A settled check is reused for as
        long as this gate lives, so a new navigation to the view must build a
        new gate (the app opens one per window) or call `recheck()`.
        """
        if required_role is not _UNSET and required_role != self._required_role:
            return self.set_required_role(required_role)
        return self.evaluate()

    def set_required_role(self, role: Optional[str]) -> RenderDecision:
        with self._lock:
            self._required_role = role
            self._reset_check()
        return self.evaluate()

    def recheck(self) -> RenderDecision:
        """Forget the settled check and ask the backend again, for a fresh navigation."""
        with self._lock:
            self._reset_check()
        return self.evaluate()

    def evaluate(self) -> RenderDecision:
        with self._lock:
            if self._closed:
                return self._decision
            decision, pending = self._decide()
            changed = decision != self._decision
            self._decision = decision
        if changed:
            self._emit(decision)
        if pending is not None:
            # the runner may complete the check before returning
            self._start_check(*pending)
        return self._decision

    def close(self):
        with self._lock:
            self._closed = True
            self._generation += 1
        self._remove_listener()

    # ---------------- internals ----------------
    def _reset_check(self):
        self._generation += 1
        self._check_key = None
        self._granted = None

    def _decide(self):
        if self.session.loading:
            return RenderDecision.PLACEHOLDER, None
        user = self.session.current_session()
        if user is None:
            if self._check_key is not None:
                self._reset_check()
            return RenderDecision.REDIRECT, None
        role = self._required_role
        if role is None:
            return RenderDecision.RENDER, None
        key = (user.user_id, role)
        if self._check_key != key:
            self._reset_check()
            self._check_key = key
            return RenderDecision.PLACEHOLDER, (self._generation, role)
        if self._granted is None:
            return RenderDecision.PLACEHOLDER, None
        return (RenderDecision.RENDER if self._granted else RenderDecision.REDIRECT), None

    def _start_check(self, generation: int, role: str):
        logger.debug("Checking role %r", role)

        def done(result, exc):
            self._finish_check(generation, role, result, exc)

        self.runner.run(lambda: self.session.has_role(role), done, alive=lambda: not self._closed)

    def _finish_check(self, generation: int, role: str, result, exc):
        with self._lock:
            if self._closed or generation != self._generation:
                logger.debug("Discarding superseded role check for %r", role)
                return
            granted = exc is None and result is True
            self._granted = granted
            if granted:
                self.denied = None
            else:
                if exc is not None:
                    logger.warning("Role check for %r failed: %s", role, exc)
                else:
                    logger.info("Access to %r view denied", role)
                self.denied = PermissionDeniedError(role=role)
        self.evaluate()

    def _on_session_change(self, _session):
        self.evaluate()

    def _emit(self, decision: RenderDecision):
        if self._on_change is None:
            return
        try:
            self._on_change(decision)
        except Exception:
            logger.exception("Role gate listener failed")
