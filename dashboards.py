# dashboards.py
"""
Role-specific view models. The tkinter screens in app.py only draw what
these return; everything they do against the backend goes through
QueryClient, so cache invalidation and error classification stay in one
place. Every public method blocks and is meant to run through the task
runner.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from forms import Attachment, ComplaintForm
from models import ADMIN, ALL, STAFF, STATUSES, STUDENT, Complaint, FilterState
from queries import ONBOARDING_STEPS
from realtime import ComplaintThread
from saved_filters import SavedFilterStore

logger = logging.getLogger(__name__)


def apply_filters(complaints: List[Dict[str, Any]], state: Optional[FilterState]) -> List[Dict[str, Any]]:
    if state is None or state.is_empty():
        return list(complaints)
    return [c for c in complaints if state.matches(c)]


def status_counts(complaints: List[Dict[str, Any]]) -> Dict[str, int]:
    counts = {s: 0 for s in STATUSES}
    for c in complaints:
        st = c.get("status")
        if st in counts:
            counts[st] += 1
    return counts


class Dashboard:
    required_role: Optional[str] = None
    title = "Dashboard"

    def __init__(self, queries, session, runner, transport=None):
        self.queries = queries
        self.session = session
        self.runner = runner
        self.transport = transport if transport is not None else queries.backend
        self.filters = SavedFilterStore(queries.backend, queries.cache, self.user_id)
        self._threads: List[ComplaintThread] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._closed = False

    @property
    def user_id(self) -> str:
        user = self.session.current_session()
        return user.user_id if user else ""

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self, func, on_done=None):
        """Background call whose result is dropped once the dashboard closes."""
        return self.runner.run(func, on_done, alive=lambda: not self._closed)

    def watch(self, prefix, callback: Callable[[], None]) -> Callable[[], None]:
        """Call `callback` when anything under `prefix` goes stale; returns the unsubscribe."""
        unsubscribe = self.queries.cache.subscribe(prefix, callback)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    # ---------------- shared views ----------------
    def list_complaints(self, status: str = ALL) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def visible_complaints(self, status: str = ALL) -> List[Dict[str, Any]]:
        return apply_filters(self.list_complaints(status), self.filters.active)

    def stats(self) -> Dict[str, int]:
        return status_counts(self.list_complaints(ALL))

    def detail(self, complaint_id: str) -> Dict[str, Any]:
        row = self.queries.complaint(complaint_id)
        return {
            "complaint": Complaint.from_row(row),
            "category_name": row.get("category_name", ""),
            "department_name": row.get("department_name", ""),
            "status_log": self.queries.status_log(complaint_id),
            "comments": self.queries.comments(complaint_id),
        }

    def open_thread(self, complaint_id: str, on_messages=None, on_error=None) -> ComplaintThread:
        thread = ComplaintThread(
            self.queries, self.transport, self.runner, complaint_id, self.user_id,
            on_messages=on_messages, on_error=on_error,
        )
        self._threads.append(thread)
        thread.open()
        return thread

    def close_thread(self, thread: ComplaintThread):
        thread.close()
        if thread in self._threads:
            self._threads.remove(thread)

    @property
    def open_threads(self) -> List[ComplaintThread]:
        return list(self._threads)

    def add_comment(self, complaint_id: str, text: str, attachment: Optional[Attachment] = None):
        return self.queries.add_comment(complaint_id, self.user_id, text, attachment)

    def categories(self):
        return self.queries.categories()

    def departments(self):
        return self.queries.departments()

    def profile(self) -> Dict[str, Any]:
        return self.queries.profile(self.user_id)

    def update_profile(self, name: str, register_number: Optional[str] = None):
        self.queries.update_profile(self.user_id, name, register_number)

    def notification_preferences(self) -> Dict[str, bool]:
        return self.queries.notification_preferences(self.user_id)

    def save_notification_preferences(self, preferences: Dict[str, bool]):
        self.queries.save_notification_preferences(self.user_id, preferences)

    def close(self):
        self._closed = True
        for thread in list(self._threads):
            self.close_thread(thread)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()


class StudentDashboard(Dashboard):
    required_role = STUDENT
    title = "My Complaints"

    def list_complaints(self, status: str = ALL):
        return self.queries.student_complaints(self.user_id, status)

    def submit(self, form: ComplaintForm) -> Dict[str, Any]:
        return self.queries.submit_complaint(self.user_id, form)

    def transcribe(self, audio: bytes) -> str:
        return self.queries.transcribe(audio)


class StaffDashboard(Dashboard):
    required_role = STAFF
    title = "Department Complaints"

    def department_id(self) -> Optional[str]:
        return self.profile().get("department_id")

    def list_complaints(self, status: str = ALL):
        # empty until an admin assigns a department
        return self.queries.staff_complaints(self.department_id(), status)

    def update_status(self, complaint_id: str, status: str, note: str = ""):
        self.queries.update_status(complaint_id, status, self.user_id, note)


class AdminDashboard(Dashboard):
    required_role = ADMIN
    title = "All Complaints"

    def list_complaints(self, status: str = ALL):
        return self.queries.admin_complaints(status)

    def update_status(self, complaint_id: str, status: str, note: str = ""):
        self.queries.update_status(complaint_id, status, self.user_id, note)

    def analytics(self) -> Dict[str, Any]:
        return self.queries.analytics()

    def users(self) -> List[Dict[str, Any]]:
        return self.queries.all_users()

    def set_user_role(self, user_id: str, role: str):
        self.queries.set_user_role(user_id, role)

    def set_user_department(self, user_id: str, department_id: Optional[str]):
        self.queries.set_user_department(user_id, department_id)

    def create_department(self, name: str):
        return self.queries.create_department(name)

    def rename_department(self, department_id: str, name: str):
        self.queries.rename_department(department_id, name)

    def delete_department(self, department_id: str):
        self.queries.delete_department(department_id)


DASHBOARDS = {
    STUDENT: StudentDashboard,
    STAFF: StaffDashboard,
    ADMIN: AdminDashboard,
}


class Onboarding:
    """First-run walkthrough, shown until the user completes or skips it."""

    steps = ONBOARDING_STEPS

    def __init__(self, queries, user_id: str):
        self.queries = queries
        self.user_id = user_id
        self.current_step = 0
        self.open = False

    def check(self) -> bool:
        state = self.queries.onboarding(self.user_id)
        self.open = not state["completed"] and not state["skipped"]
        self.current_step = min(state["current_step"], len(self.steps) - 1)
        return self.open

    @property
    def step(self):
        return self.steps[self.current_step]

    @property
    def progress(self) -> float:
        return 100.0 * (self.current_step + 1) / len(self.steps)

    def next(self):
        nxt = self.current_step + 1
        if nxt >= len(self.steps):
            self.complete()
            return
        self.current_step = nxt
        self.queries.save_onboarding(self.user_id, nxt)

    def complete(self):
        self.queries.save_onboarding(self.user_id, len(self.steps), completed=True)
        self.open = False

    def skip(self):
        self.queries.save_onboarding(self.user_id, self.current_step, skipped=True)
        self.open = False
