# queries.py
"""
Every backend read and write the dashboards use, routed through the
QueryCache. Reads are cached under the keys below; each write declares the
key prefixes it can stale.
"""
import logging
import time
from collections import Counter
from typing import Any, Dict, List, Optional

from errors import DataError, ValidationError
from forms import ComplaintForm, Attachment, require_text, validate_attachment, validate_complaint, validate_profile
from models import (
    ALL, PENDING, ROLES, STATUSES, Message, effective_role, now_str, order_messages,
)

logger = logging.getLogger(__name__)

ATTACHMENT_FOLDER = "complaint-attachments"


# -------------------------------------------------------
# QUERY KEYS
# -------------------------------------------------------
def student_complaints_key(user_id, status=ALL):
    return ("complaints", user_id, status)


def staff_complaints_key(department_id, status=ALL):
    return ("staff-complaints", department_id, status)


def admin_complaints_key(status=ALL):
    return ("admin-complaints", status)


def complaint_key(complaint_id):
    return ("complaint", complaint_id)


def status_log_key(complaint_id):
    return ("complaint-status-log", complaint_id)


def comments_key(complaint_id):
    return ("comments", complaint_id)


def messages_key(complaint_id):
    return ("messages", complaint_id)


def profile_key(user_id):
    return ("profile", user_id)


def saved_filters_key(user_id):
    return ("saved-filters", user_id)


def preferences_key(user_id):
    return ("notification-preferences", user_id)


def onboarding_key(user_id):
    return ("onboarding", user_id)


DEPARTMENTS_KEY = ("departments",)
CATEGORIES_KEY = ("categories",)
ALL_USERS_KEY = ("all-users",)
ANALYTICS_KEY = ("analytics",)

# Anything that lists or counts complaints
COMPLAINT_LISTS = [("complaints",), ("staff-complaints",), ("admin-complaints",), ANALYTICS_KEY]

DEFAULT_PREFERENCES = {
    "status_updates": True,
    "new_comments": True,
    "assigned_complaints": True,
    "email_notifications": False,
}

ONBOARDING_STEPS = (
    ("Welcome to the Complaint Portal",
     "This system helps you submit, track, and manage complaints efficiently."),
    ("Submit Complaints",
     "Use 'New Complaint' to submit issues. Add a detailed description, attach files and pick a category."),
    ("Filter & Search",
     "Filter complaints by status, priority, department or category, and save filters you use often."),
    ("Customize Notifications",
     "Choose which notifications you receive from the Settings view."),
)


def _newest_first(rows, field="created_at"):
    return sorted(rows, key=lambda r: r.get(field) or "", reverse=True)


def complaint_analytics(rows: List[Dict[str, Any]], department_names: Dict[str, str]) -> Dict[str, Any]:
    """Counts by status, priority and department plus a per-day trend."""
    by_status = Counter(r.get("status") or PENDING for r in rows)
    by_priority = Counter(r.get("priority") or "medium" for r in rows)
    by_department = Counter(
        department_names.get(str(r.get("department_id")), "Unassigned") for r in rows
    )
    trend: Dict[str, Dict[str, int]] = {}
    for r in sorted(rows, key=lambda r: r.get("created_at") or ""):
        day = (r.get("created_at") or "")[:10]
        if not day:
            continue
        bucket = trend.setdefault(day, {"total": 0, "resolved": 0})
        bucket["total"] += 1
        if r.get("status") == "resolved":
            bucket["resolved"] += 1
    total = len(rows)
    resolved = by_status.get("resolved", 0)
    return {
        "total": total,
        "by_status": {s: by_status.get(s, 0) for s in STATUSES},
        "by_priority": dict(by_priority),
        "by_department": dict(by_department),
        "trend": trend,
        "resolution_rate": round(100.0 * resolved / total, 1) if total else 0.0,
    }


class QueryClient:
    def __init__(self, backend, cache):
        self.backend = backend
        self.cache = cache

    # ---------------- lookups ----------------
    def departments(self) -> List[Dict[str, Any]]:
        return self.cache.fetch(
            DEPARTMENTS_KEY,
            lambda: sorted(self.backend.select("departments"), key=lambda d: d.get("name", "").lower()),
        )

    def categories(self) -> List[Dict[str, Any]]:
        def load():
            names = self._department_names()
            rows = sorted(self.backend.select("categories"), key=lambda c: c.get("name", "").lower())
            for row in rows:
                row["department_name"] = names.get(str(row.get("department_id")), "")
            return rows

        return self.cache.fetch(CATEGORIES_KEY, load)

    def _department_names(self) -> Dict[str, str]:
        return {str(d["id"]): d.get("name", "") for d in self.departments()}

    def _with_names(self, rows):
        departments = self._department_names()
        categories = {str(c["id"]): c.get("name", "") for c in self.categories()}
        for row in rows:
            row["department_name"] = departments.get(str(row.get("department_id")), "")
            row["category_name"] = categories.get(str(row.get("category_id")), "")
        return rows

    # ---------------- complaints ----------------
    def student_complaints(self, user_id: str, status: str = ALL):
        def load():
            where = {"user_id": user_id}
            if status != ALL:
                where["status"] = status
            return self._with_names(_newest_first(self.backend.select("complaints", where)))

        return self.cache.fetch(student_complaints_key(user_id, status), load)

    def staff_complaints(self, department_id: Optional[str], status: str = ALL):
        if not department_id:
            return []

        def load():
            where = {"department_id": department_id}
            if status != ALL:
                where["status"] = status
            rows = self._with_names(_newest_first(self.backend.select("complaints", where)))
            profiles = {}
            for uid in {r.get("user_id") for r in rows if r.get("user_id")}:
                profiles[uid] = self.backend.get("profiles", uid) or {}
            for row in rows:
                student = profiles.get(row.get("user_id"), {})
                row["student_name"] = student.get("name", "")
                row["register_number"] = student.get("register_number") or ""
            return rows

        return self.cache.fetch(staff_complaints_key(department_id, status), load)

    def admin_complaints(self, status: str = ALL):
        def load():
            where = {"status": status} if status != ALL else None
            return self._with_names(_newest_first(self.backend.select("complaints", where)))

        return self.cache.fetch(admin_complaints_key(status), load)

    def complaint(self, complaint_id: str) -> Dict[str, Any]:
        def load():
            row = self.backend.get("complaints", complaint_id)
            if row is None:
                raise DataError("Complaint not found.")
            return self._with_names([row])[0]

        return self.cache.fetch(complaint_key(complaint_id), load)

    def status_log(self, complaint_id: str):
        """ordered by timestamp DESCENDING"""

        def load():
            rows = self.backend.select("complaint_status_log", {"complaint_id": complaint_id})
            names = {}
            for row in rows:
                uid = row.get("updated_by")
                if uid and uid not in names:
                    names[uid] = (self.backend.get("profiles", uid) or {}).get("name", "")
                row["updated_by_name"] = names.get(uid, "")
            return _newest_first(rows, "timestamp")

        return self.cache.fetch(status_log_key(complaint_id), load)

    def comments(self, complaint_id: str):
        return self.cache.fetch(
            comments_key(complaint_id),
            lambda: sorted(
                self.backend.select("comments", {"complaint_id": complaint_id}),
                key=lambda r: (r.get("created_at") or "", r.get("id") or ""),
            ),
        )

    def messages(self, complaint_id: str) -> List[Message]:
        return self.cache.fetch(
            messages_key(complaint_id),
            lambda: order_messages(
                Message.from_row(r) for r in self.backend.select("messages", {"complaint_id": complaint_id})
            ),
        )

    def analytics(self) -> Dict[str, Any]:
        return self.cache.fetch(
            ANALYTICS_KEY,
            lambda: complaint_analytics(self.backend.select("complaints"), self._department_names()),
        )

    def submit_complaint(self, user_id: str, form: ComplaintForm) -> Dict[str, Any]:
        form = validate_complaint(form)
        category = next((c for c in self.categories() if str(c["id"]) == form.category_id), None)
        if category is None:
            raise ValidationError("Please select a category", "category_id")

        def op():
            attachment_url = None
            if form.attachment is not None:
                path = f"{ATTACHMENT_FOLDER}/{user_id}/{int(time.time() * 1000)}.{form.attachment.extension}"
                attachment_url = self.backend.upload(path, form.attachment.data, form.attachment.content_type)
            ts = now_str()
            return self.backend.insert("complaints", {
                "user_id": user_id,
                "title": form.title,
                "description": form.description,
                "category_id": category["id"],
                "department_id": category.get("department_id"),
                "priority": form.priority,
                "status": PENDING,
                "attachment_url": attachment_url,
                "created_at": ts,
                "updated_at": ts,
            })

        row = self.cache.mutate(op, invalidates=COMPLAINT_LISTS, description="submit the complaint")
        logger.info("Complaint %s submitted by %s", row["id"], user_id)
        return row

    def update_status(self, complaint_id: str, status: str, updated_by: str, note: str = ""):
        """
        Staff/admin will use this. Writes the status, a status log entry and
        a notification for the owner in one batch.
        """
        if status not in STATUSES:
            raise ValidationError("Unknown status", "status")

        def op():
            complaint = self.backend.get("complaints", complaint_id)
            if complaint is None:
                raise DataError("Complaint not found.")
            ts = now_str()
            self.backend.commit([
                ("update", "complaints", complaint_id, {"status": status, "updated_at": ts}),
                ("insert", "complaint_status_log", {
                    "complaint_id": complaint_id,
                    "status": status,
                    "note": (note or "").strip() or None,
                    "updated_by": updated_by,
                    "timestamp": ts,
                }),
                ("insert", "notification_queue", {
                    "user_id": complaint.get("user_id"),
                    "complaint_id": complaint_id,
                    "notification_type": "status_update",
                    "title": "Complaint status updated",
                    "message": f"Your complaint \"{complaint.get('title', '')}\" is now {status.replace('_', ' ')}.",
                    "sent": False,
                }),
            ])

        self.cache.mutate(
            op,
            invalidates=[complaint_key(complaint_id), status_log_key(complaint_id)] + COMPLAINT_LISTS,
            description="update the status",
        )

    def add_comment(self, complaint_id: str, user_id: str, text: str,
                    attachment: Optional[Attachment] = None) -> Dict[str, Any]:
        # Department scoping is enforced by the backend rules, not here
        text = require_text(text, "comment_text", "Comment cannot be empty")
        if attachment is not None:
            attachment = validate_attachment(attachment.filename, attachment.data, attachment.content_type)

        def op():
            url = None
            if attachment is not None:
                path = f"{ATTACHMENT_FOLDER}/{user_id}/{int(time.time() * 1000)}.{attachment.extension}"
                url = self.backend.upload(path, attachment.data, attachment.content_type)
            return self.backend.insert("comments", {
                "complaint_id": complaint_id,
                "user_id": user_id,
                "comment_text": text,
                "attachment_url": url,
            })

        return self.cache.mutate(op, invalidates=[comments_key(complaint_id)], description="post the comment")

    def send_message(self, complaint_id: str, sender_id: str, content: str) -> Dict[str, Any]:
        content = require_text(content, "content", "Message cannot be empty")
        return self.cache.mutate(
            lambda: self.backend.insert("messages", {
                "complaint_id": complaint_id,
                "sender_id": sender_id,
                "content": content,
                "is_read": False,
            }),
            invalidates=[messages_key(complaint_id)],
            description="send the message",
        )

    # ---------------- departments ----------------
    def create_department(self, name: str) -> Dict[str, Any]:
        name = require_text(name, "name", "Department name is required")
        return self.cache.mutate(
            lambda: self.backend.insert("departments", {"name": name}),
            invalidates=[DEPARTMENTS_KEY, CATEGORIES_KEY],
            description="create the department",
        )

    def rename_department(self, department_id: str, name: str) -> None:
        name = require_text(name, "name", "Department name is required")
        self.cache.mutate(
            lambda: self.backend.update("departments", department_id, {"name": name}),
            invalidates=[DEPARTMENTS_KEY, CATEGORIES_KEY, ALL_USERS_KEY] + COMPLAINT_LISTS,
            description="update the department",
        )

    def delete_department(self, department_id: str) -> None:
        self.cache.mutate(
            lambda: self.backend.delete("departments", department_id),
            invalidates=[DEPARTMENTS_KEY, CATEGORIES_KEY, ALL_USERS_KEY],
            description="delete the department",
        )

    # ---------------- users ----------------
    def profile(self, user_id: str) -> Dict[str, Any]:
        return self.cache.fetch(profile_key(user_id), lambda: self.backend.get("profiles", user_id) or {})

    def update_profile(self, user_id: str, name: str, register_number: Optional[str] = None) -> None:
        name, register_number = validate_profile(name, register_number)
        self.cache.mutate(
            lambda: self.backend.update("profiles", user_id, {
                "name": name,
                "register_number": register_number,
                "updated_at": now_str(),
            }),
            invalidates=[profile_key(user_id), ALL_USERS_KEY],
            description="update the profile",
        )

    def all_users(self) -> List[Dict[str, Any]]:
        def load():
            departments = self._department_names()
            roles: Dict[str, List[Dict[str, Any]]] = {}
            for row in self.backend.select("user_roles"):
                roles.setdefault(row.get("user_id"), []).append(row)
            users = []
            for profile in sorted(self.backend.select("profiles"), key=lambda p: p.get("name", "").lower()):
                users.append({
                    **profile,
                    "role": effective_role(roles.get(profile["id"], [])),
                    "department_name": departments.get(str(profile.get("department_id")), ""),
                })
            return users

        return self.cache.fetch(ALL_USERS_KEY, load)

    def set_user_role(self, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise ValidationError("Role must be student, staff or admin", "role")

        def op():
            # replace in one batch, so the user ends up with exactly one role row
            rows = self.backend.select("user_roles", {"user_id": user_id})
            writes = [("delete", "user_roles", row["id"]) for row in rows]
            writes.append(("insert", "user_roles", {"user_id": user_id, "role": role}))
            self.backend.commit(writes)

        self.cache.mutate(op, invalidates=[ALL_USERS_KEY], description="update the role")
        logger.info("Role of %s set to %s", user_id, role)

    def set_user_department(self, user_id: str, department_id: Optional[str]) -> None:
        self.cache.mutate(
            lambda: self.backend.update("profiles", user_id, {"department_id": department_id}),
            invalidates=[ALL_USERS_KEY, profile_key(user_id)],
            description="update the department",
        )

    # ---------------- settings ----------------
    def notification_preferences(self, user_id: str) -> Dict[str, bool]:
        def load():
            row = self.backend.get("notification_preferences", user_id) or {}
            return {k: bool(row.get(k, default)) for k, default in DEFAULT_PREFERENCES.items()}

        return self.cache.fetch(preferences_key(user_id), load)

    def save_notification_preferences(self, user_id: str, preferences: Dict[str, bool]) -> None:
        data = {k: bool(preferences.get(k, default)) for k, default in DEFAULT_PREFERENCES.items()}
        data.update({"user_id": user_id, "updated_at": now_str()})
        self.cache.mutate(
            lambda: self.backend.upsert("notification_preferences", user_id, data),
            invalidates=[preferences_key(user_id)],
            description="save your preferences",
        )

    def onboarding(self, user_id: str) -> Dict[str, Any]:
        def load():
            row = self.backend.get("user_onboarding", user_id) or {}
            return {
                "current_step": int(row.get("current_step") or 0),
                "completed": bool(row.get("completed")),
                "skipped": bool(row.get("skipped")),
            }

        return self.cache.fetch(onboarding_key(user_id), load)

    def should_show_onboarding(self, user_id: str) -> bool:
        state = self.onboarding(user_id)
        return not state["completed"] and not state["skipped"]

    def save_onboarding(self, user_id: str, current_step: int, completed: bool = False, skipped: bool = False):
        self.cache.mutate(
            lambda: self.backend.upsert("user_onboarding", user_id, {
                "user_id": user_id,
                "current_step": current_step,
                "completed": completed,
                "skipped": skipped,
                "updated_at": now_str(),
            }),
            invalidates=[onboarding_key(user_id)],
            description="save onboarding progress",
        )

    def transcribe(self, audio: bytes) -> str:
        return self.backend.transcribe(audio)
