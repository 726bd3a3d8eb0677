# models.py
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

STUDENT = "student"
STAFF = "staff"
ADMIN = "admin"
ROLES = (STUDENT, STAFF, ADMIN)

PENDING = "pending"
IN_PROGRESS = "in_progress"
RESOLVED = "resolved"
STATUSES = (PENDING, IN_PROGRESS, RESOLVED)

PRIORITIES = ("low", "medium", "high")

# Selector value meaning "no constraint" in a FilterState
ALL = "all"

# Saved as a string so lexicographic order works in Firestore order_by
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def now_str() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


@dataclass
class Session:
    user_id: str
    email: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    # None until a role lookup resolves; never read it to gate content
    role: Optional[str] = None


@dataclass
class Complaint:
    id: str
    user_id: str
    title: str
    description: str
    department_id: Optional[str] = None
    category_id: Optional[str] = None
    priority: str = "medium"
    status: str = PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    attachment_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Complaint":
        return cls(
            id=row["id"],
            user_id=row.get("user_id", ""),
            title=row.get("title", ""),
            description=row.get("description", ""),
            department_id=row.get("department_id"),
            category_id=row.get("category_id"),
            priority=row.get("priority") or "medium",
            status=row.get("status") or PENDING,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            attachment_url=row.get("attachment_url"),
        )


@dataclass
class Message:
    id: str
    complaint_id: str
    sender_id: str
    content: str
    created_at: str = ""
    is_read: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        return cls(
            id=row["id"],
            complaint_id=row.get("complaint_id", ""),
            sender_id=row.get("sender_id", ""),
            content=row.get("content", ""),
            created_at=row.get("created_at") or "",
            is_read=bool(row.get("is_read")),
        )


def order_messages(messages: Iterable[Message]) -> List[Message]:
    """Thread order: created_at ascending, ties broken by id."""
    return sorted(messages, key=lambda m: (m.created_at, m.id))


@dataclass
class FilterState:
    search: str = ""
    status: str = ALL
    priority: str = ALL
    department: str = ALL
    category: str = ALL

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterState":
        data = data or {}
        return cls(
            search=str(data.get("search") or ""),
            status=str(data.get("status") or ALL),
            priority=str(data.get("priority") or ALL),
            department=str(data.get("department") or ALL),
            category=str(data.get("category") or ALL),
        )

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def is_empty(self) -> bool:
        return self == FilterState()

    def matches(self, complaint: Dict[str, Any]) -> bool:
        if self.status != ALL and complaint.get("status") != self.status:
            return False
        if self.priority != ALL and complaint.get("priority") != self.priority:
            return False
        if self.department != ALL and str(complaint.get("department_id")) != self.department:
            return False
        if self.category != ALL and str(complaint.get("category_id")) != self.category:
            return False
        q = self.search.strip().lower()
        if q:
            haystack = f"{complaint.get('title', '')} {complaint.get('description', '')}".lower()
            if q not in haystack:
                return False
        return True


@dataclass
class SavedFilter:
    id: str
    user_id: str
    name: str
    filter_data: FilterState = field(default_factory=FilterState)
    is_default: bool = False
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SavedFilter":
        return cls(
            id=row["id"],
            user_id=row.get("user_id", ""),
            name=row.get("name", ""),
            filter_data=FilterState.from_dict(row.get("filter_data")),
            is_default=bool(row.get("is_default")),
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )


def effective_role(role_rows: Iterable[Dict[str, Any]]) -> Optional[str]:
    """
    The schema allows several user_roles rows per user. The first one by
    insertion order wins; unknown role names are skipped.
    """
    rows = sorted(role_rows, key=lambda r: (r.get("created_at") or "", r.get("id") or ""))
    for row in rows:
        if row.get("role") in ROLES:
            return row["role"]
    return None

