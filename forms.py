# forms.py
"""
Client-side form validation. Every check here runs before any network call
and raises ValidationError with the message shown next to the field.
"""
import os
from dataclasses import dataclass
from typing import Optional

from errors import ValidationError
from models import PRIORITIES

MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024
ATTACHMENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".pdf": "application/pdf",
}


def looks_like_email(email: str) -> bool:
    if email.count("@") != 1:
        return False
    local, domain = email.split("@")
    return bool(local) and "." in domain and not domain.startswith(".") and not domain.endswith(".")


def _length(value: str, field: str, low: int, high: int, low_msg: str, high_msg: Optional[str] = None) -> str:
    value = (value or "").strip()
    if len(value) < low:
        raise ValidationError(low_msg, field)
    if len(value) > high:
        raise ValidationError(high_msg or f"{field.replace('_', ' ').capitalize()} must be at most {high} characters", field)
    return value


@dataclass
class Attachment:
    filename: str
    data: bytes
    content_type: str

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename)[1].lstrip(".").lower()


@dataclass
class ComplaintForm:
    title: str
    category_id: str
    description: str
    priority: str = "medium"
    attachment: Optional[Attachment] = None


def validate_attachment(filename: str, data: bytes, content_type: Optional[str] = None) -> Attachment:
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise ValidationError("File must be less than 5MB", "attachment")
    ext = os.path.splitext(filename)[1].lower()
    guessed = ATTACHMENT_TYPES.get(ext)
    content_type = content_type or guessed
    if guessed is None or content_type not in ATTACHMENT_TYPES.values():
        raise ValidationError("Only images (JPEG, PNG) and PDFs are allowed", "attachment")
    return Attachment(filename=os.path.basename(filename), data=data, content_type=content_type)


def validate_complaint(form: ComplaintForm) -> ComplaintForm:
    title = _length(form.title, "title", 5, 150, "Title must be at least 5 characters")
    category_id = (form.category_id or "").strip()
    if not category_id:
        raise ValidationError("Please select a category", "category_id")
    description = _length(
        form.description, "description", 20, 1000, "Description must be at least 20 characters"
    )
    priority = (form.priority or "").strip().lower()
    if priority not in PRIORITIES:
        raise ValidationError("Priority must be low, medium or high", "priority")
    attachment = None
    if form.attachment is not None:
        attachment = validate_attachment(
            form.attachment.filename, form.attachment.data, form.attachment.content_type
        )
    return ComplaintForm(
        title=title,
        category_id=category_id,
        description=description,
        priority=priority,
        attachment=attachment,
    )


def validate_sign_in(email: str, password: str):
    email = (email or "").strip()
    if not looks_like_email(email):
        raise ValidationError("Invalid email address", "email")
    if not password:
        raise ValidationError("Password is required", "password")
    return email, password


def validate_sign_up(email: str, password: str, name: str):
    name = _length(name, "name", 2, 100, "Name must be at least 2 characters")
    email = (email or "").strip()
    if not looks_like_email(email) or len(email) > 255:
        raise ValidationError("Invalid email address", "email")
    if len(password or "") < 8:
        raise ValidationError("Password must be at least 8 characters", "password")
    return email, password, name


def validate_profile(name: str, register_number: Optional[str] = None):
    name = _length(name, "name", 2, 100, "Name must be at least 2 characters")
    register_number = (register_number or "").strip()
    if len(register_number) > 50:
        raise ValidationError("Register number must be at most 50 characters", "register_number")
    return name, register_number or None


def require_text(value: str, field: str, message: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(message, field)
    return value
