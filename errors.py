# errors.py
"""
Error taxonomy shared by every layer of the client.

AuthError               -> shown inline on the login form
DataError               -> dismissible notification, operation abandoned
ValidationError         -> shown inline, raised before any network call
PermissionDeniedError   -> role check failed, the gate redirects
"""
from typing import Optional


class CrtsError(Exception):
    """Base class for errors the UI knows how to present."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class AuthError(CrtsError):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class DataError(CrtsError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ValidationError(CrtsError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PermissionDeniedError(CrtsError):
    def __init__(self, message: str = "You do not have access to this page.", role: Optional[str] = None):
        super().__init__(message)
        self.role = role
