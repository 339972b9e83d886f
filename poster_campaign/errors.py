"""Domain exceptions raised by the service layer.

Each carries the HTTP status it maps to; the handlers registered in
``poster_campaign.main`` turn them into the error envelope.
"""
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class PermissionDeniedError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class AccountLockedError(AppError):
    status_code = 423


def translate_integrity_error(exc: IntegrityError, conflict_message: str = "Resource already exists") -> AppError:
    """Map a database constraint violation onto a domain error by its message text."""
    text = str(exc.orig if exc.orig is not None else exc).lower()

    if "unique" in text or "duplicate" in text:
        return ConflictError(conflict_message)

    if "foreign key" in text:
        return ValidationError("Invalid reference to related resource")

    if "not null" in text:
        return ValidationError("Missing required field")

    return ValidationError("Database constraint violated")
