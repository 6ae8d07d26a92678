"""
Error taxonomy for the API.

Every failure a registry raises is an AppError subclass carrying the HTTP
status it maps to. main.py renders them as
``{"success": false, "message": ..., "errors": [...]}``.
"""
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong!"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = 401
    default_message = "Access token required"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Access denied"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class InternalError(AppError):
    status_code = 500


# --- Domain errors ---

class DuplicateEmail(ConflictError):
    default_message = "User with this email already exists"


class InvalidCredentials(AuthError):
    default_message = "Invalid credentials"


class InvalidToken(AuthError):
    default_message = "Invalid or expired token"


class InvalidBloodType(ValidationError):
    default_message = "Invalid blood type"


class InvalidDateRange(ValidationError):
    default_message = "Event end date must be after start date"


class InvalidStatus(ValidationError):
    default_message = "Invalid status"


class EventFull(ConflictError):
    status_code = 400
    default_message = "Event is already full"


class AlreadyRegistered(ConflictError):
    status_code = 400
    default_message = "User is already registered for this event"


class NotRegistered(ConflictError):
    status_code = 400
    default_message = "User is not registered for this event"


class InvalidTransition(ConflictError):
    default_message = "Status change not allowed"


def format_validation_errors(raw_errors) -> List[Dict[str, Any]]:
    """Flatten pydantic error dicts into ``{"field", "message"}`` pairs."""
    formatted = []
    for err in raw_errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        formatted.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return formatted


def validation_failed(exc) -> ValidationError:
    """Wrap a pydantic ValidationError raised while building a record."""
    return ValidationError("Validation failed", errors=format_validation_errors(exc.errors()))
