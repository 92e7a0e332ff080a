from typing import Optional


class RegistrarError(Exception):
    """Base class for failures surfaced to API callers with a status code."""

    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {'error': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class BadRequest(RegistrarError):
    status_code = 400
    default_message = "Validation error"


class Unauthorized(RegistrarError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(RegistrarError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(RegistrarError):
    status_code = 404
    default_message = "Not found"


class Conflict(RegistrarError):
    status_code = 409
    default_message = "Conflict"


class AccountLocked(RegistrarError):
    status_code = 423
    default_message = "Account is temporarily locked due to too many failed attempts"


class TooManyRequests(RegistrarError):
    status_code = 429
    default_message = "Too many attempts, please try again later"


class Internal(RegistrarError):
    status_code = 500
    default_message = "Internal server error"
