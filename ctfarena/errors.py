"""
Error types raised by the platform services.

Each error carries the HTTP status the web layer answers with. Flag
submission rejections are not errors; they come back as typed results.
"""


class CTFError(Exception):
    """Base class for errors that are safe to show to API callers."""

    status = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or "Request failed"


class ValidationError(CTFError):
    """Invalid request data"""

    status = 400


class InvalidTransition(CTFError):
    """Event state transition not allowed"""

    status = 400


class AuthenticationError(CTFError):
    """Authentication required"""

    status = 401


class PermissionDenied(CTFError):
    """Permission denied"""

    status = 403


class ScoreboardDisabled(PermissionDenied):
    """This is currently disabled by Admin"""


class NotFoundError(CTFError):
    """Not found"""

    status = 404


class ConflictError(CTFError):
    """Conflicting state"""

    status = 409


class EventNotActive(CTFError):
    """The event is not running"""

    status = 403
