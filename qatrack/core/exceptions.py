"""Domain error taxonomy.

Services raise these instead of ``HTTPException`` so they stay usable outside
a request. ``qatrack.app.main`` maps every ``QATrackError`` onto a JSON body of
the form ``{"error": message}`` with the class's status code. Errors that carry
``details`` add those keys to the body.
"""

from fastapi import status


class QATrackError(Exception):
    """Base exception for all QA Tracker errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        self.details: dict[str, object] = {}
        super().__init__(self.message)


# --- Authentication ---


class InvalidCredentials(QATrackError):
    """Unknown username or wrong password. The two cases are never distinguished."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credentials"


class Unauthenticated(QATrackError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class MissingToken(Unauthenticated):
    default_message = "Access token required"


class InvalidToken(Unauthenticated):
    default_message = "Invalid token"


class Forbidden(QATrackError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Insufficient permissions"


# --- Two-factor ---


class NoValidCode(QATrackError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "No valid code found for user"


class InvalidCode(QATrackError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid code"


class PhoneNumberMissing(QATrackError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Phone number not set for user"


class SmsDispatchError(QATrackError):
    """The code is stored but the gateway refused or never answered."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Failed to deliver verification code. Request a new code to retry."

    def __init__(self, message: str | None = None, user_id: int | None = None) -> None:
        super().__init__(message)
        if user_id is not None:
            # The challenge stays open so the client can resend and verify
            self.details = {"requires_2fa": True, "user_id": user_id}


# --- Data integrity ---


class NotFound(QATrackError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Conflict(QATrackError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class ReferentialGuardViolation(QATrackError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource is referenced by other records"


class ValidationFailed(QATrackError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class SelfDeactivation(ValidationFailed):
    default_message = "Cannot deactivate your own account"
