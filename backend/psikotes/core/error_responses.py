"""
Error taxonomy, user-facing messages and HTTPException builders.

Services raise ``AssessmentError`` carrying an ``ErrorKind``; the exception
handler registered in ``psikotes.main`` maps the kind to an HTTP status via
``ERROR_STATUS``. Endpoint code never chooses status codes for domain errors.

Authentication and configuration failures happen before any service runs
and use the ``raise_*`` helpers directly.

Usage:
    from psikotes.core.error_responses import AssessmentError, ErrorKind, ErrorMessages

    if attempt is None:
        raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.ATTEMPT_NOT_FOUND)
"""

import enum
from typing import NoReturn, Optional

from fastapi import HTTPException, status


class ErrorKind(str, enum.Enum):
    """Machine-readable error codes returned in the ``code`` field."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    ATTEMPT_NOT_ACTIVE = "ATTEMPT_NOT_ACTIVE"
    ATTEMPT_ALREADY_FINISHED = "ATTEMPT_ALREADY_FINISHED"
    ATTEMPT_NOT_COMPLETED = "ATTEMPT_NOT_COMPLETED"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    INVALID_ANSWER_FORMAT = "INVALID_ANSWER_FORMAT"
    INVALID_PROGRESS = "INVALID_PROGRESS"
    TEST_INACTIVE = "TEST_INACTIVE"
    INVALID_SESSION = "INVALID_SESSION"
    SESSION_INACTIVE = "SESSION_INACTIVE"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.ATTEMPT_NOT_ACTIVE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ATTEMPT_ALREADY_FINISHED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ATTEMPT_NOT_COMPLETED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_STATUS_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_ANSWER_FORMAT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_PROGRESS: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TEST_INACTIVE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_SESSION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SESSION_INACTIVE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.DATA_INTEGRITY_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AssessmentError(Exception):
    """Domain error raised by the service layer.

    Attributes:
        kind: The error category; decides the HTTP status at the boundary.
        message: User-facing message.
        field: Name of the offending request field, when there is one.
    """

    def __init__(self, kind: ErrorKind, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.field = field

    @property
    def status_code(self) -> int:
        return ERROR_STATUS[self.kind]

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.kind.value, "field": self.field}


class ErrorMessages:
    """Centralized error message constants and templates.

    Naming Convention:
    - Constants: SCREAMING_SNAKE_CASE for static messages
    - Methods: snake_case for templates that accept parameters
    """

    # ==========================================================================
    # Authentication Errors (401)
    # ==========================================================================
    INVALID_TOKEN = "Invalid authentication token."
    INVALID_TOKEN_PAYLOAD = "Invalid token payload."
    USER_NOT_FOUND_AUTH = "User not found."
    ADMIN_TOKEN_INVALID = "Invalid admin token."

    # ==========================================================================
    # Authorization Errors (403)
    # ==========================================================================
    ATTEMPT_ACCESS_DENIED = "Not authorized to access this test attempt."
    ATTEMPT_MODIFY_DENIED = "Only the participant can modify this test attempt."
    USER_ATTEMPTS_ACCESS_DENIED = "You can only view your own test attempts."
    ADMIN_REQUIRED = "Administrator access is required."
    RESULT_ACCESS_DENIED = "Not authorized to access this test result."

    # ==========================================================================
    # Not Found Errors (404)
    # ==========================================================================
    TEST_NOT_FOUND = "Test not found."
    ATTEMPT_NOT_FOUND = "Test attempt not found."
    QUESTION_NOT_FOUND = "Question does not exist or does not belong to this test."
    ANSWER_NOT_FOUND = "No answer has been recorded for this question."
    SESSION_NOT_FOUND = "Test session not found."
    USER_NOT_FOUND = "User not found."
    RESULT_NOT_FOUND = "Test result not found."

    # ==========================================================================
    # Bad Request Errors (400)
    # ==========================================================================
    TEST_INACTIVE = "This test is not currently available."
    SESSION_CODE_INVALID = "Session code is invalid."
    TEST_NOT_IN_SESSION = "This test is not part of the selected session."
    SESSION_NOT_ACTIVE = "This session is not currently active."
    ATTEMPT_NOT_ACTIVE = (
        "This attempt is no longer active and cannot be modified."
    )
    ATTEMPT_ALREADY_FINISHED = "This attempt has already been finished."
    ATTEMPT_NOT_COMPLETED = "Results are only available for completed attempts."

    # ==========================================================================
    # Server Errors (500)
    # ==========================================================================
    TEST_DATA_MISSING = "Test data for this attempt is missing."
    ATTEMPT_START_CONFLICT = (
        "Another request started this test at the same time. Please try again."
    )
    ANSWER_SAVE_CONFLICT = "The answer could not be saved. Please try again."
    ADMIN_TOKEN_NOT_CONFIGURED = "Admin token not configured on server."
    INTERNAL_ERROR = "An unexpected error occurred. Please try again later."

    # ==========================================================================
    # Template Methods for Dynamic Messages
    # ==========================================================================
    @staticmethod
    def invalid_status_transition(current: str, requested: str) -> str:
        """Message for a status edge missing from the transition table."""
        return f"Cannot change attempt status from '{current}' to '{requested}'."

    @staticmethod
    def invalid_progress(answered: int, total: int) -> str:
        """Message when the answered count exceeds the question count."""
        return (
            f"Questions answered ({answered}) cannot exceed "
            f"total questions ({total})."
        )

    @staticmethod
    def status_changed_concurrently(status_value: str) -> str:
        """Message when a conditional update lost a race."""
        return (
            f"The attempt changed while this request was processed "
            f"(now '{status_value}'). Please reload and try again."
        )


# ==============================================================================
# HTTPException Builder Functions
# ==============================================================================


def raise_unauthorized(
    detail: str,
    include_www_authenticate: bool = True,
) -> NoReturn:
    """Raise a 401 Unauthorized exception.

    Args:
        detail: User-facing error message
        include_www_authenticate: Whether to include WWW-Authenticate header

    Raises:
        HTTPException: 401 Unauthorized
    """
    headers = {"WWW-Authenticate": "Bearer"} if include_www_authenticate else None
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers=headers,
    )


def raise_not_configured(detail: str) -> NoReturn:
    """Raise a 500 error for missing server configuration.

    Raises:
        HTTPException: 500 Internal Server Error
    """
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=detail,
    )
