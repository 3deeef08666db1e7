"""
exam_engine/errors.py
Centralized error taxonomy for the exam engine.

Every domain failure is an APIError subclass, so services can raise it and
the FastAPI app renders it without per-route try/except.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Invalid input / exam not available
- 401: Authentication missing or expired
- 403: Role, ownership, enrolment or visibility failure
- 404: Resource does not exist
- 409: Operation not legal in the current state, or conflicting request
- 422: Request body failed schema validation (Pydantic)
- 429: Rate limit exceeded
- 500: Never caused by user input
"""
import logging
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"

    FORBIDDEN = "FORBIDDEN"
    SELF_REVIEW_FORBIDDEN = "SELF_REVIEW_FORBIDDEN"
    NOT_ENROLLED = "NOT_ENROLLED"
    RESULTS_NOT_PUBLISHED = "RESULTS_NOT_PUBLISHED"

    NOT_FOUND = "NOT_FOUND"

    INVALID_STATE = "INVALID_STATE"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"
    ALREADY_ATTEMPTED = "ALREADY_ATTEMPTED"
    ATTEMPT_IN_PROGRESS = "ATTEMPT_IN_PROGRESS"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"

    EXAM_UNAVAILABLE = "EXAM_UNAVAILABLE"
    EXAM_NOT_IN_WINDOW = "EXAM_NOT_IN_WINDOW"

    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model"""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Base exception for all exam engine errors"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        content = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            content["details"] = self.details
        return content


class ValidationError(APIError):
    """Malformed exam draft, grade or request; raised before anything is persisted."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="ValidationError",
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            details=details
        )


class ForbiddenError(APIError):
    """Actor lacks the role or ownership for the action."""

    def __init__(self, message: str, code: str = ErrorCode.FORBIDDEN, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code,
            details=details
        )


class ForbiddenSelfReviewError(ForbiddenError):
    """An admin tried to review an exam they authored."""

    def __init__(self, message: str = "You cannot review an exam you authored"):
        super().__init__(message, code=ErrorCode.SELF_REVIEW_FORBIDDEN)


class NotEnrolledError(ForbiddenError):
    def __init__(self, message: str = "You are not enrolled in this course"):
        super().__init__(message, code=ErrorCode.NOT_ENROLLED)


class ResultsNotPublishedError(ForbiddenError):
    def __init__(self, message: str = "Results have not been published yet"):
        super().__init__(message, code=ErrorCode.RESULTS_NOT_PUBLISHED)


class NotFoundError(APIError):
    """Resource not found"""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="NotFound",
            message=message,
            code=ErrorCode.NOT_FOUND
        )


class ConflictError(APIError):
    """Base for every 409: the operation is not legal right now."""

    def __init__(self, error: str, message: str, code: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error=error,
            message=message,
            code=code,
            details=details
        )


class InvalidStateError(ConflictError):
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__("InvalidState", message, ErrorCode.INVALID_STATE, details)


class InvalidTransitionError(ConflictError):
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__("InvalidTransition", message, ErrorCode.STATE_TRANSITION_INVALID, details)


class AlreadyAttemptedError(ConflictError):
    def __init__(self, message: str = "You have already attempted this exam"):
        super().__init__("AlreadyAttempted", message, ErrorCode.ALREADY_ATTEMPTED)


class AttemptInProgressError(ConflictError):
    """Carries the id of the attempt the student should resume."""

    def __init__(self, attempt_id: str, message: str = "You already have an ongoing attempt"):
        self.attempt_id = attempt_id
        super().__init__("AttemptInProgress", message, ErrorCode.ATTEMPT_IN_PROGRESS, {"attempt_id": attempt_id})


class DuplicateRequestError(ConflictError):
    def __init__(self, message: str = "A re-attempt request already exists"):
        super().__init__("DuplicateRequest", message, ErrorCode.DUPLICATE_REQUEST)


class AlreadyReviewedError(ConflictError):
    def __init__(self, message: str = "This request has already been reviewed"):
        super().__init__("AlreadyReviewed", message, ErrorCode.ALREADY_REVIEWED)


class ExamUnavailableError(APIError):
    def __init__(self, message: str = "Exam is not available"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="ExamUnavailable",
            message=message,
            code=ErrorCode.EXAM_UNAVAILABLE
        )


class ExamNotInWindowError(APIError):
    def __init__(self, message: str = "Exam is not available at this time"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="ExamNotInWindow",
            message=message,
            code=ErrorCode.EXAM_NOT_IN_WINDOW
        )
