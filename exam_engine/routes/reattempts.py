"""
exam_engine/routes/reattempts.py
Re-attempt requests: students ask, exam creators decide.
"""
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.config.settings import settings
from exam_engine.database import get_db
from exam_engine.integrations import CourseDirectory, NotificationSink, get_course_directory
from exam_engine.limiter import limiter
from exam_engine.routes.dependencies import get_request_notification_sink
from exam_engine.orm.reattempt_request import ReAttemptStatus, ReAttemptViolationType, ContactReason, RequestPriority
from exam_engine.orm.roles import UserRole
from exam_engine.rbac import CurrentUser, require_role
from exam_engine.services.reattempt_service import ReAttemptService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reattempts", tags=["Re-attempts"])


# =============================================================================
# Pydantic Models
# =============================================================================

class ReAttemptRequestBody(BaseModel):
    original_attempt_id: str = Field(..., min_length=1)
    violation_type: ReAttemptViolationType
    violation_details: str = Field(..., min_length=1, max_length=2000)
    student_message: str = Field(..., min_length=1, max_length=settings.STUDENT_MESSAGE_MAX_LENGTH)
    evidence: Optional[str] = Field(None, max_length=2000)
    priority: RequestPriority = RequestPriority.MEDIUM

    @field_validator('violation_type')
    def validate_violation_type(cls, v):
        if v == ReAttemptViolationType.CONTACT_CREATOR:
            raise ValueError('Use /api/reattempts/contact-creator to contact the exam creator')
        return v


class ContactCreatorBody(BaseModel):
    exam_id: str = Field(..., min_length=1)
    reason: ContactReason
    message: str = Field(..., min_length=20, max_length=settings.STUDENT_MESSAGE_MAX_LENGTH)


class ReviewReAttemptBody(BaseModel):
    action: str = Field(..., description="approve or reject")
    response: Optional[str] = Field(None, max_length=300)

    @field_validator('action')
    def validate_action(cls, v):
        if v not in ('approve', 'reject'):
            raise ValueError('Action must be approve or reject')
        return v


# =============================================================================
# Routes
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def request_reattempt(
    request: Request,
    body: ReAttemptRequestBody,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    """Ask for another attempt after a finalized one. One request per attempt."""
    reattempt = await ReAttemptService.request_reattempt(
        db, directory, sink,
        student_id=current_user.id,
        original_attempt_id=body.original_attempt_id,
        violation_type=body.violation_type.value,
        violation_details=body.violation_details,
        student_message=body.student_message,
        evidence=body.evidence,
        priority=body.priority.value,
    )
    return {"success": True, "request": reattempt.to_dict(), "message": "Re-attempt request sent to the exam creator"}


@router.post("/contact-creator", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def contact_creator(
    request: Request,
    body: ContactCreatorBody,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    """Contact the exam creator without an attempt. One pending request per exam."""
    reattempt = await ReAttemptService.contact_creator(
        db, directory, sink,
        student_id=current_user.id,
        exam_id=body.exam_id,
        reason=body.reason.value,
        message=body.message,
    )
    return {"success": True, "request": reattempt.to_dict(), "message": "Message sent to the exam creator"}


@router.get("/inbox")
async def list_inbox(
    request_status: Optional[ReAttemptStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    """Requests addressed to the caller as exam creator."""
    requests = await ReAttemptService.list_creator_requests(db, current_user.id, status=request_status)
    return {"success": True, "requests": requests, "count": len(requests)}


@router.get("/mine")
async def list_my_requests(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    requests = await ReAttemptService.list_student_requests(db, current_user.id)
    return {"success": True, "requests": requests, "count": len(requests)}


@router.post("/{request_id}/review")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def review_request(
    request: Request,
    request_id: str,
    body: ReviewReAttemptBody,
    db: AsyncSession = Depends(get_db),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    """
    Approve or reject a request.

    **Roles:** the exam creator recorded on the request. Approval grants
    exactly one new attempt; rejection requires a response.
    """
    reattempt = await ReAttemptService.review_request(
        db, sink,
        request_id=request_id,
        reviewer_id=current_user.id,
        action=body.action,
        response=body.response,
    )
    return {"success": True, "request": reattempt.to_dict()}
