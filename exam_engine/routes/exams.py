"""
exam_engine/routes/exams.py
Exam authoring, review and publication endpoints, plus attempt start.

Domain errors raised by the services are APIError subclasses and are
rendered by the app-level handler.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.config.settings import settings
from exam_engine.database import get_db
from exam_engine.integrations import CourseDirectory, NotificationSink, get_course_directory
from exam_engine.limiter import limiter
from exam_engine.routes.dependencies import get_request_notification_sink
from exam_engine.orm.exam import ExamStatus
from exam_engine.orm.roles import UserRole
from exam_engine.rbac import CurrentUser, get_current_user, require_role
from exam_engine.services.attempt_service import AttemptService
from exam_engine.services.exam_definition_service import ExamDefinitionService
from exam_engine.services.exam_review_service import ExamReviewService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exams", tags=["Exams"])


# =============================================================================
# Pydantic Models
# =============================================================================

class AntiCheatSettings(BaseModel):
    block_copy_paste: Optional[bool] = None
    block_tab_switching: Optional[bool] = None
    block_right_click: Optional[bool] = None
    full_screen_required: Optional[bool] = None
    webcam_required: Optional[bool] = None


class ExamDraftFields(BaseModel):
    """Shape checks only; content rules are enforced by the definition service."""
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    questions: Optional[List[Dict[str, Any]]] = None
    time_limit: Optional[int] = Field(None, description="Minutes")
    passing_score: Optional[int] = Field(None, description="Percentage")
    max_attempts: Optional[int] = None
    shuffle_questions: Optional[bool] = None
    randomize_options: Optional[bool] = None
    questions_per_attempt: Optional[int] = None
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    anti_cheat: Optional[AntiCheatSettings] = None
    show_results_immediately: Optional[bool] = None
    show_correct_answers: Optional[bool] = None

    def as_draft(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CreateExamRequest(ExamDraftFields):
    course_id: str = Field(..., min_length=1)
    title: str = Field(..., max_length=200)
    questions: List[Dict[str, Any]] = Field(default_factory=list)
    time_limit: int
    save_as_draft: bool = False

    def as_draft(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"course_id", "save_as_draft"})


class ReviewExamRequest(BaseModel):
    action: str = Field(..., description="approve or reject")
    comments: Optional[str] = Field(None, max_length=1000)

    @field_validator('action')
    def validate_action(cls, v):
        if v not in ('approve', 'reject'):
            raise ValueError('Action must be approve or reject')
        return v


class StartAttemptRequest(BaseModel):
    client_info: Optional[Dict[str, Any]] = None


# =============================================================================
# Helper Functions
# =============================================================================

def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# =============================================================================
# Authoring
# =============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def create_exam(
    request: Request,
    body: CreateExamRequest,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    """
    Create an exam for a course the caller created.

    **Roles:** teacher, admin. Admin exams go live immediately; teacher
    exams enter review unless `save_as_draft` is set.
    """
    exam = await ExamDefinitionService.create_exam(
        db, directory, sink,
        course_id=body.course_id,
        author_id=current_user.id,
        author_role=current_user.role,
        draft=body.as_draft(),
        save_as_draft=body.save_as_draft,
    )
    return {"success": True, "exam": exam.to_dict()}


@router.get("/mine")
async def list_my_exams(
    exam_status: Optional[ExamStatus] = Query(None, alias="status"),
    course_id: Optional[str] = Query(None),
    is_published: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    exams = await ExamDefinitionService.list_author_exams(
        db, current_user.id, status=exam_status, course_id=course_id, is_published=is_published
    )
    return {"success": True, "exams": [exam.to_dict() for exam in exams], "count": len(exams)}


@router.get("/pending-review")
async def list_pending_review(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.admin]))
) -> Dict[str, Any]:
    exams = await ExamDefinitionService.list_pending_review(db)
    return {"success": True, "exams": [exam.to_dict() for exam in exams], "count": len(exams)}


@router.get("/available")
async def list_available_exams(
    course_id: Optional[List[str]] = Query(None),
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    """Live exams the student can see, with their attempt summary."""
    exams = await ExamDefinitionService.list_available_exams(db, directory, current_user.id, course_ids=course_id)
    return {"success": True, "exams": exams, "count": len(exams)}


@router.get("/course/{course_id}")
async def list_course_exams(
    course_id: str,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(get_current_user)
) -> Dict[str, Any]:
    exams = await ExamDefinitionService.list_course_exams(
        db, directory, course_id, current_user.id, current_user.role
    )
    return {"success": True, "course_id": course_id, "exams": exams, "count": len(exams)}


@router.get("/{exam_id}")
async def get_exam(
    exam_id: str,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(get_current_user)
) -> Dict[str, Any]:
    exam = await ExamDefinitionService.get_exam_for_viewer(
        db, directory, exam_id, current_user.id, current_user.role
    )
    return {"success": True, "exam": exam}


@router.put("/{exam_id}")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def update_draft(
    request: Request,
    exam_id: str,
    body: ExamDraftFields,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    """Edit a draft exam. **Roles:** the author."""
    exam = await ExamDefinitionService.update_draft(db, exam_id, current_user.id, body.as_draft())
    return {"success": True, "exam": exam.to_dict()}


# =============================================================================
# Review & Publication
# =============================================================================

@router.post("/{exam_id}/submit-for-review")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def submit_for_review(
    request: Request,
    exam_id: str,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    exam = await ExamReviewService.submit_for_review(db, directory, sink, exam_id, current_user.id)
    return {"success": True, "exam": exam.to_dict(), "message": "Exam submitted for review"}


@router.post("/{exam_id}/review")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def review_exam(
    request: Request,
    exam_id: str,
    body: ReviewExamRequest,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(get_current_user)
) -> Dict[str, Any]:
    """
    Approve or reject a pending exam.

    **Roles:** admin, never the exam's author. The role check happens in the
    service so that non-admins get the same 403 envelope.
    """
    exam = await ExamReviewService.review_exam(
        db, directory, sink,
        exam_id=exam_id,
        admin_id=current_user.id,
        admin_role=current_user.role,
        action=body.action,
        comments=body.comments,
    )
    return {
        "success": True,
        "exam": exam.to_dict(),
        "message": "Exam approved and published" if body.action == "approve" else "Exam rejected",
    }


@router.post("/{exam_id}/publish")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def publish_exam(
    request: Request,
    exam_id: str,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    exam = await ExamReviewService.publish_exam(
        db, directory, sink, exam_id, current_user.id, current_user.role
    )
    return {"success": True, "exam": exam.to_dict()}


# =============================================================================
# Attempt Start
# =============================================================================

@router.post("/{exam_id}/start", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def start_attempt(
    request: Request,
    exam_id: str,
    body: Optional[StartAttemptRequest] = None,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(get_current_user)
) -> Dict[str, Any]:
    """
    Start an attempt and return the student-facing question set.

    An existing in-progress attempt is reported as 409 ATTEMPT_IN_PROGRESS
    with its id so the client can resume it.
    """
    attempt = await AttemptService.start_attempt(
        db, directory,
        exam_id=exam_id,
        student_id=current_user.id,
        student_role=current_user.role,
        client_info=body.client_info if body else None,
        ip_address=client_ip(request),
    )
    return {"success": True, "attempt": attempt}
