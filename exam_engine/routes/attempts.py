"""
exam_engine/routes/attempts.py
Attempt submission, anti-cheat reporting, grading and results endpoints.
"""
import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.config.settings import settings
from exam_engine.database import get_db
from exam_engine.integrations import CourseDirectory, NotificationSink, get_course_directory
from exam_engine.limiter import limiter
from exam_engine.routes.dependencies import get_request_notification_sink
from exam_engine.orm.exam_attempt import ViolationType
from exam_engine.orm.roles import UserRole
from exam_engine.rbac import CurrentUser, require_role
from exam_engine.services.attempt_service import AttemptService, StatisticsScheduler
from exam_engine.services.grading_service import GradingService
from exam_engine.services.statistics_service import refresh_statistics_in_background
from exam_engine.services.violation_service import ViolationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/attempts", tags=["Attempts"])


# =============================================================================
# Pydantic Models
# =============================================================================

class SubmittedAnswer(BaseModel):
    question_id: str
    selected_option: Optional[int] = Field(None, ge=0, description="Option index, as shown, for mcq")
    text_answer: Optional[str] = Field(None, max_length=20000)


class SubmitAttemptRequest(BaseModel):
    answers: List[SubmittedAnswer] = Field(default_factory=list)


class RecordViolationRequest(BaseModel):
    violation_type: ViolationType
    details: Optional[str] = Field(None, max_length=500)


class AnswerGrade(BaseModel):
    question_id: str
    score: float = Field(..., ge=0)
    feedback: Optional[str] = Field(None, max_length=1000)


class GradeAnswersRequest(BaseModel):
    grades: List[AnswerGrade] = Field(..., min_length=1)


class PublishScoreRequest(BaseModel):
    final_score: Optional[float] = Field(None, ge=0)
    feedback: Optional[str] = Field(None, max_length=1000)


# =============================================================================
# Helper Functions
# =============================================================================

def get_statistics_scheduler(background_tasks: BackgroundTasks) -> Optional[StatisticsScheduler]:
    """Dependency: defer exam statistics until the response has been sent."""
    def schedule(exam_id: str) -> None:
        background_tasks.add_task(refresh_statistics_in_background, exam_id)
    return schedule


# =============================================================================
# Queries
# =============================================================================

@router.get("/pending-review")
async def list_pending_review(
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    """Submitted attempts awaiting publication in the caller's courses."""
    attempts = await AttemptService.list_pending_review_attempts(db, directory, current_user.id)
    return {"success": True, "attempts": attempts, "count": len(attempts)}


@router.get("/mine")
async def list_my_attempts(
    exam_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    attempts = await AttemptService.list_student_attempts(db, current_user.id, exam_id=exam_id)
    return {"success": True, "attempts": attempts, "count": len(attempts)}


@router.get("/{attempt_id}/review")
async def get_attempt_for_review(
    attempt_id: str,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    attempt = await AttemptService.get_attempt_for_review(db, directory, attempt_id, current_user.id)
    return {"success": True, "attempt": attempt}


@router.get("/{attempt_id}/results")
async def get_results(
    attempt_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    """Detailed results; 403 RESULTS_NOT_PUBLISHED until the score is published."""
    results = await GradingService.get_results(db, attempt_id, current_user.id)
    return {"success": True, "results": results}


# =============================================================================
# Student Actions
# =============================================================================

@router.post("/{attempt_id}/submit")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def submit_attempt(
    request: Request,
    attempt_id: str,
    body: SubmitAttemptRequest,
    schedule_statistics: Optional[StatisticsScheduler] = Depends(get_statistics_scheduler),
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    result = await AttemptService.submit_attempt(
        db, directory, sink,
        attempt_id=attempt_id,
        student_id=current_user.id,
        answers=[answer.model_dump() for answer in body.answers],
        schedule_statistics=schedule_statistics,
    )
    return {"success": True, "submission": result}


@router.post("/{attempt_id}/violations")
async def record_violation(
    attempt_id: str,
    body: RecordViolationRequest,
    schedule_statistics: Optional[StatisticsScheduler] = Depends(get_statistics_scheduler),
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.student]))
) -> Dict[str, Any]:
    """Report an anti-cheat event. Not rate limited."""
    result = await ViolationService.record_violation(
        db, directory, sink,
        attempt_id=attempt_id,
        student_id=current_user.id,
        violation_type=body.violation_type.value,
        details=body.details,
        schedule_statistics=schedule_statistics,
    )
    return {"success": True, "violation": result}


# =============================================================================
# Grading & Publication
# =============================================================================

@router.post("/{attempt_id}/grades")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def grade_answers(
    request: Request,
    attempt_id: str,
    body: GradeAnswersRequest,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    attempt = await GradingService.grade_answers(
        db, directory, attempt_id, current_user.id,
        grades=[grade.model_dump() for grade in body.grades],
    )
    return {"success": True, "attempt": attempt}


@router.post("/{attempt_id}/publish-score")
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def publish_score(
    request: Request,
    attempt_id: str,
    schedule_statistics: Optional[StatisticsScheduler] = Depends(get_statistics_scheduler),
    body: Optional[PublishScoreRequest] = None,
    db: AsyncSession = Depends(get_db),
    directory: CourseDirectory = Depends(get_course_directory),
    sink: NotificationSink = Depends(get_request_notification_sink),
    current_user: CurrentUser = Depends(require_role([UserRole.teacher, UserRole.admin]))
) -> Dict[str, Any]:
    """Publish the final score; defaults to the current raw total."""
    body = body or PublishScoreRequest()
    result = await GradingService.publish_score(
        db, directory, sink,
        attempt_id=attempt_id,
        reviewer_id=current_user.id,
        final_score=body.final_score,
        feedback=body.feedback,
        schedule_statistics=schedule_statistics,
    )
    return {"success": True, "publication": result}
