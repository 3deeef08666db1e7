"""
Exam Definition Service.

Authoring and querying exams. Drafts are validated here before anything
is persisted; review status changes live in ExamReviewService.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.config.settings import settings
from exam_engine.errors import (
    ValidationError, ForbiddenError, NotFoundError, InvalidStateError
)
from exam_engine.integrations.course_directory import CourseDirectory
from exam_engine.integrations.notification_sink import NotificationSink
from exam_engine.orm.exam import (
    Exam, ExamStatus, QuestionType, Difficulty, DEFAULT_ANTI_CHEAT
)
from exam_engine.orm.exam_attempt import ExamAttempt, AttemptStatus
from exam_engine.orm.reattempt_request import ExamReAttemptRequest, ReAttemptStatus
from exam_engine.orm.roles import UserRole, AUTHOR_ROLES
from exam_engine.services import notifications

logger = logging.getLogger(__name__)

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 200
TIME_LIMIT_MIN = 5
TIME_LIMIT_MAX = 300

# Draft keys an author may set; everything else on the row is engine-owned
DRAFT_FIELDS = (
    "title", "description", "questions", "time_limit", "passing_score",
    "max_attempts", "shuffle_questions", "randomize_options",
    "questions_per_attempt", "available_from", "available_until",
    "anti_cheat", "show_results_immediately", "show_correct_answers",
)


def _as_naive_utc(value: Any, field_name: str, errors: List[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            errors.append(f"{field_name} must be an ISO 8601 datetime")
            return None
    if not isinstance(value, datetime):
        errors.append(f"{field_name} must be a datetime")
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _as_int(value: Any, field_name: str, errors: List[str]) -> Optional[int]:
    if isinstance(value, bool):
        errors.append(f"{field_name} must be an integer")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"{field_name} must be an integer")
        return None


def _validate_question(index: int, raw: Dict[str, Any], errors: List[str]) -> Dict[str, Any]:
    label = f"questions[{index}]"
    question_text = (raw.get("question_text") or "").strip()
    if not question_text:
        errors.append(f"{label}: question text is required")

    try:
        question_type = QuestionType(raw.get("type"))
    except ValueError:
        errors.append(f"{label}: type must be mcq, short_answer or essay")
        question_type = None

    points = _as_int(raw.get("points"), f"{label}.points", errors)
    if points is not None and points < 1:
        errors.append(f"{label}: points must be at least 1")

    try:
        difficulty = Difficulty(raw.get("difficulty") or Difficulty.MEDIUM.value)
    except ValueError:
        errors.append(f"{label}: difficulty must be easy, medium or hard")
        difficulty = Difficulty.MEDIUM

    question = {
        "id": str(raw.get("id") or uuid.uuid4()),
        "question_text": question_text,
        "type": question_type.value if question_type else raw.get("type"),
        "points": points,
        "options": [],
        "correct_answer": None,
        "max_words": None,
        "explanation": raw.get("explanation") or None,
        "difficulty": difficulty.value,
    }

    if question_type == QuestionType.MCQ:
        options = raw.get("options") or []
        if len(options) < 2:
            errors.append(f"{label}: multiple choice questions need at least 2 options")
        question["options"] = [
            {"text": (option.get("text") or "").strip(), "is_correct": bool(option.get("is_correct"))}
            for option in options
        ]
        if any(not option["text"] for option in question["options"]):
            errors.append(f"{label}: option text is required")
        correct_count = sum(1 for option in question["options"] if option["is_correct"])
        if correct_count != 1:
            errors.append(f"{label}: multiple choice questions need exactly 1 correct option")

    elif question_type == QuestionType.SHORT_ANSWER:
        correct_answer = raw.get("correct_answer")
        question["correct_answer"] = correct_answer.strip() if isinstance(correct_answer, str) and correct_answer.strip() else None

    elif question_type == QuestionType.ESSAY:
        if raw.get("max_words") is not None:
            max_words = _as_int(raw.get("max_words"), f"{label}.max_words", errors)
            if max_words is not None and max_words < 1:
                errors.append(f"{label}: max_words must be at least 1")
            question["max_words"] = max_words

    return question


class ExamDefinitionService:
    """Creates, edits and lists exam definitions."""

    @staticmethod
    def validate_draft(draft: Dict[str, Any]) -> Dict[str, Any]:
        """
        Normalize an exam draft into column values.

        Raises ValidationError listing every problem found; nothing is
        persisted on failure.
        """
        errors: List[str] = []

        title = (draft.get("title") or "").strip()
        if not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
            errors.append(f"Title must be between {TITLE_MIN_LENGTH} and {TITLE_MAX_LENGTH} characters")

        time_limit = _as_int(draft.get("time_limit"), "time_limit", errors)
        if time_limit is not None and not TIME_LIMIT_MIN <= time_limit <= TIME_LIMIT_MAX:
            errors.append(f"Time limit must be between {TIME_LIMIT_MIN} and {TIME_LIMIT_MAX} minutes")

        passing_score = draft.get("passing_score")
        if passing_score is None:
            passing_score = settings.DEFAULT_PASSING_SCORE
        passing_score = _as_int(passing_score, "passing_score", errors)
        if passing_score is not None and not 0 <= passing_score <= 100:
            errors.append("Passing score must be between 0 and 100")

        max_attempts = draft.get("max_attempts")
        max_attempts = _as_int(1 if max_attempts is None else max_attempts, "max_attempts", errors)
        if max_attempts is not None and max_attempts < 1:
            errors.append("max_attempts must be at least 1")

        questions_per_attempt = draft.get("questions_per_attempt")
        if questions_per_attempt is not None:
            questions_per_attempt = _as_int(questions_per_attempt, "questions_per_attempt", errors)
            if questions_per_attempt is not None and questions_per_attempt < 1:
                errors.append("questions_per_attempt must be at least 1")

        available_from = _as_naive_utc(draft.get("available_from"), "available_from", errors)
        available_until = _as_naive_utc(draft.get("available_until"), "available_until", errors)
        if available_from and available_until and available_from >= available_until:
            errors.append("available_from must be before available_until")

        raw_questions = draft.get("questions") or []
        if not raw_questions:
            errors.append("At least one question is required")
        questions = [_validate_question(index, raw, errors) for index, raw in enumerate(raw_questions)]
        ids = [question["id"] for question in questions]
        if len(ids) != len(set(ids)):
            errors.append("Question ids must be unique")

        anti_cheat = dict(DEFAULT_ANTI_CHEAT)
        for key, value in (draft.get("anti_cheat") or {}).items():
            if key in anti_cheat and value is not None:
                anti_cheat[key] = bool(value)

        if errors:
            raise ValidationError(errors[0], details={"errors": errors})

        return {
            "title": title,
            "description": (draft.get("description") or "").strip() or None,
            "questions": questions,
            "time_limit": time_limit,
            "passing_score": passing_score,
            "max_attempts": max_attempts,
            "shuffle_questions": draft.get("shuffle_questions") is not False,
            "randomize_options": draft.get("randomize_options") is not False,
            "questions_per_attempt": questions_per_attempt,
            "available_from": available_from,
            "available_until": available_until,
            "anti_cheat": anti_cheat,
            "show_results_immediately": bool(draft.get("show_results_immediately")),
            "show_correct_answers": bool(draft.get("show_correct_answers")),
        }

    @classmethod
    async def create_exam(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        course_id: str,
        author_id: str,
        author_role: UserRole,
        draft: Dict[str, Any],
        save_as_draft: bool = False
    ) -> Exam:
        """
        Persist a new exam.

        Admin-authored exams are approved and published immediately.
        Teacher-authored exams go straight to pending_review (admins are
        notified) unless saved as a draft.
        """
        if author_role not in AUTHOR_ROLES:
            raise ForbiddenError("Only teachers and admins can create exams")
        if not await directory.owns_course(author_id, course_id):
            raise ForbiddenError("You can only create exams for courses you created")

        fields = cls.validate_draft(draft)
        now = datetime.utcnow()
        exam = Exam(course_id=course_id, author_id=author_id, author_role=author_role.value, **fields)

        if author_role == UserRole.admin:
            exam.status = ExamStatus.APPROVED
            exam.is_published = True
            exam.published_at = now
            exam.published_by = author_id
        elif save_as_draft:
            exam.status = ExamStatus.DRAFT
        else:
            exam.status = ExamStatus.PENDING_REVIEW
            exam.submitted_for_review_at = now

        db.add(exam)
        await db.commit()
        logger.info(
            f"[EXAM CREATED] exam={exam.id} course={course_id} author={author_id} "
            f"status={exam.status.value} total_points={exam.total_points}"
        )

        if exam.status == ExamStatus.PENDING_REVIEW:
            admins = await notifications.resolve_recipients(directory.list_admins(), "admins")
            await notifications.dispatch(sink, [
                notifications.review_requested(exam, admin_id, author_id)
                for admin_id in admins if admin_id != author_id
            ])

        return exam

    @classmethod
    async def update_draft(
        cls,
        db: AsyncSession,
        exam_id: str,
        author_id: str,
        changes: Dict[str, Any]
    ) -> Exam:
        """Edit a draft. Anything past draft is frozen."""
        exam = await cls.get_exam(db, exam_id)
        if exam.author_id != author_id:
            raise ForbiddenError("Only the author can edit this exam")
        if exam.status != ExamStatus.DRAFT:
            raise InvalidStateError(
                f"Only draft exams can be edited (status is '{exam.status.value}')",
                details={"current_status": exam.status.value},
            )

        merged = {name: getattr(exam, name) for name in DRAFT_FIELDS}
        merged.update({name: value for name, value in changes.items() if name in DRAFT_FIELDS})
        fields = cls.validate_draft(merged)

        for name, value in fields.items():
            setattr(exam, name, value)
        await db.commit()
        logger.info(f"[EXAM UPDATED] exam={exam.id} total_points={exam.total_points}")
        return exam

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    async def get_exam(db: AsyncSession, exam_id: str) -> Exam:
        # Status and statistics are written with conditional updates
        result = await db.execute(
            select(Exam).where(Exam.id == exam_id).execution_options(populate_existing=True)
        )
        exam = result.scalar_one_or_none()
        if not exam:
            raise NotFoundError("Exam", exam_id)
        return exam

    @classmethod
    async def get_exam_for_viewer(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        exam_id: str,
        viewer_id: str,
        viewer_role: UserRole
    ) -> Dict[str, Any]:
        """Answer keys are only shown to the author, the course creator and admins."""
        exam = await cls.get_exam(db, exam_id)
        if viewer_role == UserRole.admin or exam.author_id == viewer_id:
            return exam.to_dict()
        if viewer_role == UserRole.student:
            if not exam.is_available or not await directory.is_enrolled(viewer_id, exam.course_id):
                raise NotFoundError("Exam", exam_id)
            return exam.to_dict(include_answer_key=False)
        if not await directory.owns_course(viewer_id, exam.course_id):
            raise ForbiddenError("You can only view exams of courses you created")
        return exam.to_dict()

    @staticmethod
    async def list_author_exams(
        db: AsyncSession,
        author_id: str,
        status: Optional[ExamStatus] = None,
        course_id: Optional[str] = None,
        is_published: Optional[bool] = None
    ) -> List[Exam]:
        query = select(Exam).where(Exam.author_id == author_id)
        if status is not None:
            query = query.where(Exam.status == status)
        if course_id is not None:
            query = query.where(Exam.course_id == course_id)
        if is_published is not None:
            query = query.where(Exam.is_published == is_published)
        result = await db.execute(query.order_by(Exam.created_at.desc()))
        return list(result.scalars().all())

    @staticmethod
    async def list_pending_review(db: AsyncSession) -> List[Exam]:
        result = await db.execute(
            select(Exam)
            .where(Exam.status == ExamStatus.PENDING_REVIEW)
            .order_by(Exam.submitted_for_review_at.asc())
        )
        return list(result.scalars().all())

    @classmethod
    async def list_available_exams(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        student_id: str,
        course_ids: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Approved, published, in-window exams of courses the student is enrolled in."""
        now = datetime.utcnow()
        query = select(Exam).where(Exam.status == ExamStatus.APPROVED, Exam.is_published.is_(True))
        if course_ids:
            query = query.where(Exam.course_id.in_(course_ids))
        result = await db.execute(query.order_by(Exam.published_at.desc()))
        exams = [exam for exam in result.scalars().all() if exam.in_window(now)]

        enrolled: Dict[str, bool] = {}
        for course_id in {exam.course_id for exam in exams}:
            enrolled[course_id] = await directory.is_enrolled(student_id, course_id)
        exams = [exam for exam in exams if enrolled.get(exam.course_id)]
        if not exams:
            return []

        exam_ids = [exam.id for exam in exams]
        attempts_result = await db.execute(
            select(ExamAttempt).where(
                ExamAttempt.student_id == student_id,
                ExamAttempt.exam_id.in_(exam_ids)
            )
        )
        attempts_by_exam: Dict[str, List[ExamAttempt]] = {}
        for attempt in attempts_result.scalars().all():
            attempts_by_exam.setdefault(attempt.exam_id, []).append(attempt)

        grants_result = await db.execute(
            select(ExamReAttemptRequest.exam_id).where(
                ExamReAttemptRequest.student_id == student_id,
                ExamReAttemptRequest.exam_id.in_(exam_ids),
                ExamReAttemptRequest.status == ReAttemptStatus.APPROVED,
                ExamReAttemptRequest.new_attempt_granted.is_(True),
                ExamReAttemptRequest.new_attempt_used.is_(False)
            )
        )
        exams_with_grant = set(grants_result.scalars().all())

        available = []
        for exam in exams:
            attempts = attempts_by_exam.get(exam.id, [])
            in_progress = next((a for a in attempts if a.status == AttemptStatus.IN_PROGRESS), None)
            latest = max(attempts, key=lambda a: a.attempt_number) if attempts else None
            data = exam.to_dict(include_answer_key=False)
            data.pop("questions")
            data["question_count"] = len(exam.questions or [])
            data["attempt_summary"] = {
                "attempt_count": len(attempts),
                "latest_status": latest.status.value if latest else None,
                "in_progress_attempt_id": in_progress.id if in_progress else None,
                "has_reattempt_grant": exam.id in exams_with_grant,
            }
            data["can_attempt"] = in_progress is not None or not attempts or exam.id in exams_with_grant
            available.append(data)
        return available

    @classmethod
    async def list_course_exams(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        course_id: str,
        viewer_id: str,
        viewer_role: UserRole
    ) -> List[Dict[str, Any]]:
        """Students see live exams without answer keys; the course creator and admins see everything."""
        query = select(Exam).where(Exam.course_id == course_id)

        if viewer_role == UserRole.student:
            if not await directory.is_enrolled(viewer_id, course_id):
                raise ForbiddenError("You are not enrolled in this course")
            result = await db.execute(
                query.where(Exam.status == ExamStatus.APPROVED, Exam.is_published.is_(True))
                .order_by(Exam.published_at.desc())
            )
            return [exam.to_dict(include_answer_key=False) for exam in result.scalars().all()]

        if viewer_role != UserRole.admin and not await directory.owns_course(viewer_id, course_id):
            raise ForbiddenError("You can only view exams of courses you created")
        result = await db.execute(query.order_by(Exam.created_at.desc()))
        return [exam.to_dict() for exam in result.scalars().all()]
