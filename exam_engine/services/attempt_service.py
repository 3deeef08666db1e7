"""
Attempt Service.

Starts and submits attempts, and answers the attempt queries used by
students and reviewers.

Concurrency:
- at most one in_progress attempt per (exam, student) is guaranteed by a
  partial unique index; a losing concurrent start surfaces as
  AttemptInProgressError carrying the winner's id
- consuming a re-attempt grant is a conditional UPDATE in the same
  transaction as the attempt INSERT
- submit is a conditional UPDATE on status = in_progress; the first
  finalizer wins and later ones get InvalidStateError
"""
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.errors import (
    ForbiddenError, NotFoundError, InvalidStateError, AlreadyAttemptedError,
    AttemptInProgressError, ExamUnavailableError, ExamNotInWindowError,
    NotEnrolledError
)
from exam_engine.integrations.course_directory import CourseDirectory
from exam_engine.integrations.notification_sink import NotificationSink
from exam_engine.orm.exam import Exam
from exam_engine.orm.exam_attempt import (
    ExamAttempt, AttemptStatus, SubmissionMethod, score_fields
)
from exam_engine.orm.reattempt_request import ExamReAttemptRequest, ReAttemptStatus
from exam_engine.orm.roles import UserRole
from exam_engine.services import notifications
from exam_engine.services.exam_definition_service import ExamDefinitionService
from exam_engine.services.grading import grade_submission
from exam_engine.services.snapshot import ExamSnapshot, build_snapshot
from exam_engine.services.statistics_service import StatisticsService
from exam_engine.state_machines.attempt_lifecycle import ensure_transition

logger = logging.getLogger(__name__)

# Called with an exam id once a submission has committed
StatisticsScheduler = Callable[[str], Any]


class GrantAlreadyConsumed(Exception):
    """Internal: the grant was used by a concurrent start."""


class AttemptService:

    # =========================================================================
    # Loading
    # =========================================================================

    @staticmethod
    async def get_attempt(db: AsyncSession, attempt_id: str, fresh: bool = False) -> ExamAttempt:
        query = select(ExamAttempt).where(ExamAttempt.id == attempt_id)
        if fresh:
            query = query.execution_options(populate_existing=True)
        result = await db.execute(query)
        attempt = result.scalar_one_or_none()
        if not attempt:
            raise NotFoundError("Attempt", attempt_id)
        return attempt

    @staticmethod
    async def _find_in_progress(db: AsyncSession, exam_id: str, student_id: str) -> Optional[ExamAttempt]:
        result = await db.execute(
            select(ExamAttempt).where(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.student_id == student_id,
                ExamAttempt.status == AttemptStatus.IN_PROGRESS
            ).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_unused_grant(db: AsyncSession, exam_id: str, student_id: str) -> Optional[ExamReAttemptRequest]:
        result = await db.execute(
            select(ExamReAttemptRequest).where(
                ExamReAttemptRequest.exam_id == exam_id,
                ExamReAttemptRequest.student_id == student_id,
                ExamReAttemptRequest.status == ReAttemptStatus.APPROVED,
                ExamReAttemptRequest.new_attempt_granted.is_(True),
                ExamReAttemptRequest.new_attempt_used.is_(False)
            ).order_by(ExamReAttemptRequest.reviewed_at.asc()).limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def resolve_course_creator(directory: CourseDirectory, exam: Exam) -> Optional[str]:
        """Course creator, falling back to the exam author when the directory has no answer."""
        creator_id = await directory.get_course_creator(exam.course_id)
        return creator_id or exam.author_id

    # =========================================================================
    # Start
    # =========================================================================

    @classmethod
    async def start_attempt(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        exam_id: str,
        student_id: str,
        student_role: UserRole = UserRole.student,
        client_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        rng: Optional[random.Random] = None
    ) -> Dict[str, Any]:
        """
        Start a timed attempt against a frozen snapshot of the exam.

        Checks, in order: student role, exam live, availability window,
        enrolment, existing in_progress attempt (reported with its id),
        prior attempts (need an approved, unused re-attempt grant).
        """
        if student_role != UserRole.student:
            raise ForbiddenError("Only students can take exams")

        exam = await ExamDefinitionService.get_exam(db, exam_id)
        if not exam.is_available:
            raise ExamUnavailableError()
        if not exam.in_window(datetime.utcnow()):
            raise ExamNotInWindowError()
        if not await directory.is_enrolled(student_id, exam.course_id):
            raise NotEnrolledError()

        in_progress = await cls._find_in_progress(db, exam_id, student_id)
        if in_progress:
            raise AttemptInProgressError(in_progress.id)

        count_result = await db.execute(
            select(func.count()).select_from(ExamAttempt).where(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.student_id == student_id
            )
        )
        prior_attempts = count_result.scalar() or 0

        grant = None
        if prior_attempts:
            grant = await cls._find_unused_grant(db, exam_id, student_id)
            if not grant:
                raise AlreadyAttemptedError()

        snapshot = build_snapshot(exam, rng)
        now = datetime.utcnow()
        attempt = ExamAttempt(
            exam_id=exam_id,
            student_id=student_id,
            attempt_number=prior_attempts + 1,
            exam_snapshot=snapshot.to_dict(),
            status=AttemptStatus.IN_PROGRESS,
            started_at=now,
            answers=[],
            violations=[],
            client_info=client_info or None,
            ip_address=ip_address,
        )
        grant_id = grant.id if grant else None

        try:
            db.add(attempt)
            await db.flush()
            if grant_id:
                consumed = await db.execute(
                    update(ExamReAttemptRequest)
                    .where(
                        ExamReAttemptRequest.id == grant_id,
                        ExamReAttemptRequest.new_attempt_used.is_(False)
                    )
                    .values(new_attempt_used=True, new_attempt_id=attempt.id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if consumed.rowcount != 1:
                    raise GrantAlreadyConsumed(grant_id)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await cls._find_in_progress(db, exam_id, student_id)
            if existing:
                logger.info(f"[ATTEMPT START RACE] exam={exam_id} student={student_id} resume={existing.id}")
                raise AttemptInProgressError(existing.id)
            raise AlreadyAttemptedError()
        except GrantAlreadyConsumed:
            await db.rollback()
            logger.warning(f"[GRANT ALREADY USED] grant={grant_id} student={student_id}")
            raise AlreadyAttemptedError()

        logger.info(
            f"[ATTEMPT STARTED] attempt={attempt.id} exam={exam_id} student={student_id} "
            f"number={attempt.attempt_number} grant={grant_id}"
        )
        return {
            "attempt_id": attempt.id,
            "attempt_number": attempt.attempt_number,
            "exam_id": exam_id,
            "title": snapshot.title,
            "time_limit": snapshot.time_limit,
            "total_points": snapshot.total_points,
            "started_at": attempt.started_at.isoformat(),
            "questions": snapshot.redacted_questions(),
            "anti_cheat": dict(exam.anti_cheat or {}),
        }

    # =========================================================================
    # Submit
    # =========================================================================

    @classmethod
    async def submit_attempt(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        attempt_id: str,
        student_id: str,
        answers: List[Dict[str, Any]],
        schedule_statistics: Optional[StatisticsScheduler] = None
    ) -> Dict[str, Any]:
        """
        Grade and finalize an attempt.

        Late submissions are accepted and flagged as timed out. Grading reads
        only the snapshot. The course creator is notified for every
        submission; statistics are refreshed after the response path.
        """
        attempt = await cls.get_attempt(db, attempt_id, fresh=True)
        if attempt.student_id != student_id:
            raise ForbiddenError("This attempt belongs to another student")
        ensure_transition(attempt.status, AttemptStatus.SUBMITTED)

        snapshot = ExamSnapshot.from_dict(attempt.exam_snapshot)
        now = datetime.utcnow()
        time_spent = max(0, int((now - attempt.started_at).total_seconds()))
        is_timed_out = time_spent > snapshot.time_limit_seconds
        outcome = grade_submission(snapshot, answers)
        scores = score_fields(outcome.total_score, attempt.exam_snapshot)

        result = await db.execute(
            update(ExamAttempt)
            .where(ExamAttempt.id == attempt_id, ExamAttempt.status == AttemptStatus.IN_PROGRESS)
            .values(
                status=AttemptStatus.SUBMITTED,
                submitted_at=now,
                time_spent=time_spent,
                answers=outcome.answers,
                grading_status=outcome.grading_status,
                is_timed_out=is_timed_out,
                submission_method=SubmissionMethod.AUTO_TIMEOUT if is_timed_out else SubmissionMethod.MANUAL,
                version=ExamAttempt.version + 1,
                updated_at=now,
                **scores
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(f"[SUBMIT REJECTED] attempt={attempt_id} already finalized")
            raise InvalidStateError("Attempt is no longer in progress")
        await db.commit()
        await db.refresh(attempt)

        logger.info(
            f"[ATTEMPT SUBMITTED] attempt={attempt_id} score={scores['total_score']} "
            f"percentage={scores['percentage']} timed_out={is_timed_out} grading={outcome.grading_status.value}"
        )

        await cls.after_finalize(db, directory, sink, attempt, schedule_statistics)

        return {
            "attempt_id": attempt_id,
            "total_score": scores["total_score"],
            "percentage": scores["percentage"],
            "passed": scores["passed"],
            "needs_manual_grading": outcome.needs_manual_grading,
            "grading_status": outcome.grading_status.value,
            "is_timed_out": is_timed_out,
            "time_spent": time_spent,
        }

    @classmethod
    async def after_finalize(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        attempt: ExamAttempt,
        schedule_statistics: Optional[StatisticsScheduler] = None,
        extra_builders: Optional[List[Callable]] = None
    ) -> None:
        """
        Post-commit work shared by manual, timeout and violation finalization:
        notify the course creator, then refresh exam statistics.

        `extra_builders` are notification builders called as
        builder(attempt, exam, creator_id) and emitted before the standard
        submission-review event.

        The attempt is already committed; nothing here may raise.
        """
        try:
            exam = await db.get(Exam, attempt.exam_id)
            if exam is not None:
                creator_id = await cls.resolve_course_creator(directory, exam)
                builders = list(extra_builders or []) + [notifications.submission_review]
                await notifications.dispatch(sink, [builder(attempt, exam, creator_id) for builder in builders])
        except Exception as e:
            logger.error(
                f"[FINALIZE NOTIFY FAILED] attempt={attempt.id}: {type(e).__name__}: {e}",
                exc_info=True
            )

        if schedule_statistics is not None:
            schedule_statistics(attempt.exam_id)
        else:
            await StatisticsService.recompute_safely(db, attempt.exam_id)

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    async def get_attempt_for_review(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        attempt_id: str,
        reviewer_id: str
    ) -> Dict[str, Any]:
        """Full attempt, snapshot and answers included; course creator only."""
        attempt = await cls.get_attempt(db, attempt_id)
        exam = await ExamDefinitionService.get_exam(db, attempt.exam_id)
        if not await directory.owns_course(reviewer_id, exam.course_id):
            raise ForbiddenError("Only the course creator can review this attempt")

        data = attempt.to_dict()
        data.update({
            "course_id": exam.course_id,
            "exam_snapshot": attempt.exam_snapshot,
            "answers": attempt.answers or [],
            "violations": attempt.violations or [],
            "client_info": attempt.client_info,
            "ip_address": attempt.ip_address,
        })
        return data

    @staticmethod
    async def list_pending_review_attempts(
        db: AsyncSession,
        directory: CourseDirectory,
        reviewer_id: str
    ) -> List[Dict[str, Any]]:
        """Submitted, unpublished attempts of exams in courses the reviewer created."""
        course_ids = await directory.list_courses_created_by(reviewer_id)
        if not course_ids:
            return []
        result = await db.execute(
            select(ExamAttempt, Exam.course_id)
            .join(Exam, Exam.id == ExamAttempt.exam_id)
            .where(
                Exam.course_id.in_(course_ids),
                ExamAttempt.status == AttemptStatus.SUBMITTED,
                ExamAttempt.score_published.is_(False)
            )
            .order_by(ExamAttempt.submitted_at.desc())
        )
        pending = []
        for attempt, course_id in result.all():
            data = attempt.to_dict()
            data["course_id"] = course_id
            pending.append(data)
        return pending

    @staticmethod
    async def list_student_attempts(
        db: AsyncSession,
        student_id: str,
        exam_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """A student's own attempts; scores only once published."""
        query = select(ExamAttempt).where(ExamAttempt.student_id == student_id)
        if exam_id is not None:
            query = query.where(ExamAttempt.exam_id == exam_id)
        result = await db.execute(query.order_by(ExamAttempt.started_at.desc()))
        return [attempt.to_dict(include_scores=bool(attempt.score_published)) for attempt in result.scalars().all()]
