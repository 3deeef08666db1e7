"""
Grading & Publication Service.

Manual grading and score publication are restricted to the course
creator. Until a score is published the student's results view is closed;
the check lives in `get_results`, not in the UI.
"""
import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.errors import (
    ForbiddenError, InvalidStateError, ValidationError, ResultsNotPublishedError
)
from exam_engine.integrations.course_directory import CourseDirectory
from exam_engine.integrations.notification_sink import NotificationSink
from exam_engine.orm.exam_attempt import (
    ExamAttempt, AttemptStatus, GradingStatus, score_fields, sum_answer_points
)
from exam_engine.services import notifications
from exam_engine.services.attempt_service import AttemptService, StatisticsScheduler
from exam_engine.services.exam_definition_service import ExamDefinitionService
from exam_engine.services.grading import derive_grading_status, publish_values, scores_for
from exam_engine.services.snapshot import ExamSnapshot
from exam_engine.services.statistics_service import StatisticsService

logger = logging.getLogger(__name__)

FEEDBACK_MAX_LENGTH = 1000


class GradingService:

    @staticmethod
    async def _load_for_reviewer(
        db: AsyncSession,
        directory: CourseDirectory,
        attempt_id: str,
        reviewer_id: str
    ) -> ExamAttempt:
        attempt = await AttemptService.get_attempt(db, attempt_id, fresh=True)
        exam = await ExamDefinitionService.get_exam(db, attempt.exam_id)
        if not await directory.owns_course(reviewer_id, exam.course_id):
            raise ForbiddenError("Only the course creator can grade this attempt")
        return attempt

    @staticmethod
    def _check_feedback(feedback: Optional[str]) -> Optional[str]:
        feedback = (feedback or "").strip() or None
        if feedback and len(feedback) > FEEDBACK_MAX_LENGTH:
            raise ValidationError(f"Feedback must be at most {FEEDBACK_MAX_LENGTH} characters")
        return feedback

    @classmethod
    async def grade_answers(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        attempt_id: str,
        reviewer_id: str,
        grades: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Record manual scores per answer.

        Each grade is {question_id, score, feedback?}; score must lie within
        the answer's max points. The raw total and grading status are
        recomputed; publication is a separate step.
        """
        attempt = await cls._load_for_reviewer(db, directory, attempt_id, reviewer_id)
        if attempt.status != AttemptStatus.SUBMITTED or attempt.score_published:
            raise InvalidStateError("Only submitted, unpublished attempts can be graded")
        if not grades:
            raise ValidationError("At least one grade is required")

        answers = copy.deepcopy(attempt.answers or [])
        by_question = {answer["question_id"]: answer for answer in answers}
        now = datetime.utcnow()

        for grade in grades:
            question_id = grade.get("question_id")
            answer = by_question.get(question_id)
            if answer is None:
                raise ValidationError(f"No answer recorded for question '{question_id}'")
            try:
                score = float(grade.get("score"))
            except (TypeError, ValueError):
                raise ValidationError(f"Score for question '{question_id}' must be a number")
            if not 0 <= score <= answer["max_points"]:
                raise ValidationError(
                    f"Score for question '{question_id}' must be between 0 and {answer['max_points']}"
                )
            answer["manual_score"] = score
            answer["feedback"] = cls._check_feedback(grade.get("feedback"))
            answer["graded_by"] = reviewer_id
            answer["graded_at"] = now.isoformat()

        grading_status = derive_grading_status(answers)
        scores = score_fields(sum_answer_points(answers), attempt.exam_snapshot)

        result = await db.execute(
            update(ExamAttempt)
            .where(
                ExamAttempt.id == attempt_id,
                ExamAttempt.status == AttemptStatus.SUBMITTED,
                ExamAttempt.score_published.is_(False),
                ExamAttempt.version == attempt.version
            )
            .values(
                answers=answers,
                grading_status=grading_status,
                version=attempt.version + 1,
                updated_at=now,
                **scores
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise InvalidStateError("Attempt changed while grading, reload and try again")
        await db.commit()
        await db.refresh(attempt)

        logger.info(
            f"[ANSWERS GRADED] attempt={attempt_id} reviewer={reviewer_id} graded={len(grades)} "
            f"total={scores['total_score']} status={grading_status.value}"
        )
        data = attempt.to_dict()
        data["answers"] = attempt.answers
        return data

    @classmethod
    async def publish_score(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        attempt_id: str,
        reviewer_id: str,
        final_score: Optional[float] = None,
        feedback: Optional[str] = None,
        schedule_statistics: Optional[StatisticsScheduler] = None
    ) -> Dict[str, Any]:
        """
        Publish the final score and open the results view to the student.

        `final_score` defaults to the current raw total. Publishing again
        replaces the previous final values.
        """
        attempt = await cls._load_for_reviewer(db, directory, attempt_id, reviewer_id)
        if attempt.status != AttemptStatus.SUBMITTED:
            raise InvalidStateError(
                f"Only submitted attempts can be published (status is '{attempt.status.value}')",
                details={"current_status": attempt.status.value},
            )

        snapshot = ExamSnapshot.from_dict(attempt.exam_snapshot)
        if final_score is None:
            final_score = attempt.total_score or 0.0
        final_score = float(final_score)
        if not 0 <= final_score <= snapshot.total_points:
            raise ValidationError(f"Final score must be between 0 and {snapshot.total_points}")
        feedback = cls._check_feedback(feedback)

        published = publish_values(final_score, snapshot)
        now = datetime.utcnow()
        result = await db.execute(
            update(ExamAttempt)
            .where(ExamAttempt.id == attempt_id, ExamAttempt.status == AttemptStatus.SUBMITTED)
            .values(
                final_score=published.final_score,
                final_percentage=published.final_percentage,
                final_passed=published.final_passed,
                score_published=True,
                published_at=now,
                published_by=reviewer_id,
                instructor_feedback=feedback,
                grading_status=GradingStatus.FULLY_GRADED,
                version=ExamAttempt.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise InvalidStateError("Attempt is no longer submitted")
        await db.commit()
        await db.refresh(attempt)

        logger.info(
            f"[SCORE PUBLISHED] attempt={attempt_id} reviewer={reviewer_id} "
            f"final={published.final_score} percentage={published.final_percentage} passed={published.final_passed}"
        )
        await notifications.dispatch(sink, [notifications.score_published(attempt, reviewer_id)])

        if schedule_statistics is not None:
            schedule_statistics(attempt.exam_id)
        else:
            await StatisticsService.recompute_safely(db, attempt.exam_id)

        return {
            "attempt_id": attempt_id,
            "final_score": published.final_score,
            "final_percentage": published.final_percentage,
            "final_passed": published.final_passed,
            "published_at": now.isoformat(),
        }

    @staticmethod
    async def get_results(db: AsyncSession, attempt_id: str, student_id: str) -> Dict[str, Any]:
        """
        Detailed results for the attempt's owner, once published.

        Score fields are the published ones; raw values are only used where
        no final value exists.
        """
        attempt = await AttemptService.get_attempt(db, attempt_id, fresh=True)
        if attempt.student_id != student_id:
            raise ForbiddenError("You can only view your own results")
        scores = scores_for(attempt)
        if not scores.is_published:
            raise ResultsNotPublishedError()

        snapshot = ExamSnapshot.from_dict(attempt.exam_snapshot)
        answers = {answer["question_id"]: answer for answer in attempt.answers or []}
        question_results = []
        for question in snapshot.questions:
            answer = answers.get(question.id) or {}
            awarded = answer.get("manual_score")
            if awarded is None:
                awarded = answer.get("points", 0)
            question_results.append({
                "question_id": question.id,
                "question_text": question.question_text,
                "type": question.type.value,
                "points": question.points,
                "options": [{"text": option.text, "is_correct": option.is_correct} for option in question.options],
                "correct_option": question.correct_option_index,
                "correct_answer": question.correct_answer,
                "explanation": question.explanation,
                "answered": bool(answer),
                "selected_option": answer.get("selected_option"),
                "text_answer": answer.get("text_answer"),
                "points_awarded": awarded,
                "is_correct": bool(answer.get("is_correct")),
                "feedback": answer.get("feedback"),
            })

        visible = scores.visible()
        return {
            "attempt_id": attempt.id,
            "exam_id": attempt.exam_id,
            "exam_title": snapshot.title,
            "attempt_number": attempt.attempt_number,
            "score": visible["score"],
            "percentage": visible["percentage"],
            "passed": visible["passed"],
            "total_points": snapshot.total_points,
            "passing_score": snapshot.passing_score,
            "instructor_feedback": scores.published.feedback,
            "published_at": scores.published.published_at.isoformat() if scores.published.published_at else None,
            "submitted_at": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
            "time_spent": attempt.time_spent,
            "submission_method": attempt.submission_method.value if attempt.submission_method else None,
            "is_timed_out": attempt.is_timed_out,
            "terminated_due_to_violation": attempt.terminated_due_to_violation,
            "termination_reason": attempt.termination_reason,
            "violations": attempt.violations or [],
            "question_results": question_results,
        }
