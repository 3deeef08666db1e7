"""
Exam Review Service.

Moves exams through the review workflow. Every transition is one
conditional UPDATE on (id, expected status); losing a race is reported
as InvalidTransitionError and nothing is emitted. Notifications go out
only after the commit.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.errors import ForbiddenError, ForbiddenSelfReviewError, InvalidTransitionError, ValidationError
from exam_engine.integrations.course_directory import CourseDirectory
from exam_engine.integrations.notification_sink import NotificationSink
from exam_engine.orm.exam import Exam, ExamStatus
from exam_engine.orm.roles import UserRole
from exam_engine.services import notifications
from exam_engine.services.exam_definition_service import ExamDefinitionService
from exam_engine.state_machines.exam_review import ExamAction, resolve_transition

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = {
    "approve": ExamAction.APPROVE,
    "reject": ExamAction.REJECT,
}


class ExamReviewService:

    @staticmethod
    async def _apply(db: AsyncSession, exam: Exam, action: ExamAction, **values) -> Exam:
        """Conditional status write; a concurrent change makes it fail as InvalidTransition."""
        expected = exam.status
        target = resolve_transition(expected, action)
        values.setdefault("updated_at", datetime.utcnow())
        result = await db.execute(
            update(Exam)
            .where(Exam.id == exam.id, Exam.status == expected)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(f"[EXAM TRANSITION LOST] exam={exam.id} action={action.value} expected={expected.value}")
            raise InvalidTransitionError(
                f"Exam changed status before '{action.value}' could be applied",
                details={"expected_status": expected.value},
            )
        await db.commit()
        await db.refresh(exam)
        return exam

    @classmethod
    async def submit_for_review(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        exam_id: str,
        actor_id: str
    ) -> Exam:
        """draft → pending_review, by the author. Admins other than the author are notified."""
        exam = await ExamDefinitionService.get_exam(db, exam_id)
        if exam.author_id != actor_id:
            raise ForbiddenError("Only the author can submit this exam for review")

        exam = await cls._apply(db, exam, ExamAction.SUBMIT_FOR_REVIEW, submitted_for_review_at=datetime.utcnow())
        logger.info(f"[EXAM SUBMITTED FOR REVIEW] exam={exam.id} author={actor_id}")

        admins = await notifications.resolve_recipients(directory.list_admins(), "admins")
        await notifications.dispatch(sink, [
            notifications.review_requested(exam, admin_id, actor_id)
            for admin_id in admins if admin_id != actor_id
        ])
        return exam

    @classmethod
    async def review_exam(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        exam_id: str,
        admin_id: str,
        admin_role: UserRole,
        action: str,
        comments: Optional[str] = None
    ) -> Exam:
        """
        Approve or reject a pending exam.

        Approval publishes in the same write; the author and every enrolled
        student are notified. Rejection records the reason and notifies the
        author. The reviewing admin must not be the author.
        """
        if admin_role != UserRole.admin:
            raise ForbiddenError("Only admins can review exams")
        if action not in REVIEW_ACTIONS:
            raise ValidationError("Action must be approve or reject")

        exam = await ExamDefinitionService.get_exam(db, exam_id)
        if exam.author_id == admin_id:
            logger.warning(f"[SELF REVIEW BLOCKED] exam={exam.id} admin={admin_id}")
            raise ForbiddenSelfReviewError()

        now = datetime.utcnow()
        comments = (comments or "").strip() or None

        if REVIEW_ACTIONS[action] == ExamAction.APPROVE:
            exam = await cls._apply(
                db, exam, ExamAction.APPROVE,
                reviewed_by=admin_id,
                reviewed_at=now,
                review_comments=comments,
                is_published=True,
                published_at=now,
                published_by=admin_id,
            )
            logger.info(f"[EXAM APPROVED] exam={exam.id} reviewer={admin_id}")

            students = await notifications.resolve_recipients(
                directory.list_enrolled_students(exam.course_id), f"students of course {exam.course_id}"
            )
            await notifications.dispatch(
                sink,
                [notifications.exam_approved(exam, admin_id)]
                + [notifications.exam_published(exam, student_id, admin_id) for student_id in students]
            )
            return exam

        exam = await cls._apply(
            db, exam, ExamAction.REJECT,
            reviewed_by=admin_id,
            reviewed_at=now,
            review_comments=comments,
            rejection_reason=comments,
        )
        logger.info(f"[EXAM REJECTED] exam={exam.id} reviewer={admin_id}")
        await notifications.dispatch(sink, [notifications.exam_rejected(exam, admin_id)])
        return exam

    @classmethod
    async def publish_exam(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        exam_id: str,
        actor_id: str,
        actor_role: UserRole
    ) -> Exam:
        """
        Publish an approved exam that is not yet live.

        Anything but `approved` is an InvalidTransition; an approved exam that
        is already published is returned unchanged and nobody is notified.
        """
        exam = await ExamDefinitionService.get_exam(db, exam_id)
        if actor_role != UserRole.admin:
            if actor_role != UserRole.teacher or not await directory.owns_course(actor_id, exam.course_id):
                raise ForbiddenError("Only admins or the course creator can publish this exam")

        resolve_transition(exam.status, ExamAction.PUBLISH)
        if exam.is_published:
            logger.info(f"[EXAM PUBLISH NO-OP] exam={exam.id} already published")
            return exam

        now = datetime.utcnow()
        result = await db.execute(
            update(Exam)
            .where(Exam.id == exam.id, Exam.status == ExamStatus.APPROVED, Exam.is_published.is_(False))
            .values(is_published=True, published_at=now, published_by=actor_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(exam)
            resolve_transition(exam.status, ExamAction.PUBLISH)
            logger.info(f"[EXAM PUBLISH NO-OP] exam={exam.id} published concurrently")
            return exam

        await db.commit()
        await db.refresh(exam)
        logger.info(f"[EXAM PUBLISHED] exam={exam.id} by={actor_id}")

        students = await notifications.resolve_recipients(
            directory.list_enrolled_students(exam.course_id), f"students of course {exam.course_id}"
        )
        await notifications.dispatch(sink, [
            notifications.exam_published(exam, student_id, actor_id) for student_id in students
        ])
        return exam
