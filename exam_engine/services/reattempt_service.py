"""
Re-Attempt Adjudication Service.

Students ask the course creator for another attempt; the creator approves
or rejects once. Approval issues a single-use grant that the next
`start_attempt` consumes.

Duplicates are blocked by unique indexes: one request per originating
attempt, and one pending contact-creator request per (student, exam).
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.config.settings import settings
from exam_engine.errors import (
    ForbiddenError, NotFoundError, InvalidStateError, ValidationError,
    DuplicateRequestError, AlreadyReviewedError
)
from exam_engine.integrations.course_directory import CourseDirectory
from exam_engine.integrations.notification_sink import NotificationSink
from exam_engine.orm.exam import Exam
from exam_engine.orm.exam_attempt import AttemptStatus
from exam_engine.orm.reattempt_request import (
    ExamReAttemptRequest, ReAttemptStatus, ReAttemptViolationType,
    ContactReason, RequestPriority
)
from exam_engine.services import notifications
from exam_engine.services.attempt_service import AttemptService
from exam_engine.services.exam_definition_service import ExamDefinitionService

logger = logging.getLogger(__name__)

CREATOR_RESPONSE_MAX_LENGTH = 300
CONTACT_MESSAGE_MIN_LENGTH = 20


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name} '{value}'",
            details={"allowed": [member.value for member in enum_cls]},
        )


class ReAttemptService:

    @staticmethod
    def _check_message(message: Optional[str]) -> str:
        message = (message or "").strip()
        if not message:
            raise ValidationError("A message to the exam creator is required")
        if len(message) > settings.STUDENT_MESSAGE_MAX_LENGTH:
            raise ValidationError(f"Message must be at most {settings.STUDENT_MESSAGE_MAX_LENGTH} characters")
        return message

    @staticmethod
    async def get_request(db: AsyncSession, request_id: str) -> ExamReAttemptRequest:
        result = await db.execute(
            select(ExamReAttemptRequest)
            .where(ExamReAttemptRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError("Re-attempt request", request_id)
        return request

    @classmethod
    async def request_reattempt(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        student_id: str,
        violation_type: str,
        violation_details: str,
        student_message: str,
        original_attempt_id: Optional[str] = None,
        exam_id: Optional[str] = None,
        evidence: Optional[str] = None,
        priority: str = RequestPriority.MEDIUM.value
    ) -> ExamReAttemptRequest:
        """
        File a re-attempt request.

        With `original_attempt_id` the request is tied to that finalized
        attempt (one request per attempt). Without it, `exam_id` is required
        and the request is a contact-creator request (one pending per exam).
        """
        kind = _parse_enum(ReAttemptViolationType, violation_type, "violation type")
        urgency = _parse_enum(RequestPriority, priority, "priority")
        message = cls._check_message(student_message)
        details = (violation_details or "").strip()
        if not details:
            raise ValidationError("Violation details are required")

        if original_attempt_id:
            attempt = await AttemptService.get_attempt(db, original_attempt_id)
            if attempt.student_id != student_id:
                raise ForbiddenError("You can only request a re-attempt for your own attempt")
            if attempt.status == AttemptStatus.IN_PROGRESS:
                raise InvalidStateError("Finish or submit the attempt before requesting a re-attempt")
            exam_id = attempt.exam_id
            if kind == ReAttemptViolationType.CONTACT_CREATOR:
                raise ValidationError("Contact-creator requests cannot reference an attempt")
        else:
            if not exam_id:
                raise ValidationError("An exam id is required when no attempt is referenced")
            kind = ReAttemptViolationType.CONTACT_CREATOR

        exam = await ExamDefinitionService.get_exam(db, exam_id)
        creator_id = await AttemptService.resolve_course_creator(directory, exam)

        duplicate = await cls._find_duplicate(db, student_id, exam_id, original_attempt_id)
        if duplicate:
            raise DuplicateRequestError(
                "You have already submitted a re-attempt request for this attempt"
                if original_attempt_id else
                "You already have a pending request for this exam"
            )

        request = ExamReAttemptRequest(
            student_id=student_id,
            exam_id=exam_id,
            course_id=exam.course_id,
            exam_creator_id=creator_id,
            original_attempt_id=original_attempt_id,
            violation_type=kind,
            violation_details=details,
            student_message=message,
            evidence=(evidence or "").strip() or None,
            priority=urgency,
            status=ReAttemptStatus.PENDING,
        )
        try:
            db.add(request)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(f"[REATTEMPT DUPLICATE] student={student_id} exam={exam_id} attempt={original_attempt_id}")
            raise DuplicateRequestError()

        logger.info(
            f"[REATTEMPT REQUESTED] request={request.id} student={student_id} exam={exam_id} "
            f"type={kind.value} creator={creator_id}"
        )
        await notifications.dispatch(sink, [notifications.reattempt_requested(request, exam.title)])
        return request

    @classmethod
    async def contact_creator(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        student_id: str,
        exam_id: str,
        reason: str,
        message: str
    ) -> ExamReAttemptRequest:
        """Request without an originating attempt; the reason becomes the details."""
        contact_reason = _parse_enum(ContactReason, reason, "reason")
        if len((message or "").strip()) < CONTACT_MESSAGE_MIN_LENGTH:
            raise ValidationError(f"Message must be at least {CONTACT_MESSAGE_MIN_LENGTH} characters")
        return await cls.request_reattempt(
            db, directory, sink,
            student_id=student_id,
            exam_id=exam_id,
            violation_type=ReAttemptViolationType.CONTACT_CREATOR.value,
            violation_details=f"Student contacted creator: {contact_reason.value}",
            student_message=message,
        )

    @staticmethod
    async def _find_duplicate(
        db: AsyncSession,
        student_id: str,
        exam_id: str,
        original_attempt_id: Optional[str]
    ) -> Optional[ExamReAttemptRequest]:
        query = select(ExamReAttemptRequest).where(ExamReAttemptRequest.student_id == student_id)
        if original_attempt_id:
            query = query.where(ExamReAttemptRequest.original_attempt_id == original_attempt_id)
        else:
            query = query.where(
                ExamReAttemptRequest.exam_id == exam_id,
                ExamReAttemptRequest.violation_type == ReAttemptViolationType.CONTACT_CREATOR,
                ExamReAttemptRequest.status == ReAttemptStatus.PENDING
            )
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none()

    @classmethod
    async def review_request(
        cls,
        db: AsyncSession,
        sink: NotificationSink,
        request_id: str,
        reviewer_id: str,
        action: str,
        response: Optional[str] = None
    ) -> ExamReAttemptRequest:
        """
        Approve (grant one new attempt) or reject (response required).
        Only the designated exam creator may decide, and only once.
        """
        if action not in ("approve", "reject"):
            raise ValidationError("Action must be approve or reject")

        request = await cls.get_request(db, request_id)
        if request.exam_creator_id != reviewer_id:
            raise ForbiddenError("Only the exam creator can review this request")
        if request.status != ReAttemptStatus.PENDING:
            raise AlreadyReviewedError()

        response = (response or "").strip() or None
        if response and len(response) > CREATOR_RESPONSE_MAX_LENGTH:
            raise ValidationError(f"Response must be at most {CREATOR_RESPONSE_MAX_LENGTH} characters")
        approved = action == "approve"
        if not approved and not response:
            raise ValidationError("A response is required when rejecting a request")

        now = datetime.utcnow()
        result = await db.execute(
            update(ExamReAttemptRequest)
            .where(ExamReAttemptRequest.id == request_id, ExamReAttemptRequest.status == ReAttemptStatus.PENDING)
            .values(
                status=ReAttemptStatus.APPROVED if approved else ReAttemptStatus.REJECTED,
                creator_response=response,
                reviewed_at=now,
                reviewed_by=reviewer_id,
                new_attempt_granted=approved,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise AlreadyReviewedError()
        await db.commit()
        await db.refresh(request)

        logger.info(f"[REATTEMPT {'APPROVED' if approved else 'REJECTED'}] request={request_id} reviewer={reviewer_id}")

        exam = await db.get(Exam, request.exam_id)
        exam_title = exam.title if exam else ""
        await notifications.dispatch(sink, [notifications.reattempt_decided(request, exam_title, approved)])
        return request

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    async def list_creator_requests(
        db: AsyncSession,
        creator_id: str,
        status: Optional[ReAttemptStatus] = None
    ) -> List[Dict[str, Any]]:
        query = select(ExamReAttemptRequest).where(ExamReAttemptRequest.exam_creator_id == creator_id)
        if status is not None:
            query = query.where(ExamReAttemptRequest.status == status)
        result = await db.execute(query.order_by(ExamReAttemptRequest.created_at.desc()))
        return [request.to_dict() for request in result.scalars().all()]

    @staticmethod
    async def list_student_requests(db: AsyncSession, student_id: str) -> List[Dict[str, Any]]:
        result = await db.execute(
            select(ExamReAttemptRequest)
            .where(ExamReAttemptRequest.student_id == student_id)
            .order_by(ExamReAttemptRequest.created_at.desc())
        )
        return [request.to_dict() for request in result.scalars().all()]
