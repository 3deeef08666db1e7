"""
Anti-Cheat Violation Service.

Each violation is appended with a compare-and-swap on (status, version).
Reaching the threshold finalizes the attempt in the same write.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.config.settings import settings
from exam_engine.errors import ForbiddenError, InvalidStateError, ValidationError
from exam_engine.integrations.course_directory import CourseDirectory
from exam_engine.integrations.notification_sink import NotificationSink
from exam_engine.orm.exam_attempt import (
    ExamAttempt, AttemptStatus, SubmissionMethod, GradingStatus,
    ViolationType, ViolationSeverity, score_fields, sum_answer_points
)
from exam_engine.services import notifications
from exam_engine.services.attempt_service import AttemptService, StatisticsScheduler
from exam_engine.state_machines.attempt_lifecycle import ensure_transition

logger = logging.getLogger(__name__)


def severity_for(violation_type: ViolationType) -> ViolationSeverity:
    if violation_type == ViolationType.TAB_SWITCH:
        return ViolationSeverity.HIGH
    return ViolationSeverity.MEDIUM


def termination_reason(violations) -> str:
    types = ", ".join(violation["type"] for violation in violations)
    return f"Exam terminated due to {len(violations)} violations: {types}"


class ViolationService:

    @classmethod
    async def record_violation(
        cls,
        db: AsyncSession,
        directory: CourseDirectory,
        sink: NotificationSink,
        attempt_id: str,
        student_id: str,
        violation_type: str,
        details: Optional[str] = None,
        schedule_statistics: Optional[StatisticsScheduler] = None
    ) -> Dict[str, Any]:
        """
        Append a violation to an in-progress attempt.

        At VIOLATION_THRESHOLD violations the attempt is auto-submitted with
        whatever answers it holds and marked for review. Losing the CAS to
        another violation retries; losing it to a finalization fails with
        InvalidStateError.
        """
        try:
            kind = ViolationType(violation_type)
        except ValueError:
            raise ValidationError(
                f"Invalid violation type '{violation_type}'",
                details={"allowed": [member.value for member in ViolationType]},
            )

        for retry in range(settings.CAS_MAX_RETRIES):
            attempt = await AttemptService.get_attempt(db, attempt_id, fresh=True)
            if attempt.student_id != student_id:
                raise ForbiddenError("This attempt belongs to another student")
            if attempt.status != AttemptStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Attempt is {attempt.status.value}, violations can no longer be recorded",
                    details={"current_status": attempt.status.value},
                )

            now = datetime.utcnow()
            violations = list(attempt.violations or []) + [{
                "type": kind.value,
                "details": details,
                "severity": severity_for(kind).value,
                "timestamp": now.isoformat(),
            }]
            count = len(violations)
            terminated = count >= settings.VIOLATION_THRESHOLD

            values: Dict[str, Any] = {
                "violations": violations,
                "violation_count": count,
                "flagged_for_review": terminated,
                "version": attempt.version + 1,
                "updated_at": now,
            }
            reason = None
            if terminated:
                ensure_transition(attempt.status, AttemptStatus.SUBMITTED)
                reason = termination_reason(violations)
                values.update(
                    status=AttemptStatus.SUBMITTED,
                    submission_method=SubmissionMethod.AUTO_VIOLATION,
                    submitted_at=now,
                    time_spent=max(0, int((now - attempt.started_at).total_seconds())),
                    terminated_due_to_violation=True,
                    termination_reason=reason,
                    grading_status=GradingStatus.PARTIALLY_GRADED,
                    **score_fields(sum_answer_points(attempt.answers), attempt.exam_snapshot)
                )

            result = await db.execute(
                update(ExamAttempt)
                .where(
                    ExamAttempt.id == attempt_id,
                    ExamAttempt.status == AttemptStatus.IN_PROGRESS,
                    ExamAttempt.version == attempt.version
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await db.commit()
                break
            await db.rollback()
            logger.info(f"[VIOLATION CAS RETRY] attempt={attempt_id} retry={retry + 1}")
        else:
            raise InvalidStateError("Attempt is being modified concurrently, please retry")

        logger.warning(
            f"[VIOLATION] attempt={attempt_id} student={student_id} type={kind.value} count={count}"
        )

        if terminated:
            await db.refresh(attempt)
            logger.warning(f"[AUTO SUBMIT] attempt={attempt_id} {reason}")
            await AttemptService.after_finalize(
                db, directory, sink, attempt,
                schedule_statistics=schedule_statistics,
                extra_builders=[notifications.violation_submission],
            )

        return {
            "attempt_id": attempt_id,
            "violation_count": count,
            "terminated": terminated,
            "auto_submitted": terminated,
            "termination_reason": reason,
        }
