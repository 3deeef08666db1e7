"""
Notification events produced by the engine.

Builders turn domain objects into NotificationEvents; `dispatch` hands them
to the sink after the triggering transaction has committed. Delivery
failures are logged and never reach the caller.
"""
import asyncio
import logging
from typing import Awaitable, Iterable, List, Optional

from exam_engine.integrations.notification_sink import NotificationEvent, NotificationSink
from exam_engine.orm.exam import Exam
from exam_engine.orm.exam_attempt import ExamAttempt
from exam_engine.orm.reattempt_request import ExamReAttemptRequest

logger = logging.getLogger(__name__)

EXAM_REVIEW_REQUEST = "exam_review_request"
EXAM_APPROVED = "exam_approved"
EXAM_REJECTED = "exam_rejected"
EXAM_PUBLISHED = "exam_published"
EXAM_SUBMISSION_REVIEW = "exam_submission_review"
EXAM_VIOLATION_SUBMISSION = "exam_violation_submission"
EXAM_SCORE_PUBLISHED = "exam_score_published"
EXAM_REATTEMPT_REQUEST = "exam_reattempt_request"
EXAM_REATTEMPT_APPROVED = "exam_reattempt_approved"
EXAM_REATTEMPT_REJECTED = "exam_reattempt_rejected"


async def dispatch(sink: NotificationSink, events: Iterable[NotificationEvent]) -> int:
    """Emit all events concurrently; returns how many were delivered."""
    events = list(events)
    if not events:
        return 0
    results = await asyncio.gather(*(sink.emit(event) for event in events), return_exceptions=True)
    delivered = 0
    for event, result in zip(events, results):
        if isinstance(result, BaseException):
            logger.warning(f"[NOTIFY FAILED] {event.type} -> {event.recipient}: {type(result).__name__}: {result}")
        else:
            delivered += 1
    return delivered


class DeferredNotificationSink(NotificationSink):
    """
    Request-scoped sink: buffers events while the request runs and hands
    them to the real sink in `flush`, which the route schedules as a
    background task after the response.
    """

    def __init__(self, sink: NotificationSink):
        self._sink = sink
        self.pending: List[NotificationEvent] = []

    async def emit(self, event: NotificationEvent) -> None:
        self.pending.append(event)

    async def flush(self) -> int:
        events, self.pending = self.pending, []
        delivered = await dispatch(self._sink, events)
        if events:
            logger.info(f"[NOTIFY] delivered {delivered}/{len(events)} deferred events")
        return delivered


async def resolve_recipients(lookup: Awaitable[List[str]], label: str) -> List[str]:
    """Await a directory lookup used only for fan-out; failure means nobody."""
    try:
        return list(await lookup)
    except Exception as e:
        logger.warning(f"[NOTIFY] could not resolve {label}: {type(e).__name__}: {e}")
        return []


# =============================================================================
# Exam review
# =============================================================================

def review_requested(exam: Exam, admin_id: str, submitter_id: str) -> NotificationEvent:
    return NotificationEvent(
        recipient=admin_id,
        sender=submitter_id,
        type=EXAM_REVIEW_REQUEST,
        title="New Exam Review Request",
        message=f'"{exam.title}" was submitted for review',
        data={"exam_id": exam.id, "course_id": exam.course_id},
    )


def exam_approved(exam: Exam, reviewer_id: str) -> NotificationEvent:
    return NotificationEvent(
        recipient=exam.author_id,
        sender=reviewer_id,
        type=EXAM_APPROVED,
        title="Exam Approved & Published",
        message=f'Your exam "{exam.title}" has been approved and is now live for students',
        data={"exam_id": exam.id, "course_id": exam.course_id, "comments": exam.review_comments},
    )


def exam_rejected(exam: Exam, reviewer_id: str) -> NotificationEvent:
    return NotificationEvent(
        recipient=exam.author_id,
        sender=reviewer_id,
        type=EXAM_REJECTED,
        title="Exam Rejected",
        message=f'Your exam "{exam.title}" has been rejected',
        data={"exam_id": exam.id, "course_id": exam.course_id, "reason": exam.rejection_reason},
    )


def exam_published(exam: Exam, student_id: str, publisher_id: Optional[str]) -> NotificationEvent:
    return NotificationEvent(
        recipient=student_id,
        sender=publisher_id,
        type=EXAM_PUBLISHED,
        title="New Exam Available",
        message=f'New exam "{exam.title}" is now available',
        data={"exam_id": exam.id, "course_id": exam.course_id},
    )


# =============================================================================
# Attempts
# =============================================================================

def submission_review(attempt: ExamAttempt, exam: Exam, creator_id: str) -> NotificationEvent:
    return NotificationEvent(
        recipient=creator_id,
        sender=attempt.student_id,
        type=EXAM_SUBMISSION_REVIEW,
        title="New Exam Submission for Review",
        message=f'A student has submitted "{exam.title}". Please review and publish the grades.',
        data={
            "exam_id": exam.id,
            "attempt_id": attempt.id,
            "student_id": attempt.student_id,
            "submission_method": attempt.submission_method.value if attempt.submission_method else None,
            "grading_status": attempt.grading_status.value if attempt.grading_status else None,
        },
    )


def violation_submission(attempt: ExamAttempt, exam: Exam, creator_id: str) -> NotificationEvent:
    violations = attempt.violations or []
    return NotificationEvent(
        recipient=creator_id,
        sender=attempt.student_id,
        type=EXAM_VIOLATION_SUBMISSION,
        title="Exam Auto-Submitted Due to Violations",
        message=f'An attempt at "{exam.title}" was auto-submitted after {len(violations)} violations',
        data={
            "exam_id": exam.id,
            "attempt_id": attempt.id,
            "student_id": attempt.student_id,
            "violation_count": len(violations),
            "violations": [violation["type"] for violation in violations],
        },
    )


def score_published(attempt: ExamAttempt, reviewer_id: str) -> NotificationEvent:
    title = (attempt.exam_snapshot or {}).get("title", "")
    return NotificationEvent(
        recipient=attempt.student_id,
        sender=reviewer_id,
        type=EXAM_SCORE_PUBLISHED,
        title="Exam Results Published",
        message=f'Your results for "{title}" have been published. You can now view your score and correct answers.',
        data={
            "exam_id": attempt.exam_id,
            "attempt_id": attempt.id,
            "final_score": attempt.final_score,
            "final_percentage": attempt.final_percentage,
            "passed": attempt.final_passed,
        },
    )


# =============================================================================
# Re-attempt requests
# =============================================================================

def reattempt_requested(request: ExamReAttemptRequest, exam_title: str) -> NotificationEvent:
    return NotificationEvent(
        recipient=request.exam_creator_id,
        sender=request.student_id,
        type=EXAM_REATTEMPT_REQUEST,
        title="New Re-attempt Request",
        message=f'A student has requested to re-attempt "{exam_title}"',
        data={
            "request_id": request.id,
            "exam_id": request.exam_id,
            "course_id": request.course_id,
            "violation_type": request.violation_type.value,
            "original_attempt_id": request.original_attempt_id,
        },
    )


def reattempt_decided(request: ExamReAttemptRequest, exam_title: str, approved: bool) -> NotificationEvent:
    if approved:
        title = "Re-attempt Request Approved"
        message = f'Your request to re-attempt "{exam_title}" has been approved. You can now take the exam again.'
    else:
        title = "Re-attempt Request Rejected"
        message = f'Your request to re-attempt "{exam_title}" has been rejected. {request.creator_response or ""}'.strip()
    return NotificationEvent(
        recipient=request.student_id,
        sender=request.reviewed_by,
        type=EXAM_REATTEMPT_APPROVED if approved else EXAM_REATTEMPT_REJECTED,
        title=title,
        message=message,
        data={
            "request_id": request.id,
            "exam_id": request.exam_id,
            "action": "approve" if approved else "reject",
            "response": request.creator_response,
        },
    )
