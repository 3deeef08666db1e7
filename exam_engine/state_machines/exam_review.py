"""
Exam Review State Machine

State Flow: draft → pending_review → approved (published) | rejected

Publication is a flag on an approved exam, so `publish` keeps the status
and only flips `is_published`. `archived` has no producer here.
"""
from enum import Enum
from typing import Dict, List, Tuple

from exam_engine.errors import InvalidTransitionError
from exam_engine.orm.exam import ExamStatus


class ExamAction(Enum):
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    PUBLISH = "publish"


# action -> (required source status, resulting status)
EXAM_TRANSITIONS: Dict[ExamAction, Tuple[ExamStatus, ExamStatus]] = {
    ExamAction.SUBMIT_FOR_REVIEW: (ExamStatus.DRAFT, ExamStatus.PENDING_REVIEW),
    ExamAction.APPROVE: (ExamStatus.PENDING_REVIEW, ExamStatus.APPROVED),
    ExamAction.REJECT: (ExamStatus.PENDING_REVIEW, ExamStatus.REJECTED),
    ExamAction.PUBLISH: (ExamStatus.APPROVED, ExamStatus.APPROVED),
}

# Statuses nothing in this module leaves or enters through an action
TERMINAL_STATUSES = (ExamStatus.REJECTED, ExamStatus.ARCHIVED)


def resolve_transition(current: ExamStatus, action: ExamAction) -> ExamStatus:
    """Target status for `action`, or InvalidTransitionError from any other source."""
    source, target = EXAM_TRANSITIONS[action]
    if current != source:
        raise InvalidTransitionError(
            f"Cannot {action.value.replace('_', ' ')} an exam in status '{current.value}'",
            details={"current_status": current.value, "required_status": source.value},
        )
    return target


def allowed_actions(current: ExamStatus) -> List[ExamAction]:
    return [action for action, (source, _) in EXAM_TRANSITIONS.items() if source == current]
