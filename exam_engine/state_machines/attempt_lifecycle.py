"""
Attempt Lifecycle State Machine

State Flow: in_progress → submitted → completed

`abandoned` and `completed` are part of the model but nothing in the engine
moves an attempt into them yet.
"""
from typing import Dict, List

from exam_engine.errors import InvalidStateError
from exam_engine.orm.exam_attempt import AttemptStatus

ATTEMPT_TRANSITIONS: Dict[AttemptStatus, List[AttemptStatus]] = {
    AttemptStatus.IN_PROGRESS: [AttemptStatus.SUBMITTED, AttemptStatus.ABANDONED],
    AttemptStatus.SUBMITTED: [AttemptStatus.COMPLETED],
    AttemptStatus.COMPLETED: [],
    AttemptStatus.ABANDONED: [],
}

# Attempts whose scores count toward exam statistics
FINALIZED_STATUSES = (AttemptStatus.SUBMITTED, AttemptStatus.COMPLETED)


def can_transition(current: AttemptStatus, target: AttemptStatus) -> bool:
    return target in ATTEMPT_TRANSITIONS[current]


def ensure_transition(current: AttemptStatus, target: AttemptStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Attempt is {current.value}, cannot move to {target.value}",
            details={"current_status": current.value},
        )
