"""
Exam attempts.

One student's timed run through an exam. The exam content is copied into
`exam_snapshot` at start, and all grading reads from that snapshot.
"""
import enum
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, JSON, Index,
    UniqueConstraint, CheckConstraint, event, text
)

from exam_engine.config.settings import settings
from exam_engine.orm.base import Base, enum_column_type


# =============================================================================
# Enums
# =============================================================================

class AttemptStatus(enum.Enum):
    """IN_PROGRESS → SUBMITTED → COMPLETED. ABANDONED is reserved."""
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SubmissionMethod(enum.Enum):
    MANUAL = "manual"
    AUTO_TIMEOUT = "auto_timeout"
    AUTO_VIOLATION = "auto_violation"


class GradingStatus(enum.Enum):
    PENDING = "pending"
    PARTIALLY_GRADED = "partially_graded"
    FULLY_GRADED = "fully_graded"


class ViolationType(enum.Enum):
    TAB_SWITCH = "tab_switch"
    COPY_PASTE = "copy_paste"
    RIGHT_CLICK = "right_click"
    FULLSCREEN_EXIT = "fullscreen_exit"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class ViolationSeverity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Score math
# =============================================================================

def compute_percentage(score: Optional[float], total_points: Optional[int]) -> int:
    """round(score / total * 100), halves rounded up; 0 when there are no points."""
    if not total_points or score is None:
        return 0
    ratio = Decimal(str(score)) / Decimal(str(total_points)) * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_passing(percentage: int, passing_score: Optional[int]) -> bool:
    threshold = settings.DEFAULT_PASSING_SCORE if passing_score is None else passing_score
    return percentage >= threshold


def score_fields(total_score: float, snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """total_score, percentage and passed, consistent with the snapshot."""
    snapshot = snapshot or {}
    percentage = compute_percentage(total_score, snapshot.get("total_points"))
    return {
        "total_score": total_score,
        "percentage": percentage,
        "passed": is_passing(percentage, snapshot.get("passing_score")),
    }


def sum_answer_points(answers: Iterable[Dict[str, Any]]) -> float:
    """Manual score where one exists, otherwise the auto-graded points."""
    total = 0.0
    for answer in answers or []:
        if answer.get("manual_score") is not None:
            total += float(answer["manual_score"])
        else:
            total += float(answer.get("points") or 0)
    return total


# =============================================================================
# Models
# =============================================================================

class ExamAttempt(Base):
    """
    A student's attempt at an exam.
    At most one IN_PROGRESS attempt per (exam, student), enforced by a partial
    unique index. Every conditional write bumps `version`.
    """
    __tablename__ = "exam_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    exam_id = Column(String(36), nullable=False)
    student_id = Column(String(64), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)

    exam_snapshot = Column(JSON, nullable=False)

    status = Column(enum_column_type(AttemptStatus), nullable=False, default=AttemptStatus.IN_PROGRESS)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    time_spent = Column(Integer, nullable=False, default=0)  # seconds

    answers = Column(JSON, nullable=False, default=list)

    # Raw, computed at submission
    total_score = Column(Float, nullable=False, default=0.0)
    percentage = Column(Integer, nullable=False, default=0)
    passed = Column(Boolean, nullable=False, default=False)
    grading_status = Column(enum_column_type(GradingStatus), nullable=False, default=GradingStatus.PENDING)

    # Final, set only by score publication
    final_score = Column(Float, nullable=True)
    final_percentage = Column(Integer, nullable=True)
    final_passed = Column(Boolean, nullable=True)
    score_published = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime, nullable=True)
    published_by = Column(String(64), nullable=True)
    instructor_feedback = Column(Text, nullable=True)

    # Anti-cheat
    violations = Column(JSON, nullable=False, default=list)
    violation_count = Column(Integer, nullable=False, default=0)
    flagged_for_review = Column(Boolean, nullable=False, default=False)

    # Termination
    is_timed_out = Column(Boolean, nullable=False, default=False)
    submission_method = Column(enum_column_type(SubmissionMethod), nullable=True)
    terminated_due_to_violation = Column(Boolean, nullable=False, default=False)
    termination_reason = Column(Text, nullable=True)

    client_info = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", "attempt_number", name="uq_attempt_exam_student_number"),
        CheckConstraint("attempt_number >= 1", name="ck_attempt_number_positive"),
        Index(
            "uq_attempt_one_in_progress",
            "exam_id", "student_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
        Index("idx_attempts_student", "student_id"),
        Index("idx_attempts_exam_status", "exam_id", "status"),
    )

    @property
    def is_in_progress(self) -> bool:
        return self.status == AttemptStatus.IN_PROGRESS

    def to_dict(self, include_scores: bool = True) -> dict:
        """Convert to dictionary. Scores are left out for unpublished student views."""
        data = {
            "id": self.id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "attempt_number": self.attempt_number,
            "exam_title": (self.exam_snapshot or {}).get("title"),
            "status": self.status.value if self.status else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "time_spent": self.time_spent,
            "violation_count": self.violation_count,
            "flagged_for_review": self.flagged_for_review,
            "is_timed_out": self.is_timed_out,
            "submission_method": self.submission_method.value if self.submission_method else None,
            "terminated_due_to_violation": self.terminated_due_to_violation,
            "termination_reason": self.termination_reason,
            "grading_status": self.grading_status.value if self.grading_status else None,
            "score_published": self.score_published,
        }
        if include_scores:
            data.update({
                "total_score": self.total_score,
                "percentage": self.percentage,
                "passed": self.passed,
                "final_score": self.final_score,
                "final_percentage": self.final_percentage,
                "final_passed": self.final_passed,
                "published_at": self.published_at.isoformat() if self.published_at else None,
                "published_by": self.published_by,
                "instructor_feedback": self.instructor_feedback,
            })
        return data


@event.listens_for(ExamAttempt, "before_insert")
@event.listens_for(ExamAttempt, "before_update")
def _recompute_derived_fields(mapper, connection, target: ExamAttempt) -> None:
    fields = score_fields(target.total_score or 0.0, target.exam_snapshot)
    target.percentage = fields["percentage"]
    target.passed = fields["passed"]
    target.violation_count = len(target.violations or [])
    target.flagged_for_review = target.violation_count >= settings.VIOLATION_THRESHOLD
