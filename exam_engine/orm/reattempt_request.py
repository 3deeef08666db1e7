"""
Re-attempt requests.

A student asks the exam creator for another attempt, either after a
finalized attempt (violation-originated) or without one (contact creator).
An approved request carries a single-use grant consumed by the next start.
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Boolean, DateTime, Text, Index, UniqueConstraint, text
)

from exam_engine.orm.base import Base, enum_column_type


# =============================================================================
# Enums
# =============================================================================

class ReAttemptStatus(enum.Enum):
    """PENDING → APPROVED | REJECTED, decided once by the exam creator."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReAttemptViolationType(enum.Enum):
    TECHNICAL_ISSUE = "technical_issue"
    HEALTH_EMERGENCY = "health_emergency"
    POWER_OUTAGE = "power_outage"
    INTERNET_ISSUE = "internet_issue"
    TAB_SWITCHING = "tab_switching"
    COPY_PASTE = "copy_paste"
    RIGHT_CLICK = "right_click"
    FULLSCREEN_EXIT = "fullscreen_exit"
    WEBCAM_VIOLATION = "webcam_violation"
    TIME_EXCEEDED = "time_exceeded"
    MULTIPLE_VIOLATIONS = "multiple_violations"
    CONTACT_CREATOR = "contact_creator"
    OTHER = "other"


class ContactReason(enum.Enum):
    """Reasons a student may give when contacting the exam creator."""
    MISSED_DEADLINE = "missed_deadline"
    TECHNICAL_ISSUES = "technical_issues"
    PERSONAL_EMERGENCY = "personal_emergency"
    WANT_RETAKE = "want_retake"
    MISUNDERSTOOD_CONTENT = "misunderstood_content"
    OTHER = "other"


class RequestPriority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Models
# =============================================================================

class ExamReAttemptRequest(Base):
    __tablename__ = "exam_reattempt_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String(64), nullable=False)
    exam_id = Column(String(36), nullable=False)
    course_id = Column(String(64), nullable=False)
    exam_creator_id = Column(String(64), nullable=False)
    original_attempt_id = Column(String(36), nullable=True)

    violation_type = Column(enum_column_type(ReAttemptViolationType), nullable=False)
    violation_details = Column(Text, nullable=False)
    student_message = Column(Text, nullable=False)
    evidence = Column(Text, nullable=True)
    priority = Column(enum_column_type(RequestPriority), nullable=False, default=RequestPriority.MEDIUM)

    status = Column(enum_column_type(ReAttemptStatus), nullable=False, default=ReAttemptStatus.PENDING)
    creator_response = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(64), nullable=True)

    # Grant tracking
    new_attempt_granted = Column(Boolean, nullable=False, default=False)
    new_attempt_used = Column(Boolean, nullable=False, default=False)
    new_attempt_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        # NULL original attempts (contact creator) never collide here
        UniqueConstraint("student_id", "original_attempt_id", name="uq_reattempt_student_attempt"),
        Index(
            "uq_reattempt_one_pending_contact",
            "student_id", "exam_id",
            unique=True,
            sqlite_where=text("violation_type = 'contact_creator' AND status = 'pending'"),
            postgresql_where=text("violation_type = 'contact_creator' AND status = 'pending'"),
        ),
        Index("idx_reattempt_creator_status", "exam_creator_id", "status"),
        Index("idx_reattempt_student_exam", "student_id", "exam_id"),
    )

    @property
    def has_unused_grant(self) -> bool:
        return (
            self.status == ReAttemptStatus.APPROVED
            and bool(self.new_attempt_granted)
            and not self.new_attempt_used
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "exam_id": self.exam_id,
            "course_id": self.course_id,
            "exam_creator_id": self.exam_creator_id,
            "original_attempt_id": self.original_attempt_id,
            "violation_type": self.violation_type.value if self.violation_type else None,
            "violation_details": self.violation_details,
            "student_message": self.student_message,
            "evidence": self.evidence,
            "priority": self.priority.value if self.priority else None,
            "status": self.status.value if self.status else None,
            "creator_response": self.creator_response,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "reviewed_by": self.reviewed_by,
            "new_attempt_granted": self.new_attempt_granted,
            "new_attempt_used": self.new_attempt_used,
            "new_attempt_id": self.new_attempt_id,
            "has_unused_grant": self.has_unused_grant,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
