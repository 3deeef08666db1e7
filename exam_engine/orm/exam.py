"""
Exam definitions.

An exam holds its questions, scoring rules, anti-cheat policy and
availability window, together with its review and publication state.
Questions are stored as a JSON list on the row; attempts never read them
directly but take a snapshot at start time.
"""
import enum
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, JSON, Index,
    CheckConstraint, event
)

from exam_engine.orm.base import Base, enum_column_type


# =============================================================================
# Enums
# =============================================================================

class ExamStatus(enum.Enum):
    """Review status: DRAFT → PENDING_REVIEW → APPROVED | REJECTED. ARCHIVED is external."""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class QuestionType(enum.Enum):
    MCQ = "mcq"
    SHORT_ANSWER = "short_answer"
    ESSAY = "essay"


class Difficulty(enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


DEFAULT_ANTI_CHEAT = {
    "block_copy_paste": True,
    "block_tab_switching": True,
    "block_right_click": True,
    "full_screen_required": False,
    "webcam_required": False,
}

# Keys stripped from questions before they are shown to students
ANSWER_KEY_FIELDS = ("correct_answer", "explanation")


def compute_total_points(questions: Iterable[Dict[str, Any]]) -> int:
    """Sum of question point values."""
    return sum(int(question.get("points") or 0) for question in questions or [])


def strip_answer_key(question: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a question without correct answers or explanations."""
    visible = {key: value for key, value in question.items() if key not in ANSWER_KEY_FIELDS}
    if visible.get("options"):
        visible["options"] = [{"text": option["text"]} for option in visible["options"]]
    return visible


# =============================================================================
# Models
# =============================================================================

class Exam(Base):
    """
    Authored exam.
    Status flows: DRAFT → PENDING_REVIEW → APPROVED (published) | REJECTED
    """
    __tablename__ = "exams"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    course_id = Column(String(64), nullable=False)
    author_id = Column(String(64), nullable=False)
    author_role = Column(String(16), nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    questions = Column(JSON, nullable=False, default=list)
    total_points = Column(Integer, nullable=False, default=0)

    # Policy
    time_limit = Column(Integer, nullable=False)  # minutes
    passing_score = Column(Integer, nullable=False, default=60)  # percentage
    max_attempts = Column(Integer, nullable=False, default=1)
    shuffle_questions = Column(Boolean, nullable=False, default=True)
    randomize_options = Column(Boolean, nullable=False, default=True)
    questions_per_attempt = Column(Integer, nullable=True)
    available_from = Column(DateTime, nullable=True)
    available_until = Column(DateTime, nullable=True)
    anti_cheat = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_ANTI_CHEAT))
    show_results_immediately = Column(Boolean, nullable=False, default=False)
    show_correct_answers = Column(Boolean, nullable=False, default=False)

    # Review
    status = Column(enum_column_type(ExamStatus), nullable=False, default=ExamStatus.DRAFT)
    submitted_for_review_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_comments = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Publication
    is_published = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime, nullable=True)
    published_by = Column(String(64), nullable=True)

    # Statistics, recomputed from attempts
    total_attempts = Column(Integer, nullable=False, default=0)
    average_score = Column(Float, nullable=False, default=0.0)
    pass_rate = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("time_limit >= 1", name="ck_exam_time_limit_positive"),
        CheckConstraint("passing_score >= 0 AND passing_score <= 100", name="ck_exam_passing_score_range"),
        Index("idx_exams_course_status", "course_id", "status"),
        Index("idx_exams_author", "author_id"),
        Index("idx_exams_status", "status"),
    )

    @property
    def is_available(self) -> bool:
        """Approved and published; the window is checked separately."""
        return self.status == ExamStatus.APPROVED and bool(self.is_published)

    def in_window(self, now: datetime) -> bool:
        if self.available_from and now < self.available_from:
            return False
        if self.available_until and now > self.available_until:
            return False
        return True

    def student_questions(self) -> List[Dict[str, Any]]:
        return [strip_answer_key(question) for question in self.questions or []]

    def to_dict(self, include_answer_key: bool = True) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "course_id": self.course_id,
            "author_id": self.author_id,
            "author_role": self.author_role,
            "title": self.title,
            "description": self.description,
            "questions": list(self.questions or []) if include_answer_key else self.student_questions(),
            "total_points": self.total_points,
            "time_limit": self.time_limit,
            "passing_score": self.passing_score,
            "max_attempts": self.max_attempts,
            "shuffle_questions": self.shuffle_questions,
            "randomize_options": self.randomize_options,
            "questions_per_attempt": self.questions_per_attempt,
            "available_from": self.available_from.isoformat() if self.available_from else None,
            "available_until": self.available_until.isoformat() if self.available_until else None,
            "anti_cheat": dict(self.anti_cheat or {}),
            "show_results_immediately": self.show_results_immediately,
            "show_correct_answers": self.show_correct_answers,
            "status": self.status.value if self.status else None,
            "submitted_for_review_at": self.submitted_for_review_at.isoformat() if self.submitted_for_review_at else None,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_comments": self.review_comments,
            "rejection_reason": self.rejection_reason,
            "is_published": self.is_published,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "published_by": self.published_by,
            "statistics": {
                "total_attempts": self.total_attempts,
                "average_score": self.average_score,
                "pass_rate": self.pass_rate,
            },
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@event.listens_for(Exam, "before_insert")
@event.listens_for(Exam, "before_update")
def _recompute_total_points(mapper, connection, target: Exam) -> None:
    target.total_points = compute_total_points(target.questions)
