"""
Grading rules and score value objects.

Pure functions over snapshots and answer records; nothing here touches the
database. Services call these and persist the results.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from exam_engine.orm.exam import QuestionType
from exam_engine.orm.exam_attempt import (
    ExamAttempt, GradingStatus, compute_percentage, is_passing, sum_answer_points
)
from exam_engine.services.snapshot import ExamSnapshot, SnapshotQuestion


# =============================================================================
# Score value objects
# =============================================================================

@dataclass(frozen=True)
class ComputedScore:
    """Raw score derived from the answers; always present."""
    total_score: float
    percentage: int
    passed: bool


@dataclass(frozen=True)
class PublishedScore:
    """Instructor-approved score; exists only once the score is published."""
    final_score: float
    final_percentage: int
    final_passed: bool
    published_at: Optional[datetime]
    published_by: Optional[str]
    feedback: Optional[str]


@dataclass(frozen=True)
class AttemptScores:
    computed: ComputedScore
    published: Optional[PublishedScore] = None

    @property
    def is_published(self) -> bool:
        return self.published is not None

    def visible(self) -> Dict[str, Any]:
        """Final values, falling back to the raw ones field by field."""
        computed, published = self.computed, self.published
        return {
            "score": published.final_score if published and published.final_score is not None else computed.total_score,
            "percentage": published.final_percentage if published and published.final_percentage is not None else computed.percentage,
            "passed": published.final_passed if published and published.final_passed is not None else computed.passed,
        }


def scores_for(attempt: ExamAttempt) -> AttemptScores:
    computed = ComputedScore(
        total_score=attempt.total_score or 0.0,
        percentage=attempt.percentage or 0,
        passed=bool(attempt.passed),
    )
    if not attempt.score_published:
        return AttemptScores(computed=computed)
    published = PublishedScore(
        final_score=attempt.final_score,
        final_percentage=attempt.final_percentage,
        final_passed=attempt.final_passed,
        published_at=attempt.published_at,
        published_by=attempt.published_by,
        feedback=attempt.instructor_feedback,
    )
    return AttemptScores(computed=computed, published=published)


def publish_values(final_score: float, snapshot: ExamSnapshot) -> PublishedScore:
    percentage = compute_percentage(final_score, snapshot.total_points)
    return PublishedScore(
        final_score=final_score,
        final_percentage=percentage,
        final_passed=is_passing(percentage, snapshot.passing_score),
        published_at=None,
        published_by=None,
        feedback=None,
    )


# =============================================================================
# Auto-grading
# =============================================================================

@dataclass(frozen=True)
class GradingOutcome:
    answers: List[Dict[str, Any]]
    total_score: float
    grading_status: GradingStatus

    @property
    def needs_manual_grading(self) -> bool:
        return self.grading_status != GradingStatus.FULLY_GRADED


def _normalize(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def grade_answer(question: SnapshotQuestion, submitted: Dict[str, Any]) -> Dict[str, Any]:
    """
    mcq: correct iff the selected index is the correct option, always auto-graded.
    short_answer: auto-graded only on a trimmed, case-insensitive exact match.
    essay: never auto-graded.
    """
    record = {
        "question_id": question.id,
        "question_type": question.type.value,
        "selected_option": None,
        "text_answer": None,
        "points": 0,
        "max_points": question.points,
        "is_correct": False,
        "auto_graded": False,
        "manual_score": None,
        "feedback": None,
        "graded_by": None,
        "graded_at": None,
    }

    if question.type == QuestionType.MCQ:
        selected = submitted.get("selected_option")
        record["selected_option"] = selected
        record["is_correct"] = selected is not None and selected == question.correct_option_index
        record["points"] = question.points if record["is_correct"] else 0
        record["auto_graded"] = True

    elif question.type == QuestionType.SHORT_ANSWER:
        record["text_answer"] = submitted.get("text_answer")
        expected = _normalize(question.correct_answer)
        if expected and _normalize(record["text_answer"]) == expected:
            record["is_correct"] = True
            record["points"] = question.points
            record["auto_graded"] = True

    else:
        record["text_answer"] = submitted.get("text_answer")

    return record


def derive_grading_status(answers: Iterable[Dict[str, Any]]) -> GradingStatus:
    """Fully graded once every answer is auto-graded or has a manual score."""
    for answer in answers:
        if not answer.get("auto_graded") and answer.get("manual_score") is None:
            return GradingStatus.PARTIALLY_GRADED
    return GradingStatus.FULLY_GRADED


def grade_submission(snapshot: ExamSnapshot, submitted_answers: Iterable[Dict[str, Any]]) -> GradingOutcome:
    """Grade answers against the snapshot; unknown and repeated question ids are dropped."""
    answers: List[Dict[str, Any]] = []
    seen = set()
    for submitted in submitted_answers or []:
        question_id = submitted.get("question_id")
        question = snapshot.question(question_id) if question_id else None
        if question is None or question_id in seen:
            continue
        seen.add(question_id)
        answers.append(grade_answer(question, submitted))

    return GradingOutcome(
        answers=answers,
        total_score=sum_answer_points(answers),
        grading_status=derive_grading_status(answers),
    )
