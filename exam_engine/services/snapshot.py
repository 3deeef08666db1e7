"""
Exam snapshots.

At attempt start the live exam is copied (optionally shuffled, sampled and
with mcq options reordered) into an immutable ExamSnapshot. The snapshot is
stored as JSON on the attempt and is the only thing grading ever reads.
"""
import copy
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from exam_engine.config.settings import settings
from exam_engine.orm.exam import Exam, QuestionType


@dataclass(frozen=True)
class SnapshotOption:
    text: str
    is_correct: bool = False


@dataclass(frozen=True)
class SnapshotQuestion:
    id: str
    question_text: str
    type: QuestionType
    points: int
    options: Tuple[SnapshotOption, ...] = ()
    correct_answer: Optional[str] = None
    max_words: Optional[int] = None
    explanation: Optional[str] = None
    difficulty: str = "medium"

    @property
    def correct_option_index(self) -> Optional[int]:
        for index, option in enumerate(self.options):
            if option.is_correct:
                return index
        return None

    def redacted(self) -> Dict[str, Any]:
        """What the student sees while the attempt runs."""
        data = {
            "id": self.id,
            "question_text": self.question_text,
            "type": self.type.value,
            "points": self.points,
        }
        if self.type == QuestionType.MCQ:
            data["options"] = [{"text": option.text} for option in self.options]
        if self.max_words is not None:
            data["max_words"] = self.max_words
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question_text": self.question_text,
            "type": self.type.value,
            "points": self.points,
            "options": [{"text": option.text, "is_correct": option.is_correct} for option in self.options],
            "correct_answer": self.correct_answer,
            "max_words": self.max_words,
            "explanation": self.explanation,
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotQuestion":
        return cls(
            id=data["id"],
            question_text=data["question_text"],
            type=QuestionType(data["type"]),
            points=int(data.get("points") or 0),
            options=tuple(
                SnapshotOption(text=option["text"], is_correct=bool(option.get("is_correct")))
                for option in data.get("options") or []
            ),
            correct_answer=data.get("correct_answer"),
            max_words=data.get("max_words"),
            explanation=data.get("explanation"),
            difficulty=data.get("difficulty") or "medium",
        )


@dataclass(frozen=True)
class ExamSnapshot:
    title: str
    time_limit: int
    total_points: int
    passing_score: int
    questions: Tuple[SnapshotQuestion, ...] = field(default_factory=tuple)

    def question(self, question_id: str) -> Optional[SnapshotQuestion]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def redacted_questions(self) -> List[Dict[str, Any]]:
        return [question.redacted() for question in self.questions]

    @property
    def time_limit_seconds(self) -> int:
        return self.time_limit * 60

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "time_limit": self.time_limit,
            "total_points": self.total_points,
            "passing_score": self.passing_score,
            "questions": [question.to_dict() for question in self.questions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExamSnapshot":
        return cls(
            title=data.get("title") or "",
            time_limit=int(data.get("time_limit") or 0),
            total_points=int(data.get("total_points") or 0),
            passing_score=int(data["passing_score"]) if data.get("passing_score") is not None else settings.DEFAULT_PASSING_SCORE,
            questions=tuple(SnapshotQuestion.from_dict(question) for question in data.get("questions") or []),
        )


def build_snapshot(exam: Exam, rng: Optional[random.Random] = None) -> ExamSnapshot:
    """
    Freeze the exam for one attempt.

    Order: shuffle questions (if enabled), keep the first
    `questions_per_attempt`, then shuffle each mcq's options (if enabled).
    Total points are those of the questions actually drawn.
    """
    rng = rng or random.Random()
    questions = copy.deepcopy(list(exam.questions or []))

    if exam.shuffle_questions:
        rng.shuffle(questions)

    if exam.questions_per_attempt and exam.questions_per_attempt < len(questions):
        questions = questions[:exam.questions_per_attempt]

    if exam.randomize_options:
        for question in questions:
            if question.get("type") == QuestionType.MCQ.value and question.get("options"):
                rng.shuffle(question["options"])

    frozen = tuple(SnapshotQuestion.from_dict(question) for question in questions)
    return ExamSnapshot(
        title=exam.title,
        time_limit=exam.time_limit,
        # Drawn questions only, not exam.total_points: percentages are out of what the student saw
        total_points=sum(question.points for question in frozen),
        passing_score=exam.passing_score if exam.passing_score is not None else settings.DEFAULT_PASSING_SCORE,
        questions=frozen,
    )
