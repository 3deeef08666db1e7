"""Builders for exam drafts and common lifecycle steps used across the suite."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update

from exam_engine.orm.exam import Exam
from exam_engine.orm.exam_attempt import ExamAttempt
from exam_engine.orm.roles import UserRole
from exam_engine.services.attempt_service import AttemptService
from exam_engine.services.exam_definition_service import ExamDefinitionService
from exam_engine.services.exam_review_service import ExamReviewService

COURSE_ID = "course-101"
ADMIN_COURSE_ID = "course-900"
TEACHER_ID = "teacher-1"
OTHER_TEACHER_ID = "teacher-2"
ADMIN_ID = "admin-1"
SECOND_ADMIN_ID = "admin-2"
STUDENT_ID = "student-1"
OTHER_STUDENT_ID = "student-2"
OUTSIDER_ID = "student-9"


def mcq(question_id: str, points: int = 10, correct: int = 0, options=("A", "B", "C", "D")) -> Dict[str, Any]:
    return {
        "id": question_id,
        "type": "mcq",
        "question_text": f"Pick the right answer for {question_id}",
        "points": points,
        "options": [{"text": text, "is_correct": index == correct} for index, text in enumerate(options)],
        "explanation": f"Option {correct} is correct",
    }


def short_answer(question_id: str, answer: str, points: int = 5) -> Dict[str, Any]:
    return {
        "id": question_id,
        "type": "short_answer",
        "question_text": f"Name the doctrine for {question_id}",
        "points": points,
        "correct_answer": answer,
    }


def essay(question_id: str, points: int = 10, max_words: Optional[int] = 500) -> Dict[str, Any]:
    return {
        "id": question_id,
        "type": "essay",
        "question_text": f"Discuss {question_id}",
        "points": points,
        "max_words": max_words,
    }


def exam_draft(questions: Optional[List[Dict[str, Any]]] = None, **overrides) -> Dict[str, Any]:
    """Two questions worth 10 points each, no shuffling, 60% to pass."""
    draft = {
        "title": "Constitutional Law Midterm",
        "description": "Covers fundamental rights",
        "questions": questions if questions is not None else [mcq("q1"), essay("q2")],
        "time_limit": 30,
        "passing_score": 60,
        "shuffle_questions": False,
        "randomize_options": False,
    }
    draft.update(overrides)
    return draft


async def create_pending_exam(db, directory, sink, questions=None, **overrides) -> Exam:
    return await ExamDefinitionService.create_exam(
        db, directory, sink,
        course_id=COURSE_ID,
        author_id=TEACHER_ID,
        author_role=UserRole.teacher,
        draft=exam_draft(questions, **overrides),
    )


async def create_live_exam(db, directory, sink, questions=None, **overrides) -> Exam:
    """Teacher-authored exam approved by an admin, hence published."""
    exam = await create_pending_exam(db, directory, sink, questions, **overrides)
    return await ExamReviewService.review_exam(
        db, directory, sink, exam.id, ADMIN_ID, UserRole.admin, "approve"
    )


async def start(db, directory, exam: Exam, student_id: str = STUDENT_ID) -> Dict[str, Any]:
    return await AttemptService.start_attempt(db, directory, exam.id, student_id)


async def submit(db, directory, sink, attempt_id: str, answers=None, student_id: str = STUDENT_ID):
    return await AttemptService.submit_attempt(
        db, directory, sink, attempt_id, student_id, answers or []
    )


async def backdate_attempt(db, attempt_id: str, minutes: int) -> None:
    """Pretend the attempt started `minutes` ago."""
    await db.execute(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt_id)
        .values(started_at=datetime.utcnow() - timedelta(minutes=minutes))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
