"""
exam_engine/orm
Importing this package registers every model with Base.metadata.
"""
from exam_engine.orm.base import Base
from exam_engine.orm.roles import UserRole
from exam_engine.orm.exam import Exam, ExamStatus, QuestionType, Difficulty
from exam_engine.orm.exam_attempt import (
    ExamAttempt, AttemptStatus, SubmissionMethod, GradingStatus,
    ViolationType, ViolationSeverity
)
from exam_engine.orm.reattempt_request import (
    ExamReAttemptRequest, ReAttemptStatus, ReAttemptViolationType,
    ContactReason, RequestPriority
)

__all__ = [
    "Base",
    "UserRole",
    "Exam",
    "ExamStatus",
    "QuestionType",
    "Difficulty",
    "ExamAttempt",
    "AttemptStatus",
    "SubmissionMethod",
    "GradingStatus",
    "ViolationType",
    "ViolationSeverity",
    "ExamReAttemptRequest",
    "ReAttemptStatus",
    "ReAttemptViolationType",
    "ContactReason",
    "RequestPriority",
]
