"""
Statistics Service.

Exam-level statistics are always recomputed from scratch over the
finalized attempts, so running it twice (or concurrently) converges on the
same numbers.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from exam_engine.orm.exam import Exam
from exam_engine.orm.exam_attempt import ExamAttempt
from exam_engine.state_machines.attempt_lifecycle import FINALIZED_STATUSES

logger = logging.getLogger(__name__)


def _round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _effective(row) -> Tuple[int, bool]:
    if row.score_published and row.final_percentage is not None:
        return row.final_percentage, bool(row.final_passed)
    return row.percentage or 0, bool(row.passed)


class StatisticsService:

    @staticmethod
    async def recompute_exam_statistics(db: AsyncSession, exam_id: str) -> Dict[str, float]:
        """
        total_attempts, average_score (mean percentage) and pass_rate (% passed),
        rounded to 2 dp. Published attempts count with their final values.
        """
        result = await db.execute(
            select(
                ExamAttempt.percentage, ExamAttempt.passed, ExamAttempt.score_published,
                ExamAttempt.final_percentage, ExamAttempt.final_passed
            ).where(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.status.in_(FINALIZED_STATUSES)
            )
        )
        rows = [_effective(row) for row in result.all()]
        total_attempts = len(rows)
        if total_attempts:
            average_score = _round2(sum(percentage for percentage, _ in rows) / total_attempts)
            pass_rate = _round2(sum(1 for _, passed in rows if passed) / total_attempts * 100)
        else:
            average_score = 0.0
            pass_rate = 0.0

        await db.execute(
            update(Exam)
            .where(Exam.id == exam_id)
            .values(total_attempts=total_attempts, average_score=average_score, pass_rate=pass_rate)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        stats = {"total_attempts": total_attempts, "average_score": average_score, "pass_rate": pass_rate}
        logger.info(f"[EXAM STATISTICS] exam={exam_id} {stats}")
        return stats

    @classmethod
    async def recompute_safely(cls, db: AsyncSession, exam_id: str) -> None:
        """Inline variant: never raises."""
        try:
            await cls.recompute_exam_statistics(db, exam_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"[EXAM STATISTICS FAILED] exam={exam_id}: {type(e).__name__}: {e}")


async def refresh_statistics_in_background(exam_id: str) -> None:
    """BackgroundTasks entry point: runs in its own session after the response."""
    from exam_engine.database import AsyncSessionLocal

    async with AsyncSessionLocal() as db:
        await StatisticsService.recompute_safely(db, exam_id)
