"""
Concurrency tests.

Each contender gets its own session on a file-backed database so the
database constraints and conditional updates are what decide the winner.
"""
import asyncio

import pytest

from exam_engine.errors import (
    AlreadyAttemptedError, AlreadyReviewedError, AttemptInProgressError, InvalidStateError
)
from exam_engine.orm.exam_attempt import AttemptStatus
from exam_engine.services.attempt_service import AttemptService
from exam_engine.services.reattempt_service import ReAttemptService
from exam_engine.services.violation_service import ViolationService
from exam_engine.tests.helpers import TEACHER_ID, STUDENT_ID, create_live_exam, start, submit


async def _in_session(session_factory, fn):
    async with session_factory() as db:
        try:
            return await fn(db)
        except Exception as e:
            return e


def outcomes(results, error_type):
    successes = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, error_type)]
    return successes, failures


class TestConcurrentStart:

    @pytest.mark.asyncio
    async def test_single_attempt_wins(self, file_session_factory, directory, sink):
        async with file_session_factory() as db:
            exam = await create_live_exam(db, directory, sink)

        results = await asyncio.gather(*[
            _in_session(file_session_factory, lambda db: start(db, directory, exam))
            for _ in range(2)
        ])

        successes, failures = outcomes(results, AttemptInProgressError)
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0].attempt_id == successes[0]["attempt_id"]

        async with file_session_factory() as db:
            attempts = await AttemptService.list_student_attempts(db, STUDENT_ID, exam.id)
        assert len(attempts) == 1


class TestConcurrentSubmit:

    @pytest.mark.asyncio
    async def test_first_submit_wins(self, file_session_factory, directory, sink):
        async with file_session_factory() as db:
            exam = await create_live_exam(db, directory, sink)
            started = await start(db, directory, exam)
        attempt_id = started["attempt_id"]

        results = await asyncio.gather(
            _in_session(file_session_factory, lambda db: submit(
                db, directory, sink, attempt_id, [{"question_id": "q1", "selected_option": 0}]
            )),
            _in_session(file_session_factory, lambda db: submit(
                db, directory, sink, attempt_id, [{"question_id": "q1", "selected_option": 3}]
            )),
        )

        successes, failures = outcomes(results, InvalidStateError)
        assert len(successes) == 1
        assert len(failures) == 1

        async with file_session_factory() as db:
            attempt = await AttemptService.get_attempt(db, attempt_id)
        assert attempt.status == AttemptStatus.SUBMITTED
        assert attempt.total_score == successes[0]["total_score"]

    @pytest.mark.asyncio
    async def test_submit_racing_final_violation(self, file_session_factory, directory, sink):
        async with file_session_factory() as db:
            exam = await create_live_exam(db, directory, sink)
            started = await start(db, directory, exam)
            attempt_id = started["attempt_id"]
            for _ in range(2):
                await ViolationService.record_violation(db, directory, sink, attempt_id, STUDENT_ID, "tab_switch")

        results = await asyncio.gather(
            _in_session(file_session_factory, lambda db: submit(db, directory, sink, attempt_id)),
            _in_session(file_session_factory, lambda db: ViolationService.record_violation(
                db, directory, sink, attempt_id, STUDENT_ID, "tab_switch"
            )),
        )

        successes, failures = outcomes(results, InvalidStateError)
        assert len(successes) == 1
        assert len(failures) == 1


class TestConcurrentViolations:

    @pytest.mark.asyncio
    async def test_no_violation_is_lost(self, file_session_factory, directory, sink):
        async with file_session_factory() as db:
            exam = await create_live_exam(db, directory, sink)
            started = await start(db, directory, exam)
        attempt_id = started["attempt_id"]

        results = await asyncio.gather(*[
            _in_session(file_session_factory, lambda db, kind=kind: ViolationService.record_violation(
                db, directory, sink, attempt_id, STUDENT_ID, kind
            ))
            for kind in ("copy_paste", "right_click")
        ])

        assert not [result for result in results if isinstance(result, Exception)]
        async with file_session_factory() as db:
            attempt = await AttemptService.get_attempt(db, attempt_id)
        assert attempt.violation_count == 2
        assert sorted(violation["type"] for violation in attempt.violations) == ["copy_paste", "right_click"]
        assert attempt.status == AttemptStatus.IN_PROGRESS


class TestConcurrentReattempts:

    @pytest.mark.asyncio
    async def test_grant_is_consumed_once(self, file_session_factory, directory, sink):
        async with file_session_factory() as db:
            exam = await create_live_exam(db, directory, sink)
            first = await start(db, directory, exam)
            await submit(db, directory, sink, first["attempt_id"])
            request = await ReAttemptService.request_reattempt(
                db, directory, sink, STUDENT_ID, "internet_issue", "Router died",
                "Connection dropped halfway.", original_attempt_id=first["attempt_id"],
            )
            await ReAttemptService.review_request(db, sink, request.id, TEACHER_ID, "approve")

        results = await asyncio.gather(*[
            _in_session(file_session_factory, lambda db: start(db, directory, exam))
            for _ in range(2)
        ])

        successes = [result for result in results if not isinstance(result, Exception)]
        failures = [result for result in results if isinstance(result, (AttemptInProgressError, AlreadyAttemptedError))]
        assert len(successes) == 1
        assert len(failures) == 1
        assert successes[0]["attempt_number"] == 2

    @pytest.mark.asyncio
    async def test_request_is_decided_once(self, file_session_factory, directory, sink):
        async with file_session_factory() as db:
            exam = await create_live_exam(db, directory, sink)
            first = await start(db, directory, exam)
            await submit(db, directory, sink, first["attempt_id"])
            request = await ReAttemptService.request_reattempt(
                db, directory, sink, STUDENT_ID, "technical_issue", "Crash",
                "The page went blank.", original_attempt_id=first["attempt_id"],
            )

        results = await asyncio.gather(
            _in_session(file_session_factory, lambda db: ReAttemptService.review_request(
                db, sink, request.id, TEACHER_ID, "approve"
            )),
            _in_session(file_session_factory, lambda db: ReAttemptService.review_request(
                db, sink, request.id, TEACHER_ID, "reject", "No evidence"
            )),
        )

        successes, failures = outcomes(results, AlreadyReviewedError)
        assert len(successes) == 1
        assert len(failures) == 1
