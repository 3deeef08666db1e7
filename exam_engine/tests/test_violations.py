"""
Anti-cheat violation tests: severity, the three-strike auto-submit and the
notifications it produces.
"""
import pytest

from exam_engine.errors import ForbiddenError, InvalidStateError, ValidationError
from exam_engine.orm.exam_attempt import (
    AttemptStatus, GradingStatus, SubmissionMethod, ViolationType, ViolationSeverity
)
from exam_engine.services import notifications
from exam_engine.services.attempt_service import AttemptService
from exam_engine.services.violation_service import ViolationService, severity_for, termination_reason
from exam_engine.tests.helpers import (
    TEACHER_ID, STUDENT_ID, OTHER_STUDENT_ID, create_live_exam, start, submit
)


async def report(db, directory, sink, attempt_id, violation_type="tab_switch", student_id=STUDENT_ID, details=None):
    return await ViolationService.record_violation(
        db, directory, sink, attempt_id, student_id, violation_type, details
    )


class TestSeverity:

    def test_tab_switch_is_high(self):
        assert severity_for(ViolationType.TAB_SWITCH) == ViolationSeverity.HIGH

    @pytest.mark.parametrize("violation_type", [
        ViolationType.COPY_PASTE,
        ViolationType.RIGHT_CLICK,
        ViolationType.FULLSCREEN_EXIT,
        ViolationType.SUSPICIOUS_ACTIVITY,
    ])
    def test_everything_else_is_medium(self, violation_type):
        assert severity_for(violation_type) == ViolationSeverity.MEDIUM

    def test_termination_reason_lists_types_in_order(self):
        reason = termination_reason([{"type": "tab_switch"}, {"type": "copy_paste"}, {"type": "tab_switch"}])
        assert reason == "Exam terminated due to 3 violations: tab_switch, copy_paste, tab_switch"


class TestRecordViolation:

    @pytest.mark.asyncio
    async def test_first_violation_is_recorded(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)

        result = await report(db_session, directory, sink, started["attempt_id"], "copy_paste", details="Ctrl+V")

        assert result["violation_count"] == 1
        assert result["terminated"] is False
        attempt = await AttemptService.get_attempt(db_session, started["attempt_id"], fresh=True)
        assert attempt.status == AttemptStatus.IN_PROGRESS
        assert attempt.violations[0]["type"] == "copy_paste"
        assert attempt.violations[0]["severity"] == "medium"
        assert attempt.violations[0]["details"] == "Ctrl+V"
        assert attempt.flagged_for_review is False

    @pytest.mark.asyncio
    async def test_third_violation_auto_submits(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        attempt_id = started["attempt_id"]

        await report(db_session, directory, sink, attempt_id, "tab_switch")
        await report(db_session, directory, sink, attempt_id, "copy_paste")
        result = await report(db_session, directory, sink, attempt_id, "tab_switch")

        assert result["terminated"] is True
        assert result["auto_submitted"] is True
        assert result["termination_reason"] == (
            "Exam terminated due to 3 violations: tab_switch, copy_paste, tab_switch"
        )

        attempt = await AttemptService.get_attempt(db_session, attempt_id, fresh=True)
        assert attempt.status == AttemptStatus.SUBMITTED
        assert attempt.submission_method == SubmissionMethod.AUTO_VIOLATION
        assert attempt.terminated_due_to_violation is True
        assert attempt.flagged_for_review is True
        assert attempt.violation_count == 3
        assert attempt.grading_status == GradingStatus.PARTIALLY_GRADED
        assert attempt.submitted_at is not None

    @pytest.mark.asyncio
    async def test_auto_submit_notifies_course_creator_twice(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        sink.clear()

        for _ in range(3):
            await report(db_session, directory, sink, started["attempt_id"])

        assert [event.type for event in sink.events] == [
            notifications.EXAM_VIOLATION_SUBMISSION,
            notifications.EXAM_SUBMISSION_REVIEW,
        ]
        assert {event.recipient for event in sink.events} == {TEACHER_ID}
        assert sink.events[0].data["violations"] == ["tab_switch"] * 3

    @pytest.mark.asyncio
    async def test_no_violations_after_termination(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        for _ in range(3):
            await report(db_session, directory, sink, started["attempt_id"])

        with pytest.raises(InvalidStateError):
            await report(db_session, directory, sink, started["attempt_id"])

        attempt = await AttemptService.get_attempt(db_session, started["attempt_id"], fresh=True)
        assert attempt.violation_count == 3

    @pytest.mark.asyncio
    async def test_no_violations_after_submit(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        await submit(db_session, directory, sink, started["attempt_id"])

        with pytest.raises(InvalidStateError):
            await report(db_session, directory, sink, started["attempt_id"])

    @pytest.mark.asyncio
    async def test_submit_after_termination_is_rejected(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        for _ in range(3):
            await report(db_session, directory, sink, started["attempt_id"])

        with pytest.raises(InvalidStateError):
            await submit(db_session, directory, sink, started["attempt_id"], [{"question_id": "q1", "selected_option": 0}])

    @pytest.mark.asyncio
    async def test_other_student_cannot_report(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        with pytest.raises(ForbiddenError):
            await report(db_session, directory, sink, started["attempt_id"], student_id=OTHER_STUDENT_ID)

    @pytest.mark.asyncio
    async def test_unknown_type(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        with pytest.raises(ValidationError) as exc:
            await report(db_session, directory, sink, started["attempt_id"], "screenshot")
        assert "tab_switch" in exc.value.details["allowed"]
