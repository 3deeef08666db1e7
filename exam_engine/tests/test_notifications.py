"""
Notification delivery and post-commit robustness: fan-out, deferral to after
the response, failing sinks and a misbehaving course service.
"""
import asyncio
import logging

import httpx
import pytest
from fastapi import BackgroundTasks

from exam_engine.integrations.http_adapters import HttpCourseDirectory
from exam_engine.integrations.in_memory import InMemoryCourseDirectory, InMemoryNotificationSink
from exam_engine.integrations.notification_sink import NotificationEvent, NotificationSink
from exam_engine.orm.exam import ExamStatus
from exam_engine.orm.exam_attempt import AttemptStatus, SubmissionMethod
from exam_engine.orm.reattempt_request import ReAttemptStatus
from exam_engine.orm.roles import UserRole
from exam_engine.routes.dependencies import get_request_notification_sink
from exam_engine.services import notifications
from exam_engine.services.attempt_service import AttemptService
from exam_engine.services.exam_definition_service import ExamDefinitionService
from exam_engine.services.exam_review_service import ExamReviewService
from exam_engine.services.grading_service import GradingService
from exam_engine.services.notifications import DeferredNotificationSink, dispatch
from exam_engine.services.reattempt_service import ReAttemptService
from exam_engine.services.violation_service import ViolationService
from exam_engine.tests.helpers import (
    COURSE_ID, ADMIN_ID, TEACHER_ID, STUDENT_ID, mcq, create_live_exam, create_pending_exam, start, submit
)


class FailingSink(NotificationSink):
    """Every delivery fails the way an unreachable notification service does."""

    def __init__(self):
        self.calls = 0

    async def emit(self, event: NotificationEvent) -> None:
        self.calls += 1
        raise httpx.ConnectError("notification service unreachable")


class SlowSink(InMemoryNotificationSink):

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def emit(self, event: NotificationEvent) -> None:
        await asyncio.sleep(self.delay)
        await super().emit(event)


class UnreachableCreatorDirectory(InMemoryCourseDirectory):
    """Enrolment works, the creator lookup blows up."""

    async def get_course_creator(self, course_id):
        raise RuntimeError("course service returned garbage")


def event(recipient: str) -> NotificationEvent:
    return NotificationEvent(recipient=recipient, type="exam_published", title="New Exam", message="Exam is live")


def course_service(handler) -> HttpCourseDirectory:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://courses.test")
    return HttpCourseDirectory("http://courses.test", client=client)


def maintenance_page(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="<html><body>Down for maintenance</body></html>")


# =============================================================================
# Dispatch
# =============================================================================

class TestDispatch:

    @pytest.mark.asyncio
    async def test_events_are_sent_concurrently(self):
        sink = SlowSink(delay=0.1)
        loop = asyncio.get_running_loop()

        started = loop.time()
        delivered = await dispatch(sink, [event(f"student-{n}") for n in range(20)])
        elapsed = loop.time() - started

        assert delivered == 20
        assert len(sink.events) == 20
        assert elapsed < 1.0

    @pytest.mark.asyncio
    async def test_failures_are_logged_and_counted(self, caplog):
        with caplog.at_level(logging.WARNING, logger="exam_engine.services.notifications"):
            delivered = await dispatch(FailingSink(), [event("student-1"), event("student-2")])

        assert delivered == 0
        assert "[NOTIFY FAILED]" in caplog.text
        assert "ConnectError" in caplog.text

    @pytest.mark.asyncio
    async def test_nothing_to_send(self):
        sink = FailingSink()
        assert await dispatch(sink, []) == 0
        assert sink.calls == 0


class TestDeferredDelivery:

    @pytest.mark.asyncio
    async def test_events_wait_for_flush(self):
        sink = InMemoryNotificationSink()
        deferred = DeferredNotificationSink(sink)

        await dispatch(deferred, [event("student-1"), event("student-2")])
        assert sink.events == []

        assert await deferred.flush() == 2
        assert [item.recipient for item in sink.events] == ["student-1", "student-2"]
        assert deferred.pending == []

    @pytest.mark.asyncio
    async def test_request_dependency_flushes_in_background(self):
        sink = InMemoryNotificationSink()
        background_tasks = BackgroundTasks()

        request_sink = get_request_notification_sink(background_tasks, sink)
        await request_sink.emit(event("student-1"))
        assert sink.events == []

        await background_tasks()
        assert [item.recipient for item in sink.events] == ["student-1"]

    @pytest.mark.asyncio
    async def test_approval_does_not_wait_on_delivery(self, db_session, directory):
        for n in range(20):
            directory.enroll(COURSE_ID, f"extra-student-{n}")
        slow = SlowSink(delay=0.1)
        deferred = DeferredNotificationSink(slow)
        exam = await create_pending_exam(db_session, directory, InMemoryNotificationSink())
        loop = asyncio.get_running_loop()

        started = loop.time()
        exam = await ExamReviewService.review_exam(
            db_session, directory, deferred, exam.id, ADMIN_ID, UserRole.admin, "approve"
        )
        elapsed = loop.time() - started

        assert exam.status == ExamStatus.APPROVED
        assert elapsed < 0.5
        assert slow.events == []
        assert len(deferred.pending) == 23
        assert await deferred.flush() == 23
        assert len(slow.of_type(notifications.EXAM_PUBLISHED)) == 22


# =============================================================================
# Transitions survive a failing sink
# =============================================================================

class TestFailingSink:

    @pytest.mark.asyncio
    async def test_approve_still_publishes(self, db_session, directory):
        sink = FailingSink()
        exam = await create_live_exam(db_session, directory, sink)

        assert exam.status == ExamStatus.APPROVED
        assert exam.is_published is True
        assert sink.calls > 0

    @pytest.mark.asyncio
    async def test_submit_still_commits(self, db_session, directory):
        sink = FailingSink()
        exam = await create_live_exam(db_session, directory, sink, questions=[mcq("q1")])
        started = await start(db_session, directory, exam)

        result = await submit(db_session, directory, sink, started["attempt_id"], [{"question_id": "q1", "selected_option": 0}])

        assert result["percentage"] == 100
        attempt = await AttemptService.get_attempt(db_session, started["attempt_id"], fresh=True)
        assert attempt.status == AttemptStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_violation_auto_submit_still_commits(self, db_session, directory):
        sink = FailingSink()
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)

        for _ in range(3):
            result = await ViolationService.record_violation(
                db_session, directory, sink, started["attempt_id"], STUDENT_ID, "tab_switch"
            )

        assert result["terminated"] is True
        attempt = await AttemptService.get_attempt(db_session, started["attempt_id"], fresh=True)
        assert attempt.status == AttemptStatus.SUBMITTED
        assert attempt.submission_method == SubmissionMethod.AUTO_VIOLATION

    @pytest.mark.asyncio
    async def test_publish_score_still_opens_results(self, db_session, directory):
        sink = FailingSink()
        exam = await create_live_exam(db_session, directory, sink, questions=[mcq("q1")])
        started = await start(db_session, directory, exam)
        await submit(db_session, directory, sink, started["attempt_id"], [{"question_id": "q1", "selected_option": 0}])

        published = await GradingService.publish_score(db_session, directory, sink, started["attempt_id"], TEACHER_ID)

        assert published["final_score"] == 10
        results = await GradingService.get_results(db_session, started["attempt_id"], STUDENT_ID)
        assert results["percentage"] == 100

    @pytest.mark.asyncio
    async def test_reattempt_review_still_grants(self, db_session, directory):
        sink = FailingSink()
        exam = await create_live_exam(db_session, directory, sink)
        started = await start(db_session, directory, exam)
        await submit(db_session, directory, sink, started["attempt_id"])
        request = await ReAttemptService.request_reattempt(
            db_session, directory, sink,
            student_id=STUDENT_ID,
            violation_type="power_outage",
            violation_details="Power cut at minute 10",
            student_message="The power went out in my area.",
            original_attempt_id=started["attempt_id"],
        )

        request = await ReAttemptService.review_request(db_session, sink, request.id, TEACHER_ID, "approve")

        assert request.status == ReAttemptStatus.APPROVED
        second = await start(db_session, directory, exam)
        assert second["attempt_number"] == 2


# =============================================================================
# Course service misbehaving after a submission has committed
# =============================================================================

class TestCourseServiceFailures:

    @pytest.mark.asyncio
    async def test_non_json_body_fails_closed(self):
        directory = course_service(maintenance_page)

        assert await directory.get_course_creator(COURSE_ID) is None
        assert await directory.is_enrolled(STUDENT_ID, COURSE_ID) is False
        assert await directory.list_enrolled_students(COURSE_ID) == []
        await directory.close()

    @pytest.mark.asyncio
    async def test_non_object_body_fails_closed(self):
        directory = course_service(lambda request: httpx.Response(200, json=["teacher-1"]))

        assert await directory.get_course_creator(COURSE_ID) is None
        await directory.close()

    @pytest.mark.asyncio
    async def test_submit_survives_maintenance_page(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink, questions=[mcq("q1")])
        started = await start(db_session, directory, exam)
        sink.clear()
        broken = course_service(maintenance_page)

        result = await submit(db_session, broken, sink, started["attempt_id"], [{"question_id": "q1", "selected_option": 0}])

        assert result["percentage"] == 100
        events = sink.of_type(notifications.EXAM_SUBMISSION_REVIEW)
        assert [item.recipient for item in events] == [TEACHER_ID]
        exam = await ExamDefinitionService.get_exam(db_session, exam.id)
        assert exam.total_attempts == 1
        await broken.close()

    @pytest.mark.asyncio
    async def test_submit_survives_creator_lookup_error(self, db_session, directory, sink):
        exam = await create_live_exam(db_session, directory, sink, questions=[mcq("q1")])
        started = await start(db_session, directory, exam)
        broken = UnreachableCreatorDirectory()
        scheduled = []

        result = await AttemptService.submit_attempt(
            db_session, broken, sink, started["attempt_id"], STUDENT_ID,
            [{"question_id": "q1", "selected_option": 0}],
            schedule_statistics=scheduled.append,
        )

        assert result["passed"] is True
        assert scheduled == [exam.id]
        attempt = await AttemptService.get_attempt(db_session, started["attempt_id"], fresh=True)
        assert attempt.status == AttemptStatus.SUBMITTED
