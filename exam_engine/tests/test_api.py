"""
HTTP surface tests: auth envelopes, error mapping and the end-to-end
author → review → attempt → grade → publish flow through the routers.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from exam_engine.database import get_db
from exam_engine.integrations import get_course_directory, get_notification_sink
from exam_engine.main import app
from exam_engine.orm.roles import UserRole
from exam_engine.rbac import create_access_token
from exam_engine.routes.attempts import get_statistics_scheduler
from exam_engine.services import notifications
from exam_engine.tests.helpers import (
    COURSE_ID, TEACHER_ID, ADMIN_ID, STUDENT_ID, OTHER_STUDENT_ID, mcq, essay
)


def auth(user_id: str, role: UserRole) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


TEACHER = auth(TEACHER_ID, UserRole.teacher)
ADMIN = auth(ADMIN_ID, UserRole.admin)
STUDENT = auth(STUDENT_ID, UserRole.student)
OTHER_STUDENT = auth(OTHER_STUDENT_ID, UserRole.student)

EXAM_BODY = {
    "course_id": COURSE_ID,
    "title": "Contract Law Final",
    "time_limit": 45,
    "passing_score": 60,
    "shuffle_questions": False,
    "randomize_options": False,
    "questions": [mcq("q1"), essay("q2")],
}


@pytest_asyncio.fixture
async def client(db_session, directory, sink):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_course_directory] = lambda: directory
    app.dependency_overrides[get_notification_sink] = lambda: sink
    app.dependency_overrides[get_statistics_scheduler] = lambda: None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def live_exam_id(client) -> str:
    created = await client.post("/api/exams", json=EXAM_BODY, headers=TEACHER)
    assert created.status_code == 201
    exam_id = created.json()["exam"]["id"]
    reviewed = await client.post(f"/api/exams/{exam_id}/review", json={"action": "approve"}, headers=ADMIN)
    assert reviewed.status_code == 200
    return exam_id


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/exams/available")
        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        token = create_access_token(STUDENT_ID, UserRole.student, expires_delta=timedelta(minutes=-5))
        response = await client.get("/api/exams/available", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_INVALID"

    @pytest.mark.asyncio
    async def test_wrong_role(self, client):
        response = await client.get("/api/exams/pending-review", headers=TEACHER)
        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "FORBIDDEN"
        assert body["details"]["current_role"] == "teacher"


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_schema_violation_is_422(self, client):
        response = await client.post("/api/exams", json={"title": "No course"}, headers=TEACHER)
        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"]

    @pytest.mark.asyncio
    async def test_domain_validation_is_400(self, client):
        response = await client.post("/api/exams", json={**EXAM_BODY, "questions": []}, headers=TEACHER)
        assert response.status_code == 400
        assert "At least one question is required" in response.json()["details"]["errors"]

    @pytest.mark.asyncio
    async def test_missing_exam_is_404(self, client):
        response = await client.get("/api/exams/nope", headers=TEACHER)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_running_attempt_is_409_with_its_id(self, client):
        exam_id = await live_exam_id(client)
        first = await client.post(f"/api/exams/{exam_id}/start", headers=STUDENT)
        assert first.status_code == 201

        second = await client.post(f"/api/exams/{exam_id}/start", headers=STUDENT)
        assert second.status_code == 409
        body = second.json()
        assert body["code"] == "ATTEMPT_IN_PROGRESS"
        assert body["details"]["attempt_id"] == first.json()["attempt"]["attempt_id"]

    @pytest.mark.asyncio
    async def test_self_review_is_403(self, client, directory):
        directory.add_course("course-admin", ADMIN_ID)
        created = await client.post("/api/exams", json={**EXAM_BODY, "course_id": "course-admin"}, headers=ADMIN)
        exam_id = created.json()["exam"]["id"]

        response = await client.post(f"/api/exams/{exam_id}/review", json={"action": "approve"}, headers=ADMIN)
        assert response.status_code == 403
        assert response.json()["code"] == "SELF_REVIEW_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_unknown_violation_type_is_422(self, client):
        exam_id = await live_exam_id(client)
        started = await client.post(f"/api/exams/{exam_id}/start", headers=STUDENT)
        attempt_id = started.json()["attempt"]["attempt_id"]

        response = await client.post(
            f"/api/attempts/{attempt_id}/violations", json={"violation_type": "screenshot"}, headers=STUDENT
        )
        assert response.status_code == 422


class TestExamFlow:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client, sink):
        exam_id = await live_exam_id(client)

        available = await client.get("/api/exams/available", headers=STUDENT)
        assert [exam["id"] for exam in available.json()["exams"]] == [exam_id]

        started = await client.post(
            f"/api/exams/{exam_id}/start", json={"client_info": {"browser": "firefox"}}, headers=STUDENT
        )
        attempt = started.json()["attempt"]
        assert all("is_correct" not in option for option in attempt["questions"][0]["options"])

        submitted = await client.post(f"/api/attempts/{attempt['attempt_id']}/submit", json={"answers": [
            {"question_id": "q1", "selected_option": 0},
            {"question_id": "q2", "text_answer": "Consideration must move from the promisee."},
        ]}, headers=STUDENT)
        assert submitted.status_code == 200
        submission = submitted.json()["submission"]
        assert submission["percentage"] == 50
        assert submission["needs_manual_grading"] is True

        hidden = await client.get(f"/api/attempts/{attempt['attempt_id']}/results", headers=STUDENT)
        assert hidden.status_code == 403
        assert hidden.json()["code"] == "RESULTS_NOT_PUBLISHED"

        queue = await client.get("/api/attempts/pending-review", headers=TEACHER)
        assert [item["id"] for item in queue.json()["attempts"]] == [attempt["attempt_id"]]

        graded = await client.post(
            f"/api/attempts/{attempt['attempt_id']}/grades",
            json={"grades": [{"question_id": "q2", "score": 8}]},
            headers=TEACHER,
        )
        assert graded.json()["attempt"]["percentage"] == 90

        published = await client.post(f"/api/attempts/{attempt['attempt_id']}/publish-score", headers=TEACHER)
        assert published.status_code == 200
        assert published.json()["publication"]["final_passed"] is True

        results = await client.get(f"/api/attempts/{attempt['attempt_id']}/results", headers=STUDENT)
        assert results.status_code == 200
        assert results.json()["results"]["percentage"] == 90

        exam = await client.get(f"/api/exams/{exam_id}", headers=TEACHER)
        assert exam.json()["exam"]["statistics"]["total_attempts"] == 1

    @pytest.mark.asyncio
    async def test_notifications_follow_the_response(self, client, sink):
        await live_exam_id(client)

        assert [event.recipient for event in sink.of_type(notifications.EXAM_APPROVED)] == [TEACHER_ID]
        published = sink.of_type(notifications.EXAM_PUBLISHED)
        assert sorted(event.recipient for event in published) == [STUDENT_ID, OTHER_STUDENT_ID]

    @pytest.mark.asyncio
    async def test_violations_terminate_attempt(self, client):
        exam_id = await live_exam_id(client)
        started = await client.post(f"/api/exams/{exam_id}/start", headers=STUDENT)
        attempt_id = started.json()["attempt"]["attempt_id"]

        for _ in range(3):
            response = await client.post(
                f"/api/attempts/{attempt_id}/violations", json={"violation_type": "tab_switch"}, headers=STUDENT
            )
        assert response.json()["violation"]["terminated"] is True

        late = await client.post(f"/api/attempts/{attempt_id}/submit", json={"answers": []}, headers=STUDENT)
        assert late.status_code == 409
        assert late.json()["code"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_reattempt_round_trip(self, client):
        exam_id = await live_exam_id(client)
        started = await client.post(f"/api/exams/{exam_id}/start", headers=STUDENT)
        attempt_id = started.json()["attempt"]["attempt_id"]
        await client.post(f"/api/attempts/{attempt_id}/submit", json={"answers": []}, headers=STUDENT)

        filed = await client.post("/api/reattempts", json={
            "original_attempt_id": attempt_id,
            "violation_type": "power_outage",
            "violation_details": "Power cut at minute 10",
            "student_message": "The power went out in my area.",
        }, headers=STUDENT)
        assert filed.status_code == 201
        request_id = filed.json()["request"]["id"]

        inbox = await client.get("/api/reattempts/inbox", params={"status": "pending"}, headers=TEACHER)
        assert [item["id"] for item in inbox.json()["requests"]] == [request_id]

        decided = await client.post(
            f"/api/reattempts/{request_id}/review", json={"action": "approve"}, headers=TEACHER
        )
        assert decided.status_code == 200

        again = await client.post(f"/api/exams/{exam_id}/start", headers=STUDENT)
        assert again.status_code == 201
        assert again.json()["attempt"]["attempt_number"] == 2

    @pytest.mark.asyncio
    async def test_contact_creator_rejects_short_messages(self, client):
        exam_id = await live_exam_id(client)
        response = await client.post("/api/reattempts/contact-creator", json={
            "exam_id": exam_id, "reason": "want_retake", "message": "too short",
        }, headers=OTHER_STUDENT)
        assert response.status_code == 422
