"""
HTTP adapters for the external course and notification services.

Course service contract:
    GET  {base}/courses/{course_id}                          -> {"creator_id": "..."}
    GET  {base}/courses/{course_id}/enrollments/{student_id} -> {"enrolled": true}
    GET  {base}/courses/{course_id}/students                 -> {"student_ids": [...]}
    GET  {base}/courses?creator_id=...                       -> {"course_ids": [...]}
    GET  {base}/users?role=admin                             -> {"user_ids": [...]}

Notification service contract:
    POST {base}/notifications   body = NotificationEvent.to_dict()
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .course_directory import CourseDirectory
from .notification_sink import NotificationEvent, NotificationSink

logger = logging.getLogger(__name__)


class HttpCourseDirectory(CourseDirectory):

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.get(path, params=params)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[COURSE DIRECTORY] GET {path} failed: {type(e).__name__}: {str(e)}")
            return None
        if not isinstance(payload, dict):
            logger.error(f"[COURSE DIRECTORY] GET {path} returned {type(payload).__name__}, expected an object")
            return None
        return payload

    async def get_course_creator(self, course_id: str) -> Optional[str]:
        payload = await self._get_json(f"/courses/{course_id}")
        if not payload:
            return None
        creator_id = payload.get("creator_id")
        return str(creator_id) if creator_id is not None else None

    async def is_enrolled(self, student_id: str, course_id: str) -> bool:
        payload = await self._get_json(f"/courses/{course_id}/enrollments/{student_id}")
        return bool(payload and payload.get("enrolled"))

    async def list_enrolled_students(self, course_id: str) -> List[str]:
        payload = await self._get_json(f"/courses/{course_id}/students")
        return [str(student_id) for student_id in (payload or {}).get("student_ids", [])]

    async def list_admins(self) -> List[str]:
        payload = await self._get_json("/users", params={"role": "admin"})
        return [str(user_id) for user_id in (payload or {}).get("user_ids", [])]

    async def list_courses_created_by(self, user_id: str) -> List[str]:
        payload = await self._get_json("/courses", params={"creator_id": user_id})
        return [str(course_id) for course_id in (payload or {}).get("course_ids", [])]

    async def close(self) -> None:
        await self._client.aclose()


class HttpNotificationSink(NotificationSink):
    """Delivery errors propagate; the notification dispatcher logs them."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def emit(self, event: NotificationEvent) -> None:
        response = await self._client.post("/notifications", json=event.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()
