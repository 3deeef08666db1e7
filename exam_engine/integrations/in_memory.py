"""
In-memory course directory and notification sink (development mode).

No external services needed; the test suite seeds courses, enrolments and
admins directly and inspects emitted events.
"""
import asyncio
from typing import Dict, Iterable, List, Optional, Set

from .course_directory import CourseDirectory
from .notification_sink import NotificationEvent, NotificationSink


class InMemoryCourseDirectory(CourseDirectory):

    def __init__(self):
        self._creators: Dict[str, str] = {}
        self._enrollments: Dict[str, Set[str]] = {}
        self._admins: Set[str] = set()

    def add_course(self, course_id: str, creator_id: str, students: Iterable[str] = ()) -> None:
        self._creators[course_id] = creator_id
        self._enrollments.setdefault(course_id, set()).update(students)

    def enroll(self, course_id: str, student_id: str) -> None:
        self._enrollments.setdefault(course_id, set()).add(student_id)

    def add_admin(self, admin_id: str) -> None:
        self._admins.add(admin_id)

    async def get_course_creator(self, course_id: str) -> Optional[str]:
        return self._creators.get(course_id)

    async def is_enrolled(self, student_id: str, course_id: str) -> bool:
        return student_id in self._enrollments.get(course_id, set())

    async def list_enrolled_students(self, course_id: str) -> List[str]:
        return sorted(self._enrollments.get(course_id, set()))

    async def list_admins(self) -> List[str]:
        return sorted(self._admins)

    async def list_courses_created_by(self, user_id: str) -> List[str]:
        return sorted(course_id for course_id, creator in self._creators.items() if creator == user_id)


class InMemoryNotificationSink(NotificationSink):
    """Keeps every emitted event in order."""

    def __init__(self):
        self.events: List[NotificationEvent] = []
        self._lock = asyncio.Lock()

    async def emit(self, event: NotificationEvent) -> None:
        async with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        return [event for event in self.events if event.type == event_type]

    def for_recipient(self, recipient: str) -> List[NotificationEvent]:
        return [event for event in self.events if event.recipient == recipient]

    def clear(self) -> None:
        self.events.clear()
