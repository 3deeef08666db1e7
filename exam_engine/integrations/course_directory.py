"""
Course Directory Interface

Abstract lookup over the external course/enrolment service. The engine
never stores courses or users; it asks the directory who created a course,
who is enrolled in it, and who the admins are.
"""
import abc
from typing import List, Optional


class CourseDirectory(abc.ABC):
    """
    Abstract base class for course directory adapters.

    Lookups fail closed: an unreachable service means "not the creator",
    "not enrolled" and "nobody to notify", never an exception.
    """

    @abc.abstractmethod
    async def get_course_creator(self, course_id: str) -> Optional[str]:
        """Id of the teacher who created the course, or None if unknown."""
        raise NotImplementedError

    @abc.abstractmethod
    async def is_enrolled(self, student_id: str, course_id: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_enrolled_students(self, course_id: str) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_admins(self) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_courses_created_by(self, user_id: str) -> List[str]:
        """Course ids the user created; drives the reviewer queues."""
        raise NotImplementedError

    async def owns_course(self, user_id: str, course_id: str) -> bool:
        creator_id = await self.get_course_creator(course_id)
        return creator_id is not None and creator_id == user_id

    async def close(self) -> None:
        """Release any held connections."""
        return None
