"""
exam_engine/integrations
Adapters for the services the engine consumes.

HTTP adapters are used when the service URL is configured, in-memory ones
otherwise. Both are process-wide singletons exposed as FastAPI dependencies.
"""
import logging
from typing import Optional

from exam_engine.config.settings import settings
from .course_directory import CourseDirectory
from .notification_sink import NotificationEvent, NotificationSink
from .in_memory import InMemoryCourseDirectory, InMemoryNotificationSink
from .http_adapters import HttpCourseDirectory, HttpNotificationSink

logger = logging.getLogger(__name__)

_course_directory: Optional[CourseDirectory] = None
_notification_sink: Optional[NotificationSink] = None


def get_course_directory() -> CourseDirectory:
    global _course_directory
    if _course_directory is None:
        if settings.COURSE_SERVICE_URL:
            _course_directory = HttpCourseDirectory(
                settings.COURSE_SERVICE_URL, timeout=settings.INTEGRATION_TIMEOUT_SECONDS
            )
            logger.info(f"✓ Course directory: {settings.COURSE_SERVICE_URL}")
        else:
            _course_directory = InMemoryCourseDirectory()
            logger.warning("COURSE_SERVICE_URL not set - using in-memory course directory")
    return _course_directory


def get_notification_sink() -> NotificationSink:
    global _notification_sink
    if _notification_sink is None:
        if settings.NOTIFICATION_SERVICE_URL:
            _notification_sink = HttpNotificationSink(
                settings.NOTIFICATION_SERVICE_URL, timeout=settings.INTEGRATION_TIMEOUT_SECONDS
            )
            logger.info(f"✓ Notification sink: {settings.NOTIFICATION_SERVICE_URL}")
        else:
            _notification_sink = InMemoryNotificationSink()
            logger.warning("NOTIFICATION_SERVICE_URL not set - using in-memory notification sink")
    return _notification_sink


async def close_integrations() -> None:
    global _course_directory, _notification_sink
    if _course_directory is not None:
        await _course_directory.close()
        _course_directory = None
    if _notification_sink is not None:
        await _notification_sink.close()
        _notification_sink = None


__all__ = [
    "CourseDirectory",
    "NotificationEvent",
    "NotificationSink",
    "InMemoryCourseDirectory",
    "InMemoryNotificationSink",
    "HttpCourseDirectory",
    "HttpNotificationSink",
    "get_course_directory",
    "get_notification_sink",
    "close_integrations",
]
