"""
exam_engine/routes/dependencies.py
Request-scoped dependencies shared by the routers.
"""
from fastapi import BackgroundTasks, Depends

from exam_engine.integrations import NotificationSink, get_notification_sink
from exam_engine.services.notifications import DeferredNotificationSink


def get_request_notification_sink(
    background_tasks: BackgroundTasks,
    sink: NotificationSink = Depends(get_notification_sink)
) -> NotificationSink:
    """Dependency: collect events during the request and deliver them after the response."""
    deferred = DeferredNotificationSink(sink)
    background_tasks.add_task(deferred.flush)
    return deferred
