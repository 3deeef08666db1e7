"""
Notification Sink Interface

The engine produces notification events; delivery and storage belong to
the external notification service.
"""
import abc
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class NotificationEvent:
    recipient: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    sender: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NotificationSink(abc.ABC):
    """
    Abstract base class for notification sinks.

    Implementations may raise on delivery failure; callers go through
    `exam_engine.services.notifications`, which logs and swallows.
    """

    @abc.abstractmethod
    async def emit(self, event: NotificationEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None
