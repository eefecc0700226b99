from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable


logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    id: int
    level: NotificationLevel
    title: str
    description: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NotificationListener = Callable[[Notification], None]

_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.WARNING,
}


class Notifier:
    """Dismissible user-visible notifications.

    Notifications stay in ``active`` until dismissed. Listeners are called
    synchronously so a UI shell or CLI can render them as they arrive.
    """

    def __init__(self, *, max_active: int = 50) -> None:
        self._ids = itertools.count(1)
        self._active: list[Notification] = []
        self._listeners: list[NotificationListener] = []
        self._max_active = max_active

    @property
    def active(self) -> list[Notification]:
        return list(self._active)

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, level: NotificationLevel, title: str, description: str | None = None) -> Notification:
        notification = Notification(id=next(self._ids), level=level, title=title, description=description)
        self._active.append(notification)
        # Oldest notifications fall off first when nobody dismisses them.
        del self._active[: max(0, len(self._active) - self._max_active)]
        logger.log(_LOG_LEVELS[level], "notification level=%s title=%s", level.value, title)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:  # noqa: BLE001 - a broken renderer must not break the caller
                logger.exception("notification_listener_failed")
        return notification

    def info(self, title: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.INFO, title, description)

    def success(self, title: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.SUCCESS, title, description)

    def warning(self, title: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.WARNING, title, description)

    def error(self, title: str, description: str | None = None) -> Notification:
        return self.notify(NotificationLevel.ERROR, title, description)

    def dismiss(self, notification_id: int) -> bool:
        for index, notification in enumerate(self._active):
            if notification.id == notification_id:
                del self._active[index]
                return True
        return False

    def clear(self) -> None:
        self._active.clear()
