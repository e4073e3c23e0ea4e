# plansync/sync/notices.py
"""
User-visible notices (toasts).

A side channel for failures and noteworthy remote changes. Emitting a notice
never blocks or fails the operation that produced it.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class NoticeLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    NoticeLevel.INFO: logging.INFO,
    NoticeLevel.SUCCESS: logging.INFO,
    NoticeLevel.WARNING: logging.WARNING,
    NoticeLevel.ERROR: logging.WARNING,
}


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    message: str
    description: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


NoticeListener = Callable[[Notice], None]


class Notifier:
    """Collects notices, keeps a bounded history and fans them out to listeners."""

    def __init__(self, history_size: int = 50) -> None:
        self._history: deque[Notice] = deque(maxlen=history_size)
        self._listeners: list[NoticeListener] = []

    @property
    def history(self) -> list[Notice]:
        return list(self._history)

    def subscribe(self, listener: NoticeListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self, level: NoticeLevel, message: str, description: str | None = None
    ) -> Notice:
        notice = Notice(level=level, message=message, description=description)
        self._history.append(notice)
        logger.log(_LOG_LEVELS[level], f"[{level.value}] {message}")

        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception(f"Notice listener {listener!r} failed")
        return notice

    def info(self, message: str, description: str | None = None) -> Notice:
        return self.emit(NoticeLevel.INFO, message, description)

    def success(self, message: str, description: str | None = None) -> Notice:
        return self.emit(NoticeLevel.SUCCESS, message, description)

    def warning(self, message: str, description: str | None = None) -> Notice:
        return self.emit(NoticeLevel.WARNING, message, description)

    def error(self, message: str, description: str | None = None) -> Notice:
        return self.emit(NoticeLevel.ERROR, message, description)
