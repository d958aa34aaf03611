"""
Notification bus.

Every transition, lock failure and validation failure produces one
Notification. Delivery (toasts, email) belongs to subscribers; the bus only
fans out and keeps a short history.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from jobledger.services.errors import ErrorCode, JobLedgerError

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


@dataclass
class Notification:
    type: NotificationType
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    undo: Optional[Dict[str, Any]] = None
    notification_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "type": self.type.value,
            "message": self.message,
            "details": self.details,
            "undo": self.undo,
            "timestamp": self.timestamp,
        }


class NotificationBus:
    _instance: Optional["NotificationBus"] = None

    def __init__(self):
        self._subscribers: List[Callable[[Notification], Any]] = []
        self._history: List[Notification] = []
        self._max_history = 500

    @classmethod
    def get_instance(cls) -> "NotificationBus":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def subscribe(self, handler: Callable[[Notification], Any]) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: Callable[[Notification], Any]) -> None:
        self._subscribers = [h for h in self._subscribers if h != handler]

    def publish(self, notification: Notification) -> Notification:
        logger.debug("Notification: %s | %s", notification.type.value, notification.message)
        self._history.append(notification)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        for handler in list(self._subscribers):
            try:
                handler(notification)
            except Exception as exc:
                # Delivery failures never undo the write that produced the notification
                logger.error("Notification handler %s failed: %s", getattr(handler, "__name__", handler), exc)
        return notification

    def success(self, message: str, details: Optional[Dict[str, Any]] = None, undo: Optional[Dict[str, Any]] = None) -> Notification:
        return self.publish(Notification(NotificationType.SUCCESS, message, details or {}, undo))

    def failure(self, error: JobLedgerError) -> Notification:
        kind = NotificationType.CONFLICT if error.code in (
            ErrorCode.VERSION_CONFLICT, ErrorCode.LOCKED
        ) else NotificationType.ERROR
        return self.publish(Notification(kind, error.message, error.to_dict()))

    def get_history(self, limit: int = 100) -> List[Notification]:
        return self._history[-limit:]

    def clear(self) -> None:
        self._history = []


def get_notification_bus() -> NotificationBus:
    return NotificationBus.get_instance()


@contextmanager
def notify_failures(bus: Optional[NotificationBus] = None):
    """Publish any JobLedgerError raised in the block, then re-raise it."""
    try:
        yield
    except JobLedgerError as exc:
        (bus or get_notification_bus()).failure(exc)
        raise
