"""User-facing sync status and non-blocking notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from foamsync.errors import ErrorKind
from foamsync.models import utcnow

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


ERROR_MESSAGES = {
    ErrorKind.TRANSIENT: "Saved locally, will retry",
    ErrorKind.AUTHORIZATION: "Session expired, please sign in again",
    ErrorKind.PERMANENT: "Could not save",
}


@dataclass
class Notification:
    level: str  # info, warning, error
    message: str
    kind: ErrorKind | None = None
    created_at: datetime = field(default_factory=utcnow)


class NotificationCenter:
    """Collects notifications and forwards them to an optional listener."""

    def __init__(self, listener: Callable[[Notification], None] | None = None, limit: int = 100):
        self.items: list[Notification] = []
        self.listener = listener
        self.limit = limit

    def notify(self, level: str, message: str, kind: ErrorKind | None = None) -> Notification:
        notification = Notification(level=level, message=message, kind=kind)
        self.items.append(notification)
        del self.items[: -self.limit]
        if self.listener is not None:
            try:
                self.listener(notification)
            except Exception as e:
                logger.error(f"Notification listener failed: {e}")
        return notification

    def for_error(self, kind: ErrorKind, detail: str | None = None) -> Notification:
        """Notification for a failed write, worded by error kind."""
        message = ERROR_MESSAGES[kind]
        if detail:
            message = f"{message}: {detail}"
        level = "warning" if kind is ErrorKind.TRANSIENT else "error"
        return self.notify(level, message, kind)

    @property
    def latest(self) -> Notification | None:
        return self.items[-1] if self.items else None

    def clear(self) -> None:
        self.items.clear()
