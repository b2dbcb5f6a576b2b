"""Offline-tolerant client sync."""

from foamsync.sync.coordinator import RemoteStore, SessionContext, SyncCoordinator
from foamsync.sync.local_cache import CachedState, LocalCache
from foamsync.sync.notifications import Notification, NotificationCenter, SyncStatus
from foamsync.sync.retry import WriteOutcome, WriteResult, retry_write

__all__ = [
    "SyncCoordinator",
    "SessionContext",
    "RemoteStore",
    "LocalCache",
    "CachedState",
    "Notification",
    "NotificationCenter",
    "SyncStatus",
    "WriteOutcome",
    "WriteResult",
    "retry_write",
]
