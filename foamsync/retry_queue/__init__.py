"""Durable queue for writes that could not reach the store."""

from foamsync.retry_queue.backoff import next_retry_at, retry_delay
from foamsync.retry_queue.replay import REPLAY_TABLES, replay, resolve_replay
from foamsync.retry_queue.service import RetryQueueService

__all__ = [
    "RetryQueueService",
    "REPLAY_TABLES",
    "replay",
    "resolve_replay",
    "retry_delay",
    "next_retry_at",
]
