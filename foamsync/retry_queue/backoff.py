"""Back-off schedule for durable queue replays."""

from __future__ import annotations

from datetime import datetime, timedelta


def retry_delay(attempt: int, base_seconds: float = 10) -> float:
    """Seconds to wait before the next replay.

    attempt is the number of replays already made before the failing one
    (0 for the first), giving 10, 20, 40, 80, 160 with the default base.
    """
    return base_seconds * (2 ** max(attempt, 0))


def next_retry_at(now: datetime, attempt: int, base_seconds: float = 10) -> datetime:
    return now + timedelta(seconds=retry_delay(attempt, base_seconds))
