"""Collapse bursts of change notifications into a single refresh."""

from __future__ import annotations

import time
from collections.abc import Callable


class Deduplicator:
    """Let the first event through, drop repeats inside the window.

    One organization-wide save can emit a dozen row changes within
    milliseconds; receivers only need one refetch for all of them.
    """

    def __init__(self, window_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.clock = clock
        self._last: dict[str, float] = {}

    def should_process(self, key: str = "default") -> bool:
        now = self.clock()
        last = self._last.get(key)
        if last is not None and now - last < self.window_seconds:
            return False
        self._last[key] = now
        return True

    def reset(self) -> None:
        self._last.clear()
