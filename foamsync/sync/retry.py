"""Bounded immediate retries for client writes, then the durable queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from foamsync.errors import ErrorKind, classify_error

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    OK = "ok"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass
class WriteResult:
    outcome: WriteOutcome
    value: Any = None
    error: str | None = None
    kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is WriteOutcome.OK


def _is_transient(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.TRANSIENT


async def retry_write(
    operation: Callable[[], Awaitable[Any]],
    enqueue: Callable[[str], Awaitable[Any]] | None = None,
    max_retries: int = 3,
    base_seconds: float = 0.4,
    max_delay_seconds: float = 4.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "write",
) -> WriteResult:
    """Run a remote write with up to max_retries retries after the first try.

    Delays double from base_seconds and are capped at max_delay_seconds.
    Authorization and permanent failures return immediately. When transient
    failures exhaust the budget the write is handed to enqueue.
    """

    def log_retry(state: RetryCallState) -> None:
        logger.warning(
            f"{description} attempt {state.attempt_number}/{max_retries + 1} failed: "
            f"{state.outcome.exception()}; retrying in {state.next_action.sleep:.1f}s"
        )

    retrying = AsyncRetrying(
        sleep=sleep,
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_seconds, max=max_delay_seconds),
        retry=retry_if_exception(_is_transient),
        before_sleep=log_retry,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                value = await operation()
    except Exception as exc:
        kind = classify_error(exc)
        if kind is not ErrorKind.TRANSIENT:
            logger.error(f"{description} failed ({kind.value}): {exc}")
            return WriteResult(WriteOutcome.FAILED, error=str(exc), kind=kind)
        error = str(exc)
    else:
        return WriteResult(WriteOutcome.OK, value=value)

    if enqueue is None:
        return WriteResult(WriteOutcome.FAILED, error=error, kind=ErrorKind.TRANSIENT)

    try:
        entry_id = await enqueue(error)
    except Exception as exc:
        logger.error(f"{description}: could not queue for retry: {exc}")
        return WriteResult(WriteOutcome.FAILED, error=error, kind=ErrorKind.TRANSIENT)

    logger.info(f"{description} queued for retry as {entry_id}")
    return WriteResult(WriteOutcome.QUEUED, value=entry_id, error=error, kind=ErrorKind.TRANSIENT)
