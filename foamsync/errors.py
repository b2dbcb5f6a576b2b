"""Error taxonomy shared by the store, the retry queue and sync clients.

Four kinds of failure matter to callers:

- transient: network drops, timeouts, overload, lock contention. Retried
  locally with back-off, then handed to the durable retry queue.
- authorization: expired or invalid credential. Never retried, the user
  has to sign in again.
- permanent: malformed payload, unknown table, unknown record. Logged and
  never retried.
- reconciliation conflict: a stock row could not be matched. Reported as a
  diagnostic, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError


class ErrorKind(str, Enum):
    """Classification used to decide retry behaviour."""

    TRANSIENT = "transient"
    AUTHORIZATION = "authorization"
    PERMANENT = "permanent"


class FoamSyncError(Exception):
    """Base exception for foamsync operations."""

    kind: ErrorKind = ErrorKind.PERMANENT


class TransientError(FoamSyncError):
    """Temporary failure, safe to retry."""

    kind = ErrorKind.TRANSIENT


class AuthorizationError(FoamSyncError):
    """Credential missing, expired, or scoped to another organization."""

    kind = ErrorKind.AUTHORIZATION


class PermanentError(FoamSyncError):
    """Failure that will not succeed on replay."""

    kind = ErrorKind.PERMANENT


class ValidationError(PermanentError):
    """Malformed input (bad status value, unsupported operation, ...)."""


class NotFoundError(PermanentError):
    """Referenced organization or record does not exist."""


@dataclass
class ReconciliationConflict:
    """A stock adjustment that matched no inventory row."""

    item_key: str | None
    item_name: str | None
    delta: float

    def describe(self) -> str:
        return (
            f"no inventory row for id={self.item_key!r} name={self.item_name!r} "
            f"(delta {self.delta:+g})"
        )


# HTTP statuses worth retrying
TRANSIENT_HTTP_STATUSES = {408, 429}
AUTH_HTTP_STATUSES = {401, 403}

# SQLSTATE / PostgREST codes: serialization failure, statement timeout,
# lock not available, deadlock, connection errors
TRANSIENT_DB_CODES = {"40001", "57014", "55P03", "40P01", "PGRST000", "PGRST003"}
AUTH_DB_CODES = {"42501", "PGRST301"}

TRANSIENT_MESSAGE_HINTS = (
    "network",
    "timeout",
    "timed out",
    "temporar",
    "connection reset",
    "connection refused",
    "database is locked",
)


def _db_error_code(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    for candidate in (exc, orig):
        if candidate is None:
            continue
        for attr in ("sqlstate", "pgcode", "code"):
            value = getattr(candidate, attr, None)
            if value:
                return str(value)
    return ""


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status_code >= 500 or status_code in TRANSIENT_HTTP_STATUSES:
        return ErrorKind.TRANSIENT
    if status_code in AUTH_HTTP_STATUSES:
        return ErrorKind.AUTHORIZATION
    return ErrorKind.PERMANENT


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide whether a failure is transient, authorization or permanent.

    Args:
        exc: Exception raised by a remote write

    Returns:
        ErrorKind for the exception
    """
    if isinstance(exc, FoamSyncError):
        return exc.kind

    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    if isinstance(exc, DBAPIError):
        code = _db_error_code(exc)
        if code in AUTH_DB_CODES:
            return ErrorKind.AUTHORIZATION
        if code in TRANSIENT_DB_CODES or exc.connection_invalidated:
            return ErrorKind.TRANSIENT
        if isinstance(exc, OperationalError):
            return ErrorKind.TRANSIENT

    message = str(exc).lower()
    if any(hint in message for hint in TRANSIENT_MESSAGE_HINTS):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.TRANSIENT
