"""Unit tests for error classification."""

from __future__ import annotations

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from foamsync.errors import (
    AuthorizationError,
    ErrorKind,
    NotFoundError,
    PermanentError,
    ReconciliationConflict,
    TransientError,
    ValidationError,
    classify_error,
    classify_status,
    is_retryable,
)


class _PgError(Exception):
    def __init__(self, sqlstate: str):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


@pytest.mark.parametrize(
    "status_code,kind",
    [
        (500, ErrorKind.TRANSIENT),
        (503, ErrorKind.TRANSIENT),
        (408, ErrorKind.TRANSIENT),
        (429, ErrorKind.TRANSIENT),
        (401, ErrorKind.AUTHORIZATION),
        (403, ErrorKind.AUTHORIZATION),
        (400, ErrorKind.PERMANENT),
        (404, ErrorKind.PERMANENT),
        (422, ErrorKind.PERMANENT),
    ],
)
def test_classify_status(status_code, kind):
    assert classify_status(status_code) is kind


def test_foamsync_errors_carry_their_kind():
    assert classify_error(TransientError("x")) is ErrorKind.TRANSIENT
    assert classify_error(AuthorizationError("x")) is ErrorKind.AUTHORIZATION
    assert classify_error(ValidationError("x")) is ErrorKind.PERMANENT
    assert classify_error(NotFoundError("x")) is ErrorKind.PERMANENT
    assert issubclass(ValidationError, PermanentError)


def test_network_errors_are_transient():
    request = httpx.Request("GET", "http://store/rpc")

    assert classify_error(httpx.ConnectError("refused", request=request)) is ErrorKind.TRANSIENT
    assert classify_error(httpx.ReadTimeout("slow", request=request)) is ErrorKind.TRANSIENT
    assert classify_error(TimeoutError()) is ErrorKind.TRANSIENT
    assert classify_error(ConnectionResetError()) is ErrorKind.TRANSIENT


def test_http_status_errors_use_status_code():
    request = httpx.Request("POST", "http://store/rpc")
    response = httpx.Response(401, request=request)
    exc = httpx.HTTPStatusError("unauthorized", request=request, response=response)

    assert classify_error(exc) is ErrorKind.AUTHORIZATION


def test_database_codes():
    serialization = OperationalError("UPDATE", {}, _PgError("40001"))
    permission = IntegrityError("UPDATE", {}, _PgError("42501"))
    constraint = IntegrityError("INSERT", {}, _PgError("23505"))

    assert classify_error(serialization) is ErrorKind.TRANSIENT
    assert classify_error(permission) is ErrorKind.AUTHORIZATION
    assert classify_error(constraint) is ErrorKind.PERMANENT


def test_sqlite_lock_contention_is_transient():
    exc = OperationalError("UPDATE", {}, Exception("database is locked"))

    assert is_retryable(exc)


def test_message_hints():
    assert classify_error(RuntimeError("Network request failed")) is ErrorKind.TRANSIENT
    assert classify_error(RuntimeError("column does not exist")) is ErrorKind.PERMANENT


def test_conflict_describe():
    conflict = ReconciliationConflict(item_key="tmp-1", item_name="Tape", delta=-2)

    text = conflict.describe()

    assert "tmp-1" in text
    assert "Tape" in text
    assert "-2" in text
