"""Unit tests for structlog configuration."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from foamsync.config import AppConfig, DBConfig
from foamsync.core.logging import configure_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _config(**kwargs) -> AppConfig:
    return AppConfig(db=DBConfig(url="sqlite+aiosqlite:///:memory:"), **kwargs)


def test_stdlib_records_render_as_json(capsys):
    configure_logging(_config(log_format="json"))

    logging.getLogger("foamsync.sync.retry").warning("queued %s", "customers")

    line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert line["event"] == "queued customers"
    assert line["level"] == "warning"
    assert line["logger"] == "foamsync.sync.retry"


def test_structlog_context_reaches_output(capsys):
    configure_logging(_config(log_format="json"))

    with structlog.contextvars.bound_contextvars(request_id="req-7"):
        structlog.get_logger("foamsync.web").info("snapshot_served", org_id="org-1")

    line = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert (line["request_id"], line["org_id"]) == ("req-7", "org-1")


def test_level_comes_from_config(capsys):
    configure_logging(_config(log_level="warning", log_format="json"))

    logging.getLogger("foamsync.store").info("hidden")

    assert logging.getLogger().level == logging.WARNING
    assert capsys.readouterr().out == ""


def test_library_loggers_are_quieted():
    configure_logging(_config())

    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_json_logs_env_selects_json(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
    monkeypatch.setenv("JSON_LOGS", "true")

    assert AppConfig.from_env().log_format == "json"

    monkeypatch.delenv("JSON_LOGS")
    assert AppConfig.from_env().log_format == "console"
