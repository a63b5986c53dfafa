"""Tests for structured logging configuration."""

import json
import logging
from datetime import datetime

import pytest

from config.settings import AccessControlSettings
from core.access_control import LoggingAuditEmitter
from services.logging_config import (
    ContextLogger,
    JsonFormatter,
    ReadableFormatter,
    configure_from_settings,
    get_logger,
    log_context,
    request_id_var,
    user_id_var,
)


NOW = datetime(2026, 3, 2, 12, 0, 0)


def make_record(message="hello", **extra_data):
    record = logging.LogRecord(
        name="core.access_control.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    if extra_data:
        record.extra_data = extra_data
    return record


class CaptureHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    handler = CaptureHandler()
    logger = logging.getLogger("core.access_control.test")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield handler
    logger.removeHandler(handler)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_basic_fields(self):
        payload = json.loads(JsonFormatter().format(make_record()))
        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "core.access_control.test"
        assert payload["timestamp"].endswith("Z")

    def test_extra_data_merged(self):
        payload = json.loads(JsonFormatter().format(make_record(effect="deny", priority=20)))
        assert payload["effect"] == "deny"
        assert payload["priority"] == 20

    def test_context_variables_included(self):
        with log_context(request_id="req-1", user_id="user-1"):
            payload = json.loads(JsonFormatter().format(make_record()))
        assert payload["request_id"] == "req-1"
        assert payload["user_id"] == "user-1"


class TestReadableFormatter:
    def test_extras_appended(self):
        line = ReadableFormatter(use_colors=False).format(make_record("Grant created", kind="menu"))
        assert "[core.access_control.test] Grant created" in line
        assert line.endswith("| kind=menu")


class TestContextLogger:
    """Tests for get_logger and log_context."""

    def test_fixed_context_merged_with_call_extras(self, captured):
        logger = get_logger("core.access_control.test", component="access_control")
        assert isinstance(logger, ContextLogger)

        logger.info("Mutation rejected", extra={"extra_data": {"code": "CYCLE_DETECTED"}})

        record = captured.records[-1]
        assert record.extra_data == {"component": "access_control", "code": "CYCLE_DETECTED"}

    def test_log_context_restores_previous_values(self):
        with log_context(request_id="outer"):
            with log_context(request_id="inner", user_id="u"):
                assert request_id_var.get() == "inner"
            assert request_id_var.get() == "outer"
            assert user_id_var.get() is None
        assert request_id_var.get() is None


class TestConfiguration:
    def test_configure_from_settings(self, restore_root_logging):
        settings = AccessControlSettings(_env_file=None, log_level="warning", log_json=True)
        configure_from_settings(settings)

        assert restore_root_logging.level == logging.WARNING
        assert isinstance(restore_root_logging.handlers[0].formatter, JsonFormatter)


class TestLoggingAuditEmitter:
    def test_mutation_logged(self, caplog):
        emitter = LoggingAuditEmitter()
        with caplog.at_level(logging.INFO, logger="access_control.audit"):
            emitter.emit_mutation("grant.menu", NOW, status="created")

        record = caplog.records[-1]
        assert record.getMessage() == "access_mutation"
        assert record.extra_data["action"] == "grant.menu"
        assert record.extra_data["status"] == "created"