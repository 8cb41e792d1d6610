"""Tests for logging setup (upnpfwd/logging_config.py)."""

from __future__ import annotations

import json
import logging
import logging.handlers

import pytest
from rich.logging import RichHandler

from upnpfwd.logging_config import (
    CorrelationFilter,
    StructuredFormatter,
    correlation_id,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from upnpfwd.models import LogLevel, ObservabilityConfig

pytestmark = [pytest.mark.unit, pytest.mark.observability]


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("upnpfwd.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_rich_console_by_default():
    setup_logging(ObservabilityConfig(log_level=LogLevel.DEBUG))

    logger = logging.getLogger("upnpfwd")
    assert logger.level == logging.DEBUG
    assert not logger.propagate
    assert any(isinstance(h, RichHandler) for h in logger.handlers)


def test_structured_console():
    setup_logging(ObservabilityConfig(structured_logging=True))

    handlers = logging.getLogger("upnpfwd").handlers
    assert any(isinstance(h.formatter, StructuredFormatter) for h in handlers)


def test_log_file(tmp_path):
    log_file = tmp_path / "logs" / "upnpfwd.log"
    setup_logging(ObservabilityConfig(log_file=str(log_file)))

    handlers = logging.getLogger("upnpfwd").handlers
    assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)
    assert log_file.parent.is_dir()


def test_structured_formatter():
    set_correlation_id("abc")
    record = _record("port %s", mapping="web")
    CorrelationFilter().filter(record)

    entry = json.loads(StructuredFormatter().format(record))

    assert entry["message"] == "port %s"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "upnpfwd.test"
    assert entry["correlation_id"] == "abc"
    assert entry["mapping"] == "web"


def test_correlation_filter_default():
    correlation_id.set(None)
    record = _record()
    CorrelationFilter().filter(record)
    assert record.correlation_id == "no-correlation-id"


def test_correlation_ids():
    generated = set_correlation_id()
    assert get_correlation_id() == generated
    assert set_correlation_id("fixed") == "fixed"
    assert get_correlation_id() == "fixed"


def test_get_logger_namespaced():
    assert get_logger("cli").name == "upnpfwd.cli"
