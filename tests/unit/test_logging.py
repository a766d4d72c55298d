"""Unit tests for structured logging."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator

import pytest

from flowfi_automation.engine.logging import JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    quiet = {name: logging.getLogger(name).level for name in ("urllib3", "apscheduler")}
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    for name, previous in quiet.items():
        logging.getLogger(name).setLevel(previous)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="flowfi_automation.engine.coordinator",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Execution recorded for %s",
        args=("wf_1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_lifts_ids_and_nests_other_extra_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record(entity_id="wf_1", retry=2)))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "flowfi_automation.engine.coordinator"
    assert payload["message"] == "Execution recorded for wf_1"
    assert payload["entity_id"] == "wf_1"
    assert payload["extra"] == {"retry": 2}
    assert "exception" not in payload


def test_formatter_serializes_unknown_types_and_exceptions() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record(path=object())
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert isinstance(payload["extra"]["path"], str)
    assert "RuntimeError: boom" in payload["exception"]


@pytest.mark.usefixtures("restore_root_logger")
def test_configure_logging_installs_one_json_handler_on_stderr() -> None:
    configure_logging("debug")
    configure_logging("debug")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    handler = root.handlers[0]
    assert isinstance(handler.formatter, JsonFormatter)
    assert handler.stream is sys.stderr
    assert root.level == logging.DEBUG
    assert logging.getLogger("urllib3").level == logging.WARNING
    assert logging.getLogger("apscheduler").level == logging.WARNING
