"""Unit tests for the logging formatters and context filter."""

import json
import logging

from geocoding_feedback.lib.logging_config import (
    ContextFilter,
    JsonFormatter,
    SimpleFormatter,
    feedback_request_id_var,
    request_id_var,
)


def make_record(msg="Kafka message sent", **extra):
    record = logging.LogRecord(
        name="geocoding_feedback.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_filter_injects_contextvars():
    request_token = request_id_var.set("req-1")
    feedback_token = feedback_request_id_var.set("r1")
    try:
        record = make_record()
        assert ContextFilter().filter(record) is True
    finally:
        request_id_var.reset(request_token)
        feedback_request_id_var.reset(feedback_token)

    assert record.request_id == "req-1"
    assert record.feedback_request_id == "r1"


def test_context_filter_keeps_explicit_values():
    record = make_record(feedback_request_id="explicit")
    ContextFilter().filter(record)

    assert record.feedback_request_id == "explicit"


def test_json_formatter_includes_extra_fields():
    record = make_record(topic="geocoding-feedback", kind="implicit", request_id=None, feedback_request_id="r1")

    entry = json.loads(JsonFormatter().format(record))

    assert entry["level"] == "INFO"
    assert entry["message"] == "Kafka message sent"
    assert entry["topic"] == "geocoding-feedback"
    assert entry["kind"] == "implicit"
    assert entry["feedback_request_id"] == "r1"


def test_json_formatter_stringifies_unserializable_extras():
    record = make_record(client=object())

    entry = json.loads(JsonFormatter().format(record))

    assert entry["client"].startswith("<object object")


def test_simple_formatter_appends_context():
    record = make_record(request_id=None, feedback_request_id="r1")

    line = SimpleFormatter().format(record)

    assert "INFO" in line
    assert "Kafka message sent" in line
    assert line.endswith("[feedback_request_id=r1]")
