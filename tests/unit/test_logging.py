"""
Unit tests for secret redaction in log records
"""

import logging

from core.logging import REDACTED, SecretRedactionFilter, redact


def _record(msg, **extra):
    record = logging.LogRecord("pipeline.runner", logging.ERROR, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_nested_secret_keys():
    context = {"warehouse": "snowflake", "credentials": {"password": "pw"}, "hosts": [{"token": "t"}]}

    assert redact(context) == {"warehouse": "snowflake", "credentials": REDACTED, "hosts": [{"token": REDACTED}]}
    assert context["credentials"] == {"password": "pw"}


def test_filter_scrubs_message_and_context():
    record = _record(
        "connect failed: password=hunter2 host=db.internal",
        error_context={"context": {"password": "hunter2", "warehouse": "postgres"}},
    )

    assert SecretRedactionFilter().filter(record) is True

    assert record.msg == f"connect failed: password={REDACTED} host=db.internal"
    assert record.error_context == {"context": {"password": REDACTED, "warehouse": "postgres"}}


def test_filter_leaves_plain_records_alone():
    record = _record("Flushed batch 1: 3 rows")

    SecretRedactionFilter().filter(record)

    assert record.msg == "Flushed batch 1: 3 rows"
    assert not hasattr(record, "error_context")
