"""
Tests for error kinds, secret redaction and JSON log lines.
"""

import io
import json
import logging

import pytest

from errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
    redact,
    register_secret,
    status_text,
    wrap,
)
from structured_logging import (
    REQUEST_ID_KEY,
    clear_request_id,
    configure_logging,
    parse_log_level,
    sanitize_for_logging,
    set_request_id,
)


# ============================================
# ERRORS
# ============================================

class TestWrap:

    def test_keeps_kind_and_code(self):
        wrapped = wrap(NotFoundError("profile 'u1' not found"), "edit profile")
        assert isinstance(wrapped, NotFoundError)
        assert wrapped.code == "404"
        assert str(wrapped) == "edit profile: profile 'u1' not found"

    def test_keeps_field(self):
        wrapped = wrap(ValidationError("gender_acc", "must be in [1, 100]"), "edit profile")
        assert isinstance(wrapped, ValidationError)
        assert wrapped.field == "gender_acc"
        assert wrapped.code == "400"

    def test_plain_exception_becomes_internal(self):
        cause = KeyError("x")
        wrapped = wrap(cause, "merge")
        assert isinstance(wrapped, InternalError)
        assert wrapped.__cause__ is cause

    def test_status_text(self):
        assert status_text(ConflictError.code) == "CONFLICT"
        assert status_text("418") == "418"


class TestRedaction:

    def test_longest_secret_first(self):
        register_secret("abc")
        register_secret("abcdef")
        assert redact("token=abcdef") == "token=[redacted]"

    def test_empty_secret_is_ignored(self):
        register_secret("")
        assert redact("nothing to hide") == "nothing to hide"


# ============================================
# LOGGING
# ============================================

class TestSanitize:

    def test_control_characters(self):
        assert sanitize_for_logging("line1\nline2\r\x00end") == "line1 line2 end"

    def test_truncates(self):
        assert sanitize_for_logging("x" * 20, max_length=5) == "xxxxx"

    def test_none(self):
        assert sanitize_for_logging(None) == ""


class TestJsonLogging:

    @pytest.fixture
    def stream(self):
        buffer = io.StringIO()
        handler = configure_logging("info", stream=buffer)
        yield buffer
        logging.getLogger().removeHandler(handler)
        clear_request_id()

    def lines(self, stream):
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    def test_record_shape(self, stream):
        logging.getLogger("affiliation.test").info("hello")
        record = self.lines(stream)[-1]
        assert record["level"] == "info"
        assert record["logger"] == "affiliation.test"
        assert record["msg"] == "hello"
        assert REQUEST_ID_KEY not in record

    def test_request_id(self, stream):
        set_request_id("req-7")
        logging.getLogger("affiliation.test").warning("slow")
        assert self.lines(stream)[-1][REQUEST_ID_KEY] == "req-7"

    def test_secrets_are_redacted(self, stream):
        register_secret("pa55word")
        logging.getLogger("affiliation.test").error("login failed for sh:pa55word")
        assert self.lines(stream)[-1]["msg"] == "login failed for sh:[redacted]"

    def test_level_filter(self, stream):
        logging.getLogger("affiliation.test").debug("hidden")
        assert all(r["msg"] != "hidden" for r in self.lines(stream))

    @pytest.mark.parametrize("value, level", [
        ("debug", logging.DEBUG),
        ("INFO", logging.INFO),
        ("warn", logging.WARNING),
        ("", logging.DEBUG),
        (None, logging.DEBUG),
    ])
    def test_parse_level(self, value, level):
        assert parse_log_level(value) == level
