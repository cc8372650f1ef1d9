"""Tests for utility functions."""

import json
import logging

from provchestra.utils import (
    StructuredFormatter,
    format_duration,
    sanitize_error_message,
    sanitize_text,
    setup_logging,
)


class TestSanitize:
    """Tests for secret redaction."""

    def test_bearer(self):
        assert sanitize_text("Authorization: Bearer abc.def-ghi") == "Authorization: Bearer [REDACTED]"

    def test_jwt(self):
        text = sanitize_text("token eyJhbGciOi.eyJzdWIiOi.c2lnbmF0dXJl rejected")
        assert "eyJ" not in text
        assert "rejected" in text

    def test_token_fields(self):
        text = sanitize_text('{"accessToken": "secret-value", "expiresOn": "2030"}')
        assert "secret-value" not in text
        assert "2030" in text
        assert "hunter2" not in sanitize_text("password=hunter2")

    def test_truncation(self):
        message = sanitize_error_message(Exception("x" * 600), max_length=100)
        assert len(message) == 103
        assert message.endswith("...")


class TestFormatDuration:
    """Tests for format_duration()."""

    def test_seconds(self):
        assert format_duration(45.2) == "45s"

    def test_minutes(self):
        assert format_duration(83) == "1m 23s"

    def test_hours(self):
        assert format_duration(3723) == "1h 2m 3s"


class TestLogging:
    """Tests for logging setup."""

    def test_structured_formatter_extras(self):
        record = logging.LogRecord("provchestra.pipeline", logging.INFO, __file__, 1, "ok", None, None)
        record.step = "import-schema"
        data = json.loads(StructuredFormatter().format(record))
        assert data["message"] == "ok"
        assert data["step"] == "import-schema"
        assert "run_id" not in data

    def test_setup_writes_file(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        logger = setup_logging(log_file, "DEBUG", "structured", console_output=False)
        logging.getLogger("provchestra.test").debug("hello")
        for handler in logger.handlers:
            handler.flush()
        line = log_file.read_text().strip().splitlines()[-1]
        assert json.loads(line)["message"] == "hello"
        assert logger.level == logging.DEBUG
