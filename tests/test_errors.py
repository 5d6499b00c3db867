"""Tests for the error hierarchy and error logging helpers."""

import logging

from brainy.errors import (
    AnalysisParseError,
    BrainyError,
    CompletionError,
    ConfigError,
    Severity,
    StorageError,
    log_error,
    mask_secret,
)


class TestHierarchy:
    def test_all_derive_from_base(self):
        for cls in (ConfigError, StorageError, CompletionError, AnalysisParseError):
            assert issubclass(cls, BrainyError)

    def test_parse_error_is_completion_error(self):
        assert issubclass(AnalysisParseError, CompletionError)

    def test_severities(self):
        assert BrainyError("x").severity == Severity.ERROR
        assert StorageError("x").severity == Severity.WARNING
        assert CompletionError("x").severity == Severity.WARNING

    def test_attributes(self):
        err = CompletionError("boom", component="analyzer", detail="raw text")
        assert str(err) == "boom"
        assert err.component == "analyzer"
        assert err.detail == "raw text"
        assert err.timestamp


class TestLogError:
    def test_logs_at_severity_level(self, caplog):
        logger = logging.getLogger("brainy.test")
        with caplog.at_level(logging.DEBUG, logger="brainy.test"):
            log_error(StorageError("locked", component="sqlite"), logger)
        assert caplog.records[0].levelno == logging.WARNING
        assert "[sqlite] locked" in caplog.text

    def test_includes_truncated_detail(self, caplog):
        logger = logging.getLogger("brainy.test")
        with caplog.at_level(logging.DEBUG, logger="brainy.test"):
            log_error(AnalysisParseError("bad json", detail="x" * 1000), logger)
        assert "x" * 500 in caplog.text
        assert "x" * 501 not in caplog.text

    def test_plain_exception(self, caplog):
        logger = logging.getLogger("brainy.test")
        with caplog.at_level(logging.DEBUG, logger="brainy.test"):
            log_error(RuntimeError("oops"), logger, component="bot")
        assert caplog.records[0].levelno == logging.ERROR
        assert "[bot] oops" in caplog.text


def test_mask_secret():
    assert mask_secret("") == "?"
    assert mask_secret("abc") == "***"
    assert mask_secret("sk-abcdef123") == "sk-ab***"
