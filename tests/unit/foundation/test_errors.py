"""Tests for the error hierarchy and ErrorHandler."""

import pytest

from crawlfront.foundation.errors import (
    AlreadyDebitedError, ConfigurationError, CrawlfrontError, EngineFetchError,
    ErrorCategory, ErrorContext, ErrorHandler, ExtractionError, FetchErrorKind,
    InvalidTransitionError, JobNotFoundError, RetryConfig, UnsupportedEngineError,
    ValidationError, format_traceback
)


class TestErrorHierarchy:
    """Every error derives from CrawlfrontError with the right metadata."""

    def test_fetch_errors_are_retryable(self):
        for kind in FetchErrorKind:
            error = EngineFetchError("boom", kind=kind)
            assert error.retryable
            assert error.kind == kind

    def test_extraction_retryability_depends_on_cause(self):
        assert not ExtractionError("bad markup").retryable
        assert ExtractionError("empty body", retryable=True).retryable

    @pytest.mark.parametrize("error", [
        ConfigurationError("bad"),
        ValidationError("bad", field="url"),
        UnsupportedEngineError("cheerio"),
        JobNotFoundError("job-1"),
        InvalidTransitionError("job-1", "completed", "running"),
        AlreadyDebitedError("job-1"),
    ])
    def test_non_retryable_errors(self, error):
        assert isinstance(error, CrawlfrontError)
        assert not error.retryable

    def test_invalid_transition_message(self):
        error = InvalidTransitionError("job-1", "completed", "running")

        assert error.category == ErrorCategory.STATE
        assert "completed" in error.message and "running" in error.message

    def test_to_error_info(self):
        error = ValidationError("Invalid URL", field="url")

        info = error.to_error_info()

        assert info.error_type == "ValidationError"
        assert info.details["field"] == "url"
        assert info.code == "VALIDATION_ERROR"


class TestErrorHandler:
    """Tracking, retry decisions and delays."""

    def test_handle_error_tracks_statistics(self, error_handler):
        context = ErrorContext(operation="scrape_unit", url="https://example.com", job_id="job-1")

        info = error_handler.handle_error(EngineFetchError("timed out", kind=FetchErrorKind.TIMEOUT), context)

        assert info.context is context
        stats = error_handler.get_error_statistics()
        assert stats["total_errors"] == 1
        assert error_handler.recent_errors[0]["context"]["job_id"] == "job-1"

    def test_generic_errors_are_categorized(self, error_handler):
        info = error_handler.handle_error(ConnectionError("connection reset"))

        assert info.category == ErrorCategory.NETWORK
        assert info.retryable

    def test_should_retry_respects_budget(self, error_handler):
        error = EngineFetchError("boom")

        assert error_handler.should_retry(error, retry_count=0, max_retries=2)
        assert error_handler.should_retry(error, retry_count=1, max_retries=2)
        assert not error_handler.should_retry(error, retry_count=2, max_retries=2)

    def test_should_not_retry_permanent_errors(self, error_handler):
        assert not error_handler.should_retry(ExtractionError("bad"), retry_count=0, max_retries=5)

    def test_retry_delay_grows_and_caps(self, error_handler):
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)

        delays = [error_handler.calculate_retry_delay(attempt, config) for attempt in (1, 2, 3, 4)]

        assert delays == [1.0, 2.0, 3.0, 3.0]

    def test_zero_base_delay_means_immediate_retry(self, error_handler):
        assert error_handler.calculate_retry_delay(3, RetryConfig(base_delay=0)) == 0.0

    def test_retry_after_wins(self, error_handler):
        error = EngineFetchError("slow down", retry_after=7.5)

        assert error_handler.calculate_retry_delay(1, RetryConfig(), error) == 7.5

    def test_clear_errors(self, error_handler):
        error_handler.handle_error(ValueError("bad value"))
        error_handler.clear_errors()

        assert error_handler.get_error_statistics()["total_errors"] == 0


def test_format_traceback_includes_raise_site():
    try:
        raise EngineFetchError("network down", url="https://example.com")
    except EngineFetchError as e:
        text = format_traceback(e)

    assert "EngineFetchError" in text
    assert "network down" in text
