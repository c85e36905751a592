"""
Error Handling Tests for FeedMark
=================================

Exception taxonomy, conversion of unexpected exceptions, and the logging
helpers that carry error context.
"""

import json
import logging
from unittest.mock import Mock

import pytest

from feedmark.utils.exceptions import (
    ConfigurationError,
    DatabaseError,
    DtdProhibitedError,
    EmptyFeedError,
    ErrorCode,
    FeedError,
    FeedFetchError,
    FeedMarkError,
    FeedParseError,
    FeedTransportError,
    FetchCancelledError,
    InvalidFeedUrlError,
    MalformedFeedError,
    SourceMisconfiguredError,
    SourceRepositoryError,
    ValidationError,
    WatermarkPersistenceError,
    get_user_friendly_message,
    handle_exception,
)
from feedmark.utils.logging import (
    PerformanceLogger,
    StructuredFormatter,
    get_logger_for_component,
)


class TestTaxonomy:

    @pytest.mark.parametrize(
        "error_class",
        [FeedTransportError, InvalidFeedUrlError, FetchCancelledError],
    )
    def test_transport_errors(self, error_class):
        error = error_class("failed", feed_url="https://x.example.com/feed")

        assert isinstance(error, FeedFetchError)
        assert isinstance(error, FeedError)
        assert not isinstance(error, FeedParseError)
        assert error.context["feed_url"] == "https://x.example.com/feed"

    @pytest.mark.parametrize(
        "error_class,code",
        [
            (DtdProhibitedError, ErrorCode.FEED_DTD_PROHIBITED),
            (MalformedFeedError, ErrorCode.FEED_PARSE_ERROR),
            (EmptyFeedError, ErrorCode.FEED_EMPTY),
        ],
    )
    def test_parse_errors(self, error_class, code):
        error = error_class("bad", feed_url="https://x.example.com/feed")

        assert isinstance(error, FeedParseError)
        assert not isinstance(error, FeedFetchError)
        assert error.error_code == code

    def test_fatal_errors_are_database_errors(self):
        assert isinstance(SourceRepositoryError("x"), DatabaseError)
        assert isinstance(WatermarkPersistenceError("x"), DatabaseError)
        assert SourceRepositoryError("x").recoverable is False
        assert WatermarkPersistenceError("x", source_id="s").context["source_id"] == "s"

    def test_misconfigured_source_is_validation_error(self):
        error = SourceMisconfiguredError("disabled", source_id="s")

        assert isinstance(error, ValidationError)
        assert error.error_code == ErrorCode.SOURCE_MISCONFIGURED
        assert error.context == {"source_id": "s", "field_name": "rss"}

    def test_http_status_recorded(self):
        error = FeedTransportError("HTTP 404", status_code=404)

        assert error.status_code == 404
        assert error.error_code == ErrorCode.FEED_HTTP_ERROR
        assert str(error) == "[F005] HTTP 404"

    def test_to_dict(self):
        data = ConfigurationError("bad proxy", config_key="transport.proxy").to_dict()

        assert data["error_type"] == "ConfigurationError"
        assert data["error_code"] == ErrorCode.CONFIG_INVALID.value
        assert data["context"] == {"config_key": "transport.proxy"}


class TestHandleException:

    def test_feedmark_error_passes_through(self):
        logger = Mock()
        error = EmptyFeedError("empty")

        assert handle_exception(error, logger, "parse") is error
        logger.error.assert_called_once()

    def test_network_error_converted(self):
        converted = handle_exception(ConnectionError("reset"), Mock(), "fetch")

        assert converted.error_code == ErrorCode.FEED_NETWORK_ERROR
        assert converted.recoverable is True
        assert converted.context["original_exception_type"] == "ConnectionError"

    def test_unexpected_error_converted(self):
        converted = handle_exception(RuntimeError("boom"), Mock(), "import", {"source_id": "s"})

        assert isinstance(converted, FeedMarkError)
        assert "boom" in str(converted)
        assert converted.context["source_id"] == "s"
        assert converted.context["operation"] == "import"

    def test_user_friendly_message(self):
        assert "DTD" in get_user_friendly_message(DtdProhibitedError("x"))
        assert get_user_friendly_message(KeyError("k")).startswith("An unexpected error")


class TestLogging:

    def test_component_logger_context(self):
        logger = get_logger_for_component("pipeline", source_id="alpha")

        assert logger.logger.name == "feedmark.pipeline"
        assert logger.extra == {"component": "pipeline", "source_id": "alpha"}

    def test_bind_adds_context(self):
        logger = get_logger_for_component("pipeline").bind(source_id="bravo", feed_url=None)
        assert logger.extra == {"component": "pipeline", "source_id": "bravo"}

    def test_structured_formatter_includes_extras(self):
        record = logging.LogRecord("feedmark.test", logging.ERROR, __file__, 1, "failed %s", ("x",), None)
        record.source_id = "alpha"
        record.context = {"status_code": 503}

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "failed x"
        assert data["extra"]["source_id"] == "alpha"
        assert data["extra"]["context"] == {"status_code": 503}

    def test_performance_logger_measures(self):
        logger = Mock()

        with PerformanceLogger(logger, "feed fetch", source_id="alpha") as perf:
            pass

        assert perf.duration is not None and perf.duration >= 0
        assert logger.debug.call_count == 2
