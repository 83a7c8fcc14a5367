"""Tests for logging setup and structured context."""

import logging

from deployctl.core.logging import LogLevel, StructuredLogger, get_logger, setup_logging


class TestLogLevel:
    """Tests for LogLevel."""

    def test_from_flags(self):
        assert LogLevel.from_flags(2, False, LogLevel.WARNING) == LogLevel.DEBUG
        assert LogLevel.from_flags(1, True, LogLevel.WARNING) == LogLevel.INFO
        assert LogLevel.from_flags(0, True, LogLevel.WARNING) == LogLevel.ERROR
        assert LogLevel.from_flags(0, False, LogLevel.INFO) == LogLevel.INFO

    def test_numeric(self):
        assert LogLevel.WARNING.numeric == logging.WARNING


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_namespace(self):
        assert get_logger("pipeline.stage").name == "deployctl.pipeline.stage"
        assert get_logger("deployctl.pipeline.stage").name == "deployctl.pipeline.stage"
        assert StructuredLogger("deployctl").name == "deployctl"

    def test_bind_does_not_mutate_parent(self):
        parent = StructuredLogger("test")
        child = parent.bind(id="abc123")

        assert parent.context == {}
        assert child.context == {"id": "abc123"}

    def test_render_orders_deployment_context_first(self):
        log = StructuredLogger("test").bind(stage="install", extra=1, id="abc123")

        assert log.render("Hook finished", host="web-1") == (
            "Hook finished [id=abc123 host=web-1 stage=install extra=1]"
        )

    def test_render_quotes_values_with_spaces(self):
        log = StructuredLogger("test")
        assert log.render("Failed", reason="install timed out") == "Failed [reason='install timed out']"
        assert log.render("Plain") == "Plain"

    def test_setup_logging_replaces_handler(self):
        setup_logging(LogLevel.DEBUG, rich_output=False)
        logger = setup_logging(LogLevel.ERROR, rich_output=False)

        assert len(logger.handlers) == 1
        assert logger.level == logging.ERROR
