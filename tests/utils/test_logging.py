"""Tests for the structlog configuration and request-scoped log context."""

from __future__ import annotations

import json
import logging
import os
from io import StringIO
from unittest.mock import patch

import structlog

from src.utils.logging import (
    LogContext,
    _get_log_renderer,
    _use_console_renderer,
    add_log_context,
    clear_log_context,
    configure_logging,
    get_logger,
    get_uvicorn_log_config,
    remove_log_context,
)


class TestRendererSelection:
    def test_local_environment_uses_console(self):
        with patch.dict(os.environ, {"LISTENER_ENVIRONMENT": "local", "LOG_RENDERER": ""}):
            assert _use_console_renderer() is True
            assert isinstance(_get_log_renderer(), structlog.dev.ConsoleRenderer)

    def test_other_environments_use_json(self):
        with patch.dict(os.environ, {"LISTENER_ENVIRONMENT": "production", "LOG_RENDERER": ""}):
            assert _use_console_renderer() is False
            assert isinstance(_get_log_renderer(), structlog.processors.JSONRenderer)

    def test_log_renderer_override(self):
        with patch.dict(os.environ, {"LISTENER_ENVIRONMENT": "local", "LOG_RENDERER": "json"}):
            assert _use_console_renderer() is False

        with patch.dict(os.environ, {"LISTENER_ENVIRONMENT": "production", "LOG_RENDERER": "CONSOLE"}):
            assert _use_console_renderer() is True

    def test_unknown_override_falls_back_to_environment(self):
        with patch.dict(os.environ, {"LISTENER_ENVIRONMENT": "staging", "LOG_RENDERER": "xml"}):
            assert _use_console_renderer() is False

    def test_uvicorn_config_shares_renderer(self):
        with patch.dict(os.environ, {"LISTENER_ENVIRONMENT": "production", "LOG_RENDERER": ""}):
            config = get_uvicorn_log_config()

        assert isinstance(config["formatters"]["default"]["processor"], structlog.processors.JSONRenderer)
        assert config["loggers"]["uvicorn.access"]["propagate"] is False


@patch("src.utils.logging._use_console_renderer", return_value=False)
class TestLogOutput:
    """JSON output with context bound at different scopes."""

    def setup_method(self):
        clear_log_context()
        self.log_stream = StringIO()
        self.handler = logging.StreamHandler(self.log_stream)

    def teardown_method(self):
        clear_log_context()
        logging.getLogger().removeHandler(self.handler)

    def _capture_json_logs(self):
        configure_logging()
        root_logger = logging.getLogger()
        # Reuse the ProcessorFormatter configure_logging installed
        self.handler.setFormatter(root_logger.handlers[0].formatter)
        root_logger.handlers.clear()
        root_logger.addHandler(self.handler)

    def _logged(self) -> list[dict]:
        output = self.log_stream.getvalue().strip()
        return [json.loads(line) for line in output.split("\n") if line.strip()]

    def test_context_appears_in_json_logs(self, _):
        self._capture_json_logs()

        add_log_context(request_id="req-123")
        get_logger(__name__).info("Message stored", message_id="m1")

        (log_data,) = self._logged()
        assert log_data["request_id"] == "req-123"
        assert log_data["message_id"] == "m1"
        assert log_data["message"] == "Message stored"
        assert log_data["level"] == "info"

    def test_log_context_is_scoped(self, _):
        self._capture_json_logs()
        add_log_context(request_id="req-123")
        logger = get_logger(__name__)

        logger.info("Before")
        with LogContext(event_type="message.created"):
            logger.info("Inside")
        logger.info("After")

        before, inside, after = self._logged()
        assert "event_type" not in before
        assert inside["event_type"] == "message.created"
        assert inside["request_id"] == "req-123"
        assert "event_type" not in after

    def test_log_context_cleaned_up_after_exception(self, _):
        self._capture_json_logs()
        logger = get_logger(__name__)

        try:
            with LogContext(event_type="conversation.created"):
                raise ValueError("boom")
        except ValueError:
            pass
        logger.info("After exception")

        (log_data,) = self._logged()
        assert "event_type" not in log_data

    def test_remove_and_clear_log_context(self, _):
        self._capture_json_logs()
        add_log_context(request_id="req-1", event_type="message.created")
        logger = get_logger(__name__)

        remove_log_context("event_type")
        logger.info("Removed one")
        clear_log_context()
        logger.info("Cleared")

        removed, cleared = self._logged()
        assert removed["request_id"] == "req-1"
        assert "event_type" not in removed
        assert "request_id" not in cleared
